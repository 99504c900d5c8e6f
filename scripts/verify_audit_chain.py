from __future__ import annotations

import argparse

from privguard.core.audit.recorder import AuditRecorder
from privguard.core.audit.store_jsonl import AuditJsonlStore
from privguard.core.config.manager import ConfigManager
from privguard.core.config.paths import ConfigFsPaths


def main() -> int:
    ap = argparse.ArgumentParser(description="PrivGuard audit chain verify")
    ap.add_argument("--root", default=".")
    ap.add_argument("--path", default="", help="JSONL audit file (defaults to audit.path_jsonl from config)")
    args = ap.parse_args()
    fs = ConfigFsPaths(args.root)
    cfg = ConfigManager(fs=fs, logger=None, read_only=True).load()
    path = args.path or fs.resolve(cfg.audit.path_jsonl)
    rec = AuditRecorder(cfg=cfg.audit, jsonl=AuditJsonlStore(path=path), logger=None)
    rep = rec.verify_integrity()
    print(rep.model_dump_json(indent=2))
    return 0 if rep.ok else 2


if __name__ == "__main__":
    raise SystemExit(main())
