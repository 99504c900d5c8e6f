from __future__ import annotations

import argparse
import json

from privguard.core.config.manager import ConfigManager
from privguard.core.config.paths import ConfigFsPaths
from privguard.core.framework import ComplianceFramework
from privguard.core.logger import setup_logging


def main() -> int:
    ap = argparse.ArgumentParser(description="PrivGuard retention sweep")
    ap.add_argument("--root", default=".")
    ap.add_argument("--as-of", type=float, default=None, help="Unix timestamp to sweep as of (default: now)")
    args = ap.parse_args()
    fs = ConfigFsPaths(args.root)
    logger = setup_logging(fs.logs_dir)
    cfg = ConfigManager(fs=fs, logger=logger).load()
    fw = ComplianceFramework.from_config(cfg, root=args.root, logger=logger)
    report = fw.run_retention_sweep(args.as_of)
    print(json.dumps(report, indent=2, sort_keys=True))
    return 0 if report.get("ok") and not report.get("errors") else 2


if __name__ == "__main__":
    raise SystemExit(main())
