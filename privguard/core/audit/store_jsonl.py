from __future__ import annotations

import json
import os
import threading
from typing import Any, Dict, Iterator, Tuple

from privguard.core.audit.hasher import GENESIS_HASH, chain_record


class AuditJsonlStore:
    """
    Append-only, hash-chained JSONL file.

    Each line carries `prev_hash` and `hash`; the head file holds the last hash
    so appends do not need to re-read the log.
    """

    def __init__(self, *, path: str, head_path: str = ""):
        self.path = path
        self.head_path = head_path or (path + ".head.json")
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        os.makedirs(os.path.dirname(self.head_path) or ".", exist_ok=True)

    def read_head_hash(self) -> str:
        if not os.path.exists(self.head_path):
            return GENESIS_HASH
        try:
            with open(self.head_path, "r", encoding="utf-8") as f:
                obj = json.load(f)
        except (OSError, ValueError):
            return GENESIS_HASH
        return str(obj.get("head_hash") or GENESIS_HASH)

    def _write_head_hash(self, head_hash: str) -> None:
        tmp = self.head_path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"head_hash": head_hash}, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp, self.head_path)

    def append(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Chain and append `payload` (without prev_hash/hash). Returns the stored line."""
        with self._lock:
            prev = self.read_head_hash()
            rec = chain_record(payload=payload, prev_hash=prev)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")
                f.flush()
            self._write_head_hash(str(rec["hash"]))
            return rec

    def iter_lines(self) -> Iterator[Tuple[int, Dict[str, Any]]]:
        """Yield (line_no, obj); undecodable lines are yielded as an empty dict so verification can flag them."""
        if not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            for no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except ValueError:
                    obj = {}
                yield no, obj if isinstance(obj, dict) else {}
