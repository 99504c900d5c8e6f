from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class JsonLoad:
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def corrupt(self) -> bool:
        return bool(self.error) and str(self.error).startswith("corrupt")


def ensure_dirs(*dirs: str) -> None:
    for d in dirs:
        if d:
            os.makedirs(d, exist_ok=True)


def load_json_object(path: str) -> JsonLoad:
    """Read a JSON object. Missing, unreadable and corrupt files are reported, never raised."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            obj = json.load(f)
    except FileNotFoundError:
        return JsonLoad(error="missing")
    except json.JSONDecodeError as e:
        return JsonLoad(error=f"corrupt: {e.msg} (line {e.lineno})")
    except OSError as e:
        return JsonLoad(error=f"unreadable: {e}")
    if not isinstance(obj, dict):
        return JsonLoad(error="corrupt: top-level value is not an object")
    return JsonLoad(data=obj)


def _stamped_copy_path(path: str, backups_dir: str, tag: str) -> str:
    stamp = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
    return os.path.join(backups_dir, f"{os.path.basename(path)}.{stamp}.{tag}.json")


def _prune_copies(path: str, backups_dir: str, keep: int) -> None:
    prefix = os.path.basename(path) + "."
    try:
        copies = [e for e in os.scandir(backups_dir) if e.name.startswith(prefix)]
        copies.sort(key=lambda e: e.stat().st_mtime, reverse=True)
    except OSError:
        return
    for e in copies[keep:]:
        try:
            os.remove(e.path)
        except OSError:
            continue


def write_json_atomic(path: str, data: Dict[str, Any], *, backups_dir: Optional[str] = None, keep_backups: int = 10) -> None:
    """
    Replace `path` with `data` via a temp file in the same directory.

    With `backups_dir`, the previous file is copied there first and only the
    newest `keep_backups` copies are kept.
    """
    parent = os.path.dirname(path) or "."
    ensure_dirs(parent)
    if backups_dir and os.path.exists(path):
        ensure_dirs(backups_dir)
        try:
            shutil.copy2(path, _stamped_copy_path(path, backups_dir, "prewrite"))
        except OSError:
            pass
        _prune_copies(path, backups_dir, keep_backups)
    fd, tmp = tempfile.mkstemp(prefix=".tmp_", suffix=".json", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)
            f.write("\n")
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)


def quarantine(path: str, backups_dir: str) -> Optional[str]:
    """Move an unreadable file aside so defaults can be written in its place."""
    if not os.path.exists(path):
        return None
    ensure_dirs(backups_dir)
    out = _stamped_copy_path(path, backups_dir, "corrupt")
    try:
        shutil.move(path, out)
    except OSError:
        return None
    return out
