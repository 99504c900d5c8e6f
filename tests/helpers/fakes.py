from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self._t = float(start)

    def __call__(self) -> float:
        return self._t

    def time(self) -> float:
        return self._t

    def advance(self, seconds: float) -> None:
        self._t += float(seconds)


@dataclass
class FakeDataSystem:
    """In-memory subject data store implementing SubjectDataHooks."""

    rows: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    fail: bool = False
    erased: List[str] = field(default_factory=list)

    def export(self, *, subject_id: str) -> Dict[str, Any]:
        if self.fail:
            raise RuntimeError("export failed")
        return dict(self.rows.get(subject_id) or {})

    def erase(self, *, subject_id: str) -> int:
        if self.fail:
            raise RuntimeError("erase failed")
        self.erased.append(subject_id)
        return 1 if self.rows.pop(subject_id, None) is not None else 0

    def rectify(self, *, subject_id: str, updates: Dict[str, Any]) -> List[str]:
        if self.fail:
            raise RuntimeError("rectify failed")
        row = self.rows.setdefault(subject_id, {})
        row.update(updates)
        return sorted(updates.keys())


class DummyLogger:
    def __init__(self) -> None:
        self.lines: List[str] = []

    def info(self, msg: str, *_a, **_k) -> None:
        self.lines.append(str(msg))

    def warning(self, msg: str, *_a, **_k) -> None:
        self.lines.append(str(msg))

    def error(self, msg: str, *_a, **_k) -> None:
        self.lines.append(str(msg))
