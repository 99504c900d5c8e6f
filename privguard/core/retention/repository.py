from __future__ import annotations

import os
import sqlite3
import threading
from typing import Dict, List, Optional, Protocol

from privguard.core.retention.models import SWEEPABLE, RetentionRecord, RetentionStatus


class RetentionRepository(Protocol):
    def insert(self, rec: RetentionRecord) -> bool: ...
    def get(self, record_id: str) -> Optional[RetentionRecord]: ...
    def get_open(self, subject_id: str, policy_id: str) -> Optional[RetentionRecord]: ...
    def update(self, rec: RetentionRecord) -> None: ...
    def list_for_subject(self, subject_id: str) -> List[RetentionRecord]: ...
    def list_due(self, before: float) -> List[RetentionRecord]: ...
    def delete(self, record_id: str) -> bool: ...
    def count_by_status(self) -> Dict[str, int]: ...
    def get_hold(self, subject_id: str) -> Optional[str]: ...
    def set_hold(self, subject_id: str, reason: str, placed_at: float) -> None: ...
    def clear_hold(self, subject_id: str) -> bool: ...


class SqliteRetentionRepository:
    """
    Retention records in SQLite.

    At most one non-completed record exists per (subject_id, policy_id); the
    partial unique index enforces it, so a racing insert returns False.
    Legal holds are kept per subject in their own table so records opened
    after the hold inherit it.
    """

    def __init__(self, *, db_path: str):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._init_db()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.DatabaseError:
            pass
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS retention_records (
                      record_id TEXT PRIMARY KEY,
                      subject_id TEXT NOT NULL,
                      policy_id TEXT NOT NULL,
                      data_type TEXT NOT NULL,
                      status TEXT NOT NULL,
                      legal_hold INTEGER NOT NULL DEFAULT 0,
                      retention_end REAL NOT NULL,
                      grace_end REAL,
                      updated_at REAL NOT NULL,
                      record_json TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE UNIQUE INDEX IF NOT EXISTS ux_retention_open
                    ON retention_records(subject_id, policy_id) WHERE status != 'completed'
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_retention_subject ON retention_records(subject_id);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_retention_due ON retention_records(status, retention_end);")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS legal_holds (
                      subject_id TEXT PRIMARY KEY,
                      reason TEXT NOT NULL,
                      placed_at REAL NOT NULL
                    )
                    """
                )
                conn.commit()
            finally:
                conn.close()

    @staticmethod
    def _params(rec: RetentionRecord) -> tuple:
        return (
            rec.subject_id,
            rec.policy_id,
            rec.data_type,
            rec.status.value,
            1 if rec.legal_hold else 0,
            float(rec.retention_end),
            float(rec.grace_end) if rec.grace_end is not None else None,
            float(rec.updated_at),
            rec.model_dump_json(),
        )

    @staticmethod
    def _rows(rows) -> List[RetentionRecord]:
        return [RetentionRecord.model_validate_json(r["record_json"]) for r in rows or []]

    def insert(self, rec: RetentionRecord) -> bool:
        with self._lock:
            conn = self._conn()
            try:
                try:
                    conn.execute(
                        """
                        INSERT INTO retention_records(
                          record_id, subject_id, policy_id, data_type, status, legal_hold,
                          retention_end, grace_end, updated_at, record_json
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (rec.id,) + self._params(rec),
                    )
                except sqlite3.IntegrityError:
                    conn.rollback()
                    return False
                conn.commit()
                return True
            finally:
                conn.close()

    def get(self, record_id: str) -> Optional[RetentionRecord]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT record_json FROM retention_records WHERE record_id=?", (str(record_id),)).fetchone()
            finally:
                conn.close()
        return RetentionRecord.model_validate_json(row["record_json"]) if row is not None else None

    def get_open(self, subject_id: str, policy_id: str) -> Optional[RetentionRecord]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT record_json FROM retention_records WHERE subject_id=? AND policy_id=? AND status != 'completed'",
                    (str(subject_id), str(policy_id)),
                ).fetchone()
            finally:
                conn.close()
        return RetentionRecord.model_validate_json(row["record_json"]) if row is not None else None

    def update(self, rec: RetentionRecord) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    UPDATE retention_records SET
                      subject_id=?, policy_id=?, data_type=?, status=?, legal_hold=?,
                      retention_end=?, grace_end=?, updated_at=?, record_json=?
                    WHERE record_id=?
                    """,
                    self._params(rec) + (rec.id,),
                )
                conn.commit()
            finally:
                conn.close()

    def list_for_subject(self, subject_id: str) -> List[RetentionRecord]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT record_json FROM retention_records WHERE subject_id=? ORDER BY retention_end ASC",
                    (str(subject_id),),
                ).fetchall()
            finally:
                conn.close()
        return self._rows(rows)

    def list_due(self, before: float) -> List[RetentionRecord]:
        marks = ",".join("?" for _ in SWEEPABLE)
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    f"""
                    SELECT record_json FROM retention_records
                    WHERE status IN ({marks}) AND retention_end < ?
                    ORDER BY retention_end ASC
                    """,
                    tuple(s.value for s in SWEEPABLE) + (float(before),),
                ).fetchall()
            finally:
                conn.close()
        return self._rows(rows)

    def delete(self, record_id: str) -> bool:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute("DELETE FROM retention_records WHERE record_id=?", (str(record_id),))
                conn.commit()
                return int(cur.rowcount or 0) > 0
            finally:
                conn.close()

    def count_by_status(self) -> Dict[str, int]:
        out = {s.value: 0 for s in RetentionStatus}
        with self._lock:
            conn = self._conn()
            try:
                for r in conn.execute("SELECT status, COUNT(1) AS n FROM retention_records GROUP BY status").fetchall():
                    out[str(r["status"])] = int(r["n"])
            finally:
                conn.close()
        return out

    def get_hold(self, subject_id: str) -> Optional[str]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT reason FROM legal_holds WHERE subject_id=?", (str(subject_id),)).fetchone()
            finally:
                conn.close()
        return str(row["reason"]) if row is not None else None

    def set_hold(self, subject_id: str, reason: str, placed_at: float) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    INSERT INTO legal_holds(subject_id, reason, placed_at) VALUES (?, ?, ?)
                    ON CONFLICT(subject_id) DO UPDATE SET reason=excluded.reason, placed_at=excluded.placed_at
                    """,
                    (str(subject_id), str(reason), float(placed_at)),
                )
                conn.commit()
            finally:
                conn.close()

    def clear_hold(self, subject_id: str) -> bool:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute("DELETE FROM legal_holds WHERE subject_id=?", (str(subject_id),))
                conn.commit()
                return int(cur.rowcount or 0) > 0
            finally:
                conn.close()
