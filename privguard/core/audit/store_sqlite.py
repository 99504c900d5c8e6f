from __future__ import annotations

import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional


class AuditSqliteIndex:
    """Query index over audit events. The JSONL chain stays the source of truth."""

    def __init__(self, *, path: str):
        self.path = path
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._init()

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, check_same_thread=False, timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init(self) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS audit_events (
                      event_id TEXT PRIMARY KEY,
                      ts REAL NOT NULL,
                      event_type TEXT,
                      subject_id TEXT,
                      result TEXT,
                      trace_id TEXT,
                      json TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_ts ON audit_events(ts);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_subject ON audit_events(subject_id, ts);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_type ON audit_events(event_type, ts);")
                conn.commit()
            finally:
                conn.close()

    def upsert(self, event: Dict[str, Any]) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO audit_events(event_id, ts, event_type, subject_id, result, trace_id, json)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(event.get("id")),
                        float(event.get("timestamp") or 0.0),
                        str(event.get("event_type") or ""),
                        str(event.get("subject_id") or ""),
                        str(event.get("result") or ""),
                        event.get("trace_id"),
                        json.dumps(event, ensure_ascii=False, default=str),
                    ),
                )
                conn.commit()
            finally:
                conn.close()

    def query(
        self,
        *,
        subject_id: Optional[str] = None,
        event_type: Optional[str] = None,
        result: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: int = 200,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        where = []
        params: List[Any] = []
        if subject_id:
            where.append("subject_id = ?")
            params.append(str(subject_id))
        if event_type:
            where.append("event_type = ?")
            params.append(str(event_type))
        if result:
            where.append("result = ?")
            params.append(str(result))
        if since is not None:
            where.append("ts >= ?")
            params.append(float(since))
        if until is not None:
            where.append("ts <= ?")
            params.append(float(until))

        sql = "SELECT json FROM audit_events"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY ts DESC, rowid DESC LIMIT ? OFFSET ?"
        params.append(int(limit))
        params.append(int(offset))
        out: List[Dict[str, Any]] = []
        with self._lock:
            conn = self._conn()
            try:
                for (blob,) in conn.execute(sql, params):
                    try:
                        out.append(json.loads(blob))
                    except ValueError:
                        continue
            finally:
                conn.close()
        return out

    def delete_older_than(self, cutoff_ts: float) -> int:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute("DELETE FROM audit_events WHERE ts < ?", (float(cutoff_ts),))
                conn.commit()
                return int(cur.rowcount or 0)
            finally:
                conn.close()

    def count(self) -> int:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT COUNT(1) FROM audit_events").fetchone()
                return int(row[0] if row else 0)
            finally:
                conn.close()
