from __future__ import annotations

import os
import sqlite3
import threading
from typing import List, Optional, Protocol

from privguard.core.consent.models import ConsentHistoryEntry, ConsentRecord
from privguard.core.errors import ConcurrentModificationError


class ConsentRepository(Protocol):
    def get(self, subject_id: str, purpose: str) -> Optional[ConsentRecord]: ...
    def insert(self, rec: ConsentRecord, *, action: str) -> None: ...
    def update(self, rec: ConsentRecord, *, expected_version: int, action: str) -> None: ...
    def list_for_subject(self, subject_id: str) -> List[ConsentRecord]: ...
    def history(self, subject_id: str, purpose: str) -> List[ConsentHistoryEntry]: ...
    def delete_subject(self, subject_id: str) -> int: ...
    def count(self) -> int: ...


class SqliteConsentRepository:
    """
    Durable consent storage.

    `consents` holds the current record per (subject_id, purpose); `consent_history`
    gets a full snapshot on every insert/update inside the same transaction.
    Updates are conditional on the stored version.
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
                    CREATE TABLE IF NOT EXISTS consents (
                      subject_id TEXT NOT NULL,
                      purpose TEXT NOT NULL,
                      consent_id TEXT NOT NULL,
                      version INTEGER NOT NULL,
                      updated_at REAL NOT NULL,
                      record_json TEXT NOT NULL,
                      PRIMARY KEY(subject_id, purpose)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS consent_history (
                      seq INTEGER PRIMARY KEY AUTOINCREMENT,
                      consent_id TEXT NOT NULL,
                      subject_id TEXT NOT NULL,
                      purpose TEXT NOT NULL,
                      version INTEGER NOT NULL,
                      action TEXT NOT NULL,
                      recorded_at REAL NOT NULL,
                      record_json TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_consent_hist_key ON consent_history(subject_id, purpose, seq);")
                conn.commit()
            finally:
                conn.close()

    @staticmethod
    def _append_history(conn: sqlite3.Connection, rec: ConsentRecord, action: str) -> None:
        conn.execute(
            """
            INSERT INTO consent_history(consent_id, subject_id, purpose, version, action, recorded_at, record_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (rec.id, rec.subject_id, rec.purpose, int(rec.version), str(action), float(rec.updated_at), rec.model_dump_json()),
        )

    def get(self, subject_id: str, purpose: str) -> Optional[ConsentRecord]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT record_json FROM consents WHERE subject_id=? AND purpose=?",
                    (str(subject_id), str(purpose)),
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            return None
        return ConsentRecord.model_validate_json(row["record_json"])

    def insert(self, rec: ConsentRecord, *, action: str) -> None:
        with self._lock:
            conn = self._conn()
            try:
                try:
                    conn.execute(
                        """
                        INSERT INTO consents(subject_id, purpose, consent_id, version, updated_at, record_json)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (rec.subject_id, rec.purpose, rec.id, int(rec.version), float(rec.updated_at), rec.model_dump_json()),
                    )
                except sqlite3.IntegrityError as e:
                    conn.rollback()
                    raise ConcurrentModificationError(
                        "Consent already exists for subject and purpose.",
                        subject_id=rec.subject_id,
                        purpose=rec.purpose,
                    ) from e
                self._append_history(conn, rec, action)
                conn.commit()
            finally:
                conn.close()

    def update(self, rec: ConsentRecord, *, expected_version: int, action: str) -> None:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute(
                    """
                    UPDATE consents SET version=?, updated_at=?, record_json=?
                    WHERE subject_id=? AND purpose=? AND version=?
                    """,
                    (int(rec.version), float(rec.updated_at), rec.model_dump_json(), rec.subject_id, rec.purpose, int(expected_version)),
                )
                if int(cur.rowcount or 0) != 1:
                    conn.rollback()
                    raise ConcurrentModificationError(
                        "Consent version changed since it was read.",
                        subject_id=rec.subject_id,
                        purpose=rec.purpose,
                        expected_version=int(expected_version),
                    )
                self._append_history(conn, rec, action)
                conn.commit()
            finally:
                conn.close()

    def list_for_subject(self, subject_id: str) -> List[ConsentRecord]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    "SELECT record_json FROM consents WHERE subject_id=? ORDER BY purpose ASC",
                    (str(subject_id),),
                ).fetchall()
            finally:
                conn.close()
        return [ConsentRecord.model_validate_json(r["record_json"]) for r in rows or []]

    def history(self, subject_id: str, purpose: str) -> List[ConsentHistoryEntry]:
        with self._lock:
            conn = self._conn()
            try:
                rows = conn.execute(
                    """
                    SELECT seq, action, recorded_at, record_json FROM consent_history
                    WHERE subject_id=? AND purpose=? ORDER BY seq ASC
                    """,
                    (str(subject_id), str(purpose)),
                ).fetchall()
            finally:
                conn.close()
        return [
            ConsentHistoryEntry(
                seq=int(r["seq"]),
                action=str(r["action"]),
                recorded_at=float(r["recorded_at"]),
                record=ConsentRecord.model_validate_json(r["record_json"]),
            )
            for r in rows or []
        ]

    def delete_subject(self, subject_id: str) -> int:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute("DELETE FROM consents WHERE subject_id=?", (str(subject_id),))
                n = int(cur.rowcount or 0)
                conn.execute("DELETE FROM consent_history WHERE subject_id=?", (str(subject_id),))
                conn.commit()
                return n
            finally:
                conn.close()

    def count(self) -> int:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT COUNT(1) FROM consents").fetchone()
                return int(row[0] if row else 0)
            finally:
                conn.close()
