from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
from typing import Any, Dict, Optional

from privguard.core.crypto import aesgcm_decrypt, aesgcm_encrypt, best_effort_restrict_permissions, key_id_from_key_bytes
from privguard.core.logger import get_logger


class TokenVault:
    """
    Token -> original value mapping (SQLite, AES-GCM at rest).

    Values are encrypted with the token as associated data, so a row copied
    under another token fails to decrypt.
    """

    def __init__(self, *, db_path: str, key: bytes, logger: Any = None):
        if len(key) != 32:
            raise ValueError("Token vault key must be 32 bytes (AES-256).")
        self.db_path = str(db_path)
        self._key = key
        self.key_id = key_id_from_key_bytes(key)
        self.logger = get_logger("pii.vault", logger)
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        self._init_db()
        best_effort_restrict_permissions(self.db_path)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn

    def _init_db(self) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS token_vault (
                      token TEXT PRIMARY KEY,
                      pii_type TEXT,
                      key_id TEXT NOT NULL,
                      blob_json TEXT NOT NULL,
                      created_at REAL NOT NULL
                    )
                    """
                )
                conn.commit()
            finally:
                conn.close()

    def store(self, token: str, value: str, *, pii_type: str = "") -> None:
        blob = aesgcm_encrypt(self._key, str(value).encode("utf-8"), aad=token.encode("utf-8"))
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO token_vault(token, pii_type, key_id, blob_json, created_at) VALUES (?, ?, ?, ?, ?)",
                    (token, str(pii_type or ""), self.key_id, json.dumps(blob), time.time()),
                )
                conn.commit()
            finally:
                conn.close()

    def detokenize(self, token: str) -> Optional[str]:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT key_id, blob_json FROM token_vault WHERE token=?", (str(token),)).fetchone()
            finally:
                conn.close()
        if row is None:
            return None
        if str(row["key_id"]) != self.key_id:
            self.logger.warning(f"Token vault entry {token[:8]}... was written with a different key")
            return None
        blob: Dict[str, Any] = json.loads(row["blob_json"])
        return aesgcm_decrypt(self._key, blob, aad=str(token).encode("utf-8")).decode("utf-8")

    def delete(self, token: str) -> bool:
        with self._lock:
            conn = self._conn()
            try:
                cur = conn.execute("DELETE FROM token_vault WHERE token=?", (str(token),))
                conn.commit()
                return int(cur.rowcount or 0) > 0
            finally:
                conn.close()

    def count(self) -> int:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute("SELECT COUNT(1) FROM token_vault").fetchone()
                return int(row[0] if row else 0)
            finally:
                conn.close()
