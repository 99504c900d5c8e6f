from __future__ import annotations

import base64
import binascii
import hashlib
import os
import secrets
from typing import Dict, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from privguard.core.errors import ConfigError

AUDIT_KEY_ENV = "PRIVGUARD_AUDIT_ENCRYPTION_KEY"


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def key_id_from_key_bytes(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()[:16]


def generate_key_bytes() -> bytes:
    # AES-256 key
    return secrets.token_bytes(32)


def decode_key(raw: str) -> bytes:
    """
    Decode an AES-256 key given as 64 hex chars or standard base64.
    Raises ConfigError unless the result is exactly 32 bytes.
    """
    s = str(raw or "").strip()
    if not s:
        raise ConfigError("Encryption key is empty.")
    key: Optional[bytes] = None
    if len(s) == 64:
        try:
            key = bytes.fromhex(s)
        except ValueError:
            key = None
    if key is None:
        try:
            key = base64.b64decode(s, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigError("Encryption key is neither hex nor base64.") from None
    if len(key) != 32:
        raise ConfigError("Encryption key must decode to 32 bytes (AES-256).", length=len(key))
    return key


def load_key_from_env(env_var: str = AUDIT_KEY_ENV, *, required: bool = True) -> Optional[bytes]:
    raw = os.environ.get(env_var)
    if not raw:
        if required:
            raise ConfigError(f"{env_var} is not set.", env_var=env_var)
        return None
    return decode_key(raw)


def best_effort_restrict_permissions(path: str) -> None:
    try:
        if os.name != "nt":
            os.chmod(path, 0o600)
    except OSError:
        return


def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: bytes = b"") -> Dict[str, str]:
    aes = AESGCM(key)
    nonce = secrets.token_bytes(12)
    ct = aes.encrypt(nonce, plaintext, aad or None)
    return {"v": 1, "nonce": _b64e(nonce), "ciphertext": _b64e(ct)}


def aesgcm_decrypt(key: bytes, blob: Dict[str, str], aad: bytes = b"") -> bytes:
    if blob.get("v") != 1:
        raise ValueError("Unsupported encrypted blob version.")
    aes = AESGCM(key)
    nonce = _b64d(blob["nonce"])
    ct = _b64d(blob["ciphertext"])
    return aes.decrypt(nonce, ct, aad or None)
