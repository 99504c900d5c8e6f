from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional, Protocol

from privguard.core.pii.models import AnonymizationMethod
from privguard.core.pii.vault import TokenVault

TOKEN_PREFIX = "TKN_"


class Anonymizer(Protocol):
    method: AnonymizationMethod

    def anonymize(self, value: Any, context: Optional[Dict[str, Any]] = None) -> str: ...
    def is_reversible(self) -> bool: ...


class HashAnonymizer:
    """SHA-256 hex digest of salt + value. Deterministic, one-way."""

    method = AnonymizationMethod.HASH

    def __init__(self, salt: str = ""):
        self.salt = str(salt or "")

    def anonymize(self, value: Any, context: Optional[Dict[str, Any]] = None) -> str:
        return hashlib.sha256((self.salt + str(value)).encode("utf-8")).hexdigest()

    def is_reversible(self) -> bool:
        return False


class TokenizeAnonymizer:
    """
    Deterministic `TKN_<16 hex>` token.

    Reversible only when a vault is attached; the vault keeps the encrypted
    original under the token.
    """

    method = AnonymizationMethod.TOKENIZE

    def __init__(self, vault: Optional[TokenVault] = None):
        self.vault = vault

    @staticmethod
    def token_for(value: Any) -> str:
        digest = hashlib.sha256(str(value).encode("utf-8")).digest()
        return TOKEN_PREFIX + digest[:8].hex()

    def anonymize(self, value: Any, context: Optional[Dict[str, Any]] = None) -> str:
        token = self.token_for(value)
        if self.vault is not None:
            pii_type = str((context or {}).get("pii_type") or "")
            self.vault.store(token, str(value), pii_type=pii_type)
        return token

    def detokenize(self, token: str) -> Optional[str]:
        if self.vault is None:
            return None
        return self.vault.detokenize(token)

    def is_reversible(self) -> bool:
        return self.vault is not None


class RedactAnonymizer:
    method = AnonymizationMethod.REDACT

    def anonymize(self, value: Any, context: Optional[Dict[str, Any]] = None) -> str:
        s = str(value)
        if len(s) <= 4:
            return "****"
        return s[:2] + "*" * (len(s) - 4) + s[-2:]

    def is_reversible(self) -> bool:
        return False


class GeneralizeAnonymizer:
    method = AnonymizationMethod.GENERALIZE

    def anonymize(self, value: Any, context: Optional[Dict[str, Any]] = None) -> str:
        s = str(value)
        if len(s) <= 3:
            return "***"
        return s[0] + "*" * (len(s) - 1)

    def is_reversible(self) -> bool:
        return False


def default_anonymizers(*, salt: str = "", vault: Optional[TokenVault] = None) -> Dict[AnonymizationMethod, Anonymizer]:
    return {
        AnonymizationMethod.HASH: HashAnonymizer(salt),
        AnonymizationMethod.TOKENIZE: TokenizeAnonymizer(vault),
        AnonymizationMethod.REDACT: RedactAnonymizer(),
        AnonymizationMethod.GENERALIZE: GeneralizeAnonymizer(),
    }
