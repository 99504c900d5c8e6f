from __future__ import annotations

import re
from typing import Any, Dict

_SECRET_KEYS = {
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "token",
    "access_key",
    "authorization",
    "secret",
    "encryption_key",
    "key",
}

_BEARER_RE = re.compile(r"(authorization:\s*bearer\s+)([A-Za-z0-9\-\._~\+/]+=*)", re.IGNORECASE)
_KV_RE = re.compile(r"(?i)\b(password|passphrase|token|api[_-]?key|access[_-]?key)\s*=\s*([^\s,;]+)")

MAX_STR = 500
MAX_ITEMS = 100


def redact_value(v: Any) -> Any:
    """Strip credentials out of arbitrary nested values before they reach a log or audit sink."""
    if v is None:
        return None
    if isinstance(v, (int, float, bool)):
        return v
    if isinstance(v, (bytes, bytearray)):
        return "<bytes>"
    if isinstance(v, str):
        s = _BEARER_RE.sub(r"\1<redacted>", v)
        s = _KV_RE.sub(r"\1=<redacted>", s)
        if len(s) > MAX_STR:
            s = s[:MAX_STR] + "..."
        return s
    if isinstance(v, (list, tuple)):
        return [redact_value(x) for x in list(v)[:MAX_ITEMS]]
    if isinstance(v, dict):
        out: Dict[str, Any] = {}
        for k, vv in list(v.items())[:MAX_ITEMS]:
            kk = str(k)
            if kk.lower() in _SECRET_KEYS:
                out[kk] = "<redacted>"
                continue
            out[kk] = redact_value(vv)
        return out
    return str(v)[:MAX_STR]


def redact_details(details: Dict[str, Any]) -> Dict[str, Any]:
    d = redact_value(details or {})
    if not isinstance(d, dict):
        return {}
    return d
