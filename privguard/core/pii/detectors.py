from __future__ import annotations

import ipaddress
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple

from privguard.core.pii.models import PIISensitivity, PIIType

Detection = Tuple[bool, float, Dict[str, str]]

NO_MATCH: Detection = (False, 0.0, {})


class PIIDetector(Protocol):
    pii_type: PIIType

    def detect(self, field_name: str, value: Any) -> Detection: ...
    def sensitivity(self) -> PIISensitivity: ...


def digits_only(s: str) -> str:
    return "".join(ch for ch in str(s or "") if ch.isdigit())


def cpf_is_valid(value: str) -> bool:
    d = digits_only(value)
    if len(d) != 11 or len(set(d)) == 1:
        return False
    nums = [int(c) for c in d]
    d9 = (sum(nums[i] * (10 - i) for i in range(9)) * 10) % 11
    if d9 == 10:
        d9 = 0
    if d9 != nums[9]:
        return False
    d10 = (sum(nums[i] * (11 - i) for i in range(10)) * 10) % 11
    if d10 == 10:
        d10 = 0
    return d10 == nums[10]


_CNPJ_W1 = (5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)
_CNPJ_W2 = (6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2)


def cnpj_is_valid(value: str) -> bool:
    d = digits_only(value)
    if len(d) != 14 or len(set(d)) == 1:
        return False
    nums = [int(c) for c in d]
    for weights, pos in ((_CNPJ_W1, 12), (_CNPJ_W2, 13)):
        r = sum(n * w for n, w in zip(nums, weights)) % 11
        check = 0 if r < 2 else 11 - r
        if check != nums[pos]:
            return False
    return True


def luhn_is_valid(value: str) -> bool:
    s = re.sub(r"[\s\-]", "", str(value or ""))
    if not s.isdigit() or not (13 <= len(s) <= 19):
        return False
    total = 0
    for i, ch in enumerate(reversed(s)):
        n = int(ch)
        if i % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


_SSN_RE = re.compile(r"^(\d{3})-(\d{2})-(\d{4})$")


def ssn_is_valid(value: str) -> bool:
    m = _SSN_RE.match(str(value or "").strip())
    if not m:
        return False
    area, group, serial = m.groups()
    if area in {"000", "666"} or area.startswith("9"):
        return False
    return group != "00" and serial != "0000"


class FieldDetector:
    """
    Base detector combining a value check with a field-name heuristic.

    Subclasses set the class attributes and implement `match_value`. Name
    hints are substring matches unless `exact_names` is set.
    """

    pii_type: PIIType = PIIType.CUSTOM
    level: PIISensitivity = PIISensitivity.CONFIDENTIAL
    value_confidence: float = 0.9
    value_pattern: str = ""
    name_hints: Tuple[str, ...] = ()
    name_confidence: float = 0.7
    exact_names: bool = False

    def sensitivity(self) -> PIISensitivity:
        return self.level

    def match_value(self, value: str) -> bool:
        return False

    def _name_matches(self, field_name: str) -> Optional[str]:
        f = str(field_name or "").strip().lower()
        for hint in self.name_hints:
            if (f == hint) if self.exact_names else (hint in f):
                return hint
        return None

    def detect(self, field_name: str, value: Any) -> Detection:
        if isinstance(value, str) and value.strip() and self.match_value(value.strip()):
            return True, self.value_confidence, {"pattern": self.value_pattern}
        hint = self._name_matches(field_name)
        if hint is not None:
            return True, self.name_confidence, {"field_name": hint}
        return NO_MATCH


class CPFDetector(FieldDetector):
    pii_type = PIIType.CPF
    level = PIISensitivity.RESTRICTED
    value_confidence = 0.98
    value_pattern = "cpf_validation"
    name_hints = ("cpf",)
    name_confidence = 0.8

    def match_value(self, value: str) -> bool:
        return cpf_is_valid(value)


class CNPJDetector(FieldDetector):
    pii_type = PIIType.CNPJ
    level = PIISensitivity.CONFIDENTIAL
    value_confidence = 0.98
    value_pattern = "cnpj_validation"
    name_hints = ("cnpj",)
    name_confidence = 0.8

    def match_value(self, value: str) -> bool:
        return cnpj_is_valid(value)


class CreditCardDetector(FieldDetector):
    pii_type = PIIType.CREDIT_CARD
    level = PIISensitivity.RESTRICTED
    value_confidence = 0.95
    value_pattern = "luhn"
    name_hints = ("credit_card", "card_number", "cc_number")
    name_confidence = 0.75

    def match_value(self, value: str) -> bool:
        return luhn_is_valid(value)


class SSNDetector(FieldDetector):
    pii_type = PIIType.SSN
    level = PIISensitivity.RESTRICTED
    value_confidence = 0.9
    value_pattern = "ssn_format"
    name_hints = ("ssn", "social_security", "social_security_number")
    name_confidence = 0.8
    exact_names = True

    def match_value(self, value: str) -> bool:
        return ssn_is_valid(value)


_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


class EmailDetector(FieldDetector):
    pii_type = PIIType.EMAIL
    level = PIISensitivity.CONFIDENTIAL
    value_confidence = 0.95
    value_pattern = "email_regex"
    name_hints = ("email", "e-mail")

    def match_value(self, value: str) -> bool:
        return bool(_EMAIL_RE.match(value))


class IPAddressDetector(FieldDetector):
    pii_type = PIIType.IP_ADDRESS
    level = PIISensitivity.INTERNAL
    value_confidence = 0.9
    value_pattern = "ip_parse"
    name_hints = ("ip", "ip_address", "client_ip", "remote_ip", "remote_addr")
    exact_names = True

    def match_value(self, value: str) -> bool:
        try:
            ipaddress.ip_address(value)
        except ValueError:
            return False
        return True


_PHONE_RE = re.compile(r"^[\+]?[1-9]?[\d\s\-\(\)]{7,15}$")


class PhoneDetector(FieldDetector):
    pii_type = PIIType.PHONE
    level = PIISensitivity.CONFIDENTIAL
    value_confidence = 0.8
    value_pattern = "phone_regex"
    name_hints = ("phone", "telefone", "celular", "mobile")

    def match_value(self, value: str) -> bool:
        return bool(_PHONE_RE.match(value))


class NameDetector(FieldDetector):
    pii_type = PIIType.NAME
    level = PIISensitivity.CONFIDENTIAL
    name_hints = ("name", "nome")


def default_detectors() -> List[FieldDetector]:
    # Priority order. On equal confidence the earlier detector wins.
    return [
        CPFDetector(),
        CNPJDetector(),
        CreditCardDetector(),
        SSNDetector(),
        EmailDetector(),
        IPAddressDetector(),
        PhoneDetector(),
        NameDetector(),
    ]
