from __future__ import annotations

import time
from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field


class PIIType(str, Enum):
    EMAIL = "email"
    CPF = "cpf"
    CNPJ = "cnpj"
    PHONE = "phone"
    CREDIT_CARD = "credit_card"
    IP_ADDRESS = "ip_address"
    SSN = "ssn"
    PASSPORT = "passport"
    DATE_OF_BIRTH = "date_of_birth"
    ADDRESS = "address"
    NAME = "name"
    USERNAME = "username"
    CUSTOM = "custom"


class PIISensitivity(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"


class AnonymizationMethod(str, Enum):
    HASH = "hash"
    ENCRYPT = "encrypt"
    TOKENIZE = "tokenize"
    REDACT = "redact"
    GENERALIZE = "generalize"
    SHUFFLE = "shuffle"
    NOISE = "noise"


DEFAULT_METHODS: Dict[PIIType, AnonymizationMethod] = {
    PIIType.EMAIL: AnonymizationMethod.HASH,
    PIIType.CPF: AnonymizationMethod.TOKENIZE,
    PIIType.CNPJ: AnonymizationMethod.TOKENIZE,
    PIIType.CREDIT_CARD: AnonymizationMethod.TOKENIZE,
    PIIType.PHONE: AnonymizationMethod.GENERALIZE,
    PIIType.NAME: AnonymizationMethod.GENERALIZE,
    PIIType.SSN: AnonymizationMethod.REDACT,
}


def method_for(pii_type: PIIType) -> AnonymizationMethod:
    return DEFAULT_METHODS.get(pii_type, AnonymizationMethod.HASH)


class PIIClassification(BaseModel):
    """What was found in one field. Never carries the raw value."""

    model_config = ConfigDict(extra="forbid")

    field_name: str
    pii_type: PIIType
    sensitivity: PIISensitivity
    confidence: float = Field(ge=0.0, le=1.0)
    anonymization_method: AnonymizationMethod
    timestamp: float = Field(default_factory=lambda: time.time())
    evidence: Dict[str, str] = Field(default_factory=dict)


class PIIScanResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    detected_fields: List[str] = Field(default_factory=list)
    classifications: Dict[str, PIIClassification] = Field(default_factory=dict)
    total_fields: int = 0
    pii_fields: int = 0
    scanned_at: float = Field(default_factory=lambda: time.time())
