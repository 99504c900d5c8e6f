from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ConsentSource(str, Enum):
    WEB = "web"
    MOBILE = "mobile"
    API = "api"
    PHONE = "phone"
    EMAIL = "email"
    PAPER = "paper"
    IMPORT = "import"


class LegalBasis(str, Enum):
    # GDPR art. 6(1)
    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    VITAL_INTERESTS = "vital_interests"
    PUBLIC_TASK = "public_task"
    LEGITIMATE_INTERESTS = "legitimate_interests"
    # LGPD art. 7 (additional bases)
    RESEARCH = "research"
    EXERCISE_OF_RIGHTS = "exercise_of_rights"
    HEALTH_PROTECTION = "health_protection"
    CREDIT_PROTECTION = "credit_protection"


class ValidationReason(str, Enum):
    NOT_FOUND = "not_found"
    NOT_GRANTED = "not_granted"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    VALID = "valid"
    DISABLED = "disabled"


class ConsentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject_id: str = ""
    purpose: str = ""
    granted: bool = True
    legal_basis: str = ""
    source: ConsentSource = ConsentSource.API
    expiration_days: Optional[int] = Field(default=None, ge=0)
    ip_address: str = ""
    user_agent: str = ""
    consent_string: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConsentRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject_id: str = Field(min_length=1)
    purpose: str = Field(min_length=1)
    granted: bool = False
    legal_basis: str = Field(min_length=1)
    source: ConsentSource = ConsentSource.API
    granted_at: float = Field(default_factory=lambda: time.time())
    expires_at: Optional[float] = None
    withdrawn_at: Optional[float] = None
    ip_address: str = ""
    user_agent: str = ""
    consent_string: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=1, ge=1)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())

    def is_active(self, now: Optional[float] = None) -> bool:
        if not self.granted or self.withdrawn_at is not None:
            return False
        if self.expires_at is not None and float(self.expires_at) < float(now if now is not None else time.time()):
            return False
        return True


class ConsentHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    seq: int
    action: str
    recorded_at: float
    record: ConsentRecord


class ConsentValidation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    valid: bool
    reason: ValidationReason
    consent: Optional[ConsentRecord] = None
    required_actions: List[str] = Field(default_factory=list)
    remaining_ttl: Optional[float] = None
