from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditEventType(str, Enum):
    DATA_PROCESSING = "data_processing"
    CONSENT_GRANT = "consent_grant"
    CONSENT_WITHDRAW = "consent_withdraw"
    DATA_ACCESS = "data_access"
    DATA_EXPORT = "data_export"
    DATA_DELETE = "data_delete"
    DATA_RECTIFY = "data_rectify"
    RIGHTS_REQUEST = "rights_request"
    PII_DETECTION = "pii_detection"
    ANONYMIZATION = "anonymization"
    RETENTION_POLICY = "retention_policy"
    SECURITY_INCIDENT = "security_incident"
    COMPLIANCE_CHECK = "compliance_check"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    PENDING = "pending"


class DetailLevel(str, Enum):
    MINIMAL = "minimal"
    STANDARD = "standard"
    FULL = "full"


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = Field(default_factory=lambda: time.time())
    event_type: AuditEventType
    subject_id: str = ""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    trace_id: Optional[str] = None
    purpose: str = ""
    legal_basis: str = ""
    stage: str = ""
    data_categories: List[str] = Field(default_factory=list)
    processing_type: str = ""
    result: AuditResult = AuditResult.SUCCESS
    details: Dict[str, Any] = Field(default_factory=dict)
    encrypted_details: Optional[Dict[str, Any]] = None
    data_hash: Optional[str] = None
    compliance_flags: List[str] = Field(default_factory=list)
    encrypted: bool = False
    version: str = "1"
    service: str = "privguard"


class AuditFilter(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject_id: Optional[str] = None
    event_type: Optional[AuditEventType] = None
    result: Optional[AuditResult] = None
    since: Optional[float] = None
    until: Optional[float] = None
    limit: int = Field(default=200, ge=1, le=10000)
    offset: int = Field(default=0, ge=0)


class IntegrityReport(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ok: bool
    checked: int
    broken_at_line: Optional[int] = None
    message: str = ""
    head_hash: Optional[str] = None
