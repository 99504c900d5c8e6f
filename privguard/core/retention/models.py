from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RetentionAction(str, Enum):
    DELETE = "delete"
    ARCHIVE = "archive"
    ANONYMIZE = "anonymize"
    NOTIFY = "notify"
    REVIEW = "review"
    PURGE = "purge"


class RetentionStatus(str, Enum):
    ACTIVE = "active"
    EXTENDED = "extended"
    ON_HOLD = "on_hold"
    EXPIRED = "expired"
    PROCESSING = "processing"
    COMPLETED = "completed"


SWEEPABLE = (RetentionStatus.ACTIVE, RetentionStatus.EXTENDED)


class RetentionCondition(BaseModel):
    model_config = ConfigDict(extra="forbid")

    field: str = Field(min_length=1)
    operator: str = "eq"
    value: Any = None
    logic: str = "AND"

    @field_validator("operator")
    @classmethod
    def _op(cls, v: str) -> str:
        s = str(v or "").strip().lower()
        if s not in {"eq", "ne", "exists", "not_exists", "in", "contains", "gt", "lt"}:
            raise ValueError(f"unsupported condition operator: {v}")
        return s

    @field_validator("logic")
    @classmethod
    def _logic(cls, v: str) -> str:
        s = str(v or "AND").strip().upper()
        if s not in {"AND", "OR"}:
            raise ValueError("logic must be AND or OR")
        return s


class RetentionException(BaseModel):
    """Extends the period for records matching `conditions` (e.g. open litigation, tax audit)."""

    model_config = ConfigDict(extra="forbid")

    reason: str
    extend_by: int = Field(ge=0)
    conditions: List[RetentionCondition] = Field(default_factory=list)
    approved_by: str = ""
    approved_at: float = Field(default_factory=lambda: time.time())
    expires_at: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    category: str = ""
    retention_period: int = Field(ge=1)
    grace_period: int = Field(default=0, ge=0)
    action: RetentionAction = RetentionAction.DELETE
    priority: int = 100
    conditions: List[RetentionCondition] = Field(default_factory=list)
    exceptions: List[RetentionException] = Field(default_factory=list)
    legal_basis: List[str] = Field(default_factory=list)
    jurisdictions: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=lambda: time.time())
    updated_at: float = Field(default_factory=lambda: time.time())
    is_active: bool = True


class RetentionExtension(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str
    extend_by: int = Field(ge=1)
    extended_by: str = ""
    extended_at: float = Field(default_factory=lambda: time.time())
    expires_at: float
    approved: bool = True


class RetentionRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    subject_id: str = Field(min_length=1)
    data_type: str = "general_data"
    policy_id: str
    created_at: float = Field(default_factory=lambda: time.time())
    retention_start: float
    retention_end: float
    grace_end: Optional[float] = None
    status: RetentionStatus = RetentionStatus.ACTIVE
    action: RetentionAction = RetentionAction.DELETE
    action_taken: bool = False
    action_taken_at: Optional[float] = None
    legal_hold: bool = False
    legal_hold_reason: str = ""
    extensions: List[RetentionExtension] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    updated_at: float = Field(default_factory=lambda: time.time())

    def past_end(self, now: float) -> bool:
        return float(now) > float(self.retention_end)

    def in_grace(self, now: float) -> bool:
        return self.grace_end is not None and float(now) <= float(self.grace_end)
