from __future__ import annotations

import time
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from privguard.core.pii.models import PIISensitivity, PIIType


class FieldDataType(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    JSON = "json"
    BINARY = "binary"


class DataSource(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = Field(default="api", max_length=64)  # api, form, import...
    name: str = Field(min_length=1, max_length=200)
    location: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    collected_at: float = Field(default_factory=lambda: time.time())


class DataDestination(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = Field(default="database", max_length=64)  # database, cache, export, api...
    name: str = Field(min_length=1, max_length=200)
    location: str = ""
    purpose: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    accessed_at: float = Field(default_factory=lambda: time.time())


class DataTransformation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = Field(min_length=1, max_length=64)  # anonymize, encrypt, aggregate...
    method: str = ""
    applied: bool = True
    metadata: Dict[str, str] = Field(default_factory=dict)
    applied_at: float = Field(default_factory=lambda: time.time())


class AccessPattern(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor: str
    action: str
    frequency: str = ""
    purpose: str = ""
    last_access: float
    access_count: int = Field(default=1, ge=0)


class RetentionRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str = ""
    retention_period: int = Field(default=0, ge=0)
    delete_after: int = Field(default=0, ge=0)
    archive_after: int = Field(default=0, ge=0)
    legal_hold: bool = False
    justification: str = ""


class DataMapping(BaseModel):
    """Compliance metadata for one field name: what it holds, why, for how long, and where it goes."""

    model_config = ConfigDict(extra="forbid")

    field_name: str = ""
    data_type: FieldDataType = FieldDataType.STRING
    pii_type: Optional[PIIType] = None
    sensitivity: Optional[PIISensitivity] = None
    legal_basis: str = ""
    purposes: List[str] = Field(default_factory=list)
    retention: RetentionRule = Field(default_factory=RetentionRule)
    sources: List[DataSource] = Field(default_factory=list)
    destinations: List[DataDestination] = Field(default_factory=list)
    transformations: List[DataTransformation] = Field(default_factory=list)
    access_patterns: List[AccessPattern] = Field(default_factory=list)
    created_at: float = 0.0
    updated_at: float = 0.0

    def is_encrypted(self) -> bool:
        return any(t.type == "encrypt" and t.applied for t in self.transformations)


class DataInventoryItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1, max_length=128)
    name: str = ""
    description: str = ""
    category: str = ""
    owner: str = ""
    steward: str = ""
    location: str = ""
    format: str = ""
    volume: int = Field(default=0, ge=0)
    pii_fields: List[str] = Field(default_factory=list)
    sensitivity_level: Optional[PIISensitivity] = None
    retention_policy: str = ""
    backup_locations: List[str] = Field(default_factory=list)
    access_controls: List[str] = Field(default_factory=list)
    encryption_status: str = ""
    last_audit: Optional[float] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class ViolationSeverity(str, Enum):
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MappingViolation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    field: str
    severity: ViolationSeverity
    description: str
    recommendation: str = ""
    detected_at: float
