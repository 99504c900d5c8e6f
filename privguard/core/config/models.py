from __future__ import annotations

from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

DAY = 86400
YEAR = 365 * DAY


class PIIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    scan_fields: List[str] = Field(default_factory=list)
    confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    auto_mask: bool = True
    hash_salt: str = ""


class ConsentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    default_purposes: List[str] = Field(default_factory=list)
    ttl_seconds: int = Field(default=2 * YEAR, ge=0)
    granularity_level: str = "purpose"

    @field_validator("granularity_level")
    @classmethod
    def _granularity(cls, v: str) -> str:
        s = str(v or "").strip().lower()
        if s not in {"purpose", "field", "operation"}:
            raise ValueError("granularity_level must be purpose|field|operation")
        return s


class RetentionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    default_period_seconds: int = Field(default=2 * YEAR, ge=1)
    default_grace_seconds: int = Field(default=30 * DAY, ge=0)
    per_category_periods: Dict[str, int] = Field(default_factory=dict)
    auto_delete: bool = True
    sweep_interval_seconds: int = Field(default=DAY, ge=1)

    @field_validator("per_category_periods")
    @classmethod
    def _positive_periods(cls, v: Dict[str, int]) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for k, p in dict(v or {}).items():
            if int(p) <= 0:
                raise ValueError(f"retention period for {k!r} must be positive")
            out[str(k)] = int(p)
        return out


class AuditConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    detail_level: str = "full"
    encryption_enabled: bool = False
    retention_period_seconds: int = Field(default=7 * YEAR, ge=1)
    path_jsonl: str = "logs/audit/compliance_audit.jsonl"
    sqlite_path: str = "logs/audit/index.sqlite"

    @field_validator("detail_level")
    @classmethod
    def _detail(cls, v: str) -> str:
        s = str(v or "").strip().lower()
        if s not in {"minimal", "standard", "full"}:
            raise ValueError("detail_level must be minimal|standard|full")
        return s


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = "runtime/compliance.sqlite"


class RightsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    portability_formats: List[str] = Field(default_factory=lambda: ["json", "csv"])


class MappingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    default_mappings: bool = True
    snapshot_path: str = "runtime/data_map.json"


class ComplianceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: int = Field(default=1, ge=1, le=10)
    enabled: bool = True
    default_region: str = "BR"
    pii: PIIConfig = Field(default_factory=PIIConfig)
    consent: ConsentConfig = Field(default_factory=ConsentConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    rights: RightsConfig = Field(default_factory=RightsConfig)
    mapping: MappingConfig = Field(default_factory=MappingConfig)


def default_compliance_config_dict() -> Dict:
    return ComplianceConfig().model_dump()
