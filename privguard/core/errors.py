from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from privguard.core.audit.redaction import redact_value


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass(eq=False)
class PrivGuardError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return self.user_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact_value(self.context or {}),
        }


# ---- Input / configuration ----
class ValidationError(PrivGuardError):
    def __init__(self, user_message: str = "Invalid request.", **ctx: Any):
        super().__init__("validation_error", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ConfigError(PrivGuardError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class ComplianceDisabledError(PrivGuardError):
    def __init__(self, user_message: str = "Compliance subsystem is disabled.", **ctx: Any):
        super().__init__("compliance_disabled", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


# ---- Policy ----
class ConsentDeniedError(PrivGuardError):
    def __init__(self, purpose: str = "", **ctx: Any):
        ctx.setdefault("purpose", purpose)
        super().__init__(
            "consent_denied",
            f"no valid consent for purpose: {purpose}",
            severity=Severity.WARN,
            recoverable=False,
            context=ctx,
        )


class UnsupportedRightError(PrivGuardError):
    def __init__(self, request_type: str = "", **ctx: Any):
        ctx.setdefault("request_type", request_type)
        super().__init__(
            "unsupported_right",
            f"unsupported data right type: {request_type}",
            severity=Severity.WARN,
            recoverable=False,
            context=ctx,
        )


# ---- Stage failures ----
class PIIProcessingError(PrivGuardError):
    def __init__(self, user_message: str = "PII processing failed.", **ctx: Any):
        super().__init__("pii_processing_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)


class ConcurrentModificationError(PrivGuardError):
    def __init__(self, user_message: str = "Record was modified concurrently.", **ctx: Any):
        super().__init__("concurrent_modification", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- Not found ----
class NotFoundError(PrivGuardError):
    def __init__(self, user_message: str = "Not found.", *, code: str = "not_found", **ctx: Any):
        super().__init__(code, user_message, severity=Severity.WARN, recoverable=False, context=ctx)


class ConsentNotFoundError(NotFoundError):
    def __init__(self, user_message: str = "Consent not found.", **ctx: Any):
        super().__init__(user_message, code="consent_not_found", **ctx)


class RetentionRecordNotFoundError(NotFoundError):
    def __init__(self, user_message: str = "No retention records found for subject.", **ctx: Any):
        super().__init__(user_message, code="retention_record_not_found", **ctx)


class FieldNotMappedError(NotFoundError):
    def __init__(self, field_name: str, **ctx: Any):
        super().__init__(f"field not mapped: {field_name}", code="field_not_mapped", field_name=field_name, **ctx)


# ---- Cancellation ----
class RequestCancelledError(PrivGuardError):
    def __init__(self, user_message: str = "Request was cancelled.", **ctx: Any):
        super().__init__("request_cancelled", user_message, severity=Severity.INFO, recoverable=True, context=ctx)


class DeadlineExceededError(RequestCancelledError):
    def __init__(self, user_message: str = "Request deadline exceeded.", **ctx: Any):
        PrivGuardError.__init__(self, "deadline_exceeded", user_message, severity=Severity.WARN, recoverable=True, context=ctx)
