"""
Data subject rights (GDPR arts. 15-20 / LGPD art. 18).

The ledgers only know consents and retention records; systems that hold the
subject's actual data plug in through SubjectDataHooks.
"""

from __future__ import annotations

import csv
import io
import json
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from privguard.core.audit.models import AuditEventType, AuditFilter, AuditResult
from privguard.core.audit.recorder import AuditRecorder
from privguard.core.config.models import RightsConfig
from privguard.core.consent.ledger import ConsentLedger
from privguard.core.context import RequestContext, check_context
from privguard.core.errors import ConsentNotFoundError, PrivGuardError, UnsupportedRightError, ValidationError
from privguard.core.logger import get_logger
from privguard.core.retention.ledger import RetentionLedger


def iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(float(ts)))


class RightsRequestType(str, Enum):
    ACCESS = "access"
    ERASURE = "erasure"
    RECTIFICATION = "rectification"
    PORTABILITY = "portability"
    WITHDRAW_CONSENT = "withdraw_consent"


class RightsStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    REJECTED = "rejected"


class RightsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    subject_id: str = ""
    status: RightsStatus = RightsStatus.PENDING
    requested_at: float = Field(default_factory=lambda: time.time())
    completed_at: Optional[float] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    reason: str = ""
    result: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v: Any) -> Any:
        return v.value if isinstance(v, Enum) else v


class SubjectDataHooks(Protocol):
    """Interface for systems that own data about a subject."""

    def export(self, *, subject_id: str) -> Dict[str, Any]: ...
    def erase(self, *, subject_id: str) -> int: ...
    def rectify(self, *, subject_id: str, updates: Dict[str, Any]) -> List[str]: ...


class HooksRegistry:
    def __init__(self) -> None:
        self._hooks: Dict[str, SubjectDataHooks] = {}

    def register(self, system_id: str, hooks: SubjectDataHooks) -> None:
        self._hooks[str(system_id)] = hooks

    def unregister(self, system_id: str) -> None:
        self._hooks.pop(str(system_id), None)

    def list(self) -> List[str]:
        return sorted(self._hooks.keys())

    def iter_hooks(self) -> List[Tuple[str, SubjectDataHooks]]:
        return [(k, self._hooks[k]) for k in sorted(self._hooks.keys())]


Handler = Callable[[RightsRequest, Optional[RequestContext]], Tuple[RightsStatus, Dict[str, Any]]]


class RightsEngine:
    def __init__(
        self,
        *,
        consent: ConsentLedger,
        retention: RetentionLedger,
        audit: AuditRecorder,
        hooks: Optional[HooksRegistry] = None,
        cfg: Optional[RightsConfig] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.consent = consent
        self.retention = retention
        self.audit = audit
        self.hooks = hooks or HooksRegistry()
        self.cfg = cfg or RightsConfig()
        self.logger = get_logger("rights", logger)
        self.clock = clock
        self._handlers: Dict[str, Handler] = {
            RightsRequestType.ACCESS.value: self._run_access,
            RightsRequestType.ERASURE.value: self._run_erasure,
            RightsRequestType.RECTIFICATION.value: self._run_rectification,
            RightsRequestType.PORTABILITY.value: self._run_portability,
            RightsRequestType.WITHDRAW_CONSENT.value: self._run_withdraw_consent,
        }

    def handle(self, subject_id: str, request: RightsRequest, ctx: Optional[RequestContext] = None) -> RightsRequest:
        subject_id = str(subject_id or "").strip()
        if not subject_id:
            raise ValidationError("Rights request requires a subject_id.")
        req = request.model_copy(deep=True)
        req.subject_id = subject_id
        rt = str(req.type or "").strip().lower()

        self.audit.log_rights_request(subject_id, rt or str(req.type), result=AuditResult.PENDING, details={"request_id": req.id}, ctx=ctx)

        handler = self._handlers.get(rt)
        if handler is None:
            self.audit.log_rights_request(
                subject_id, str(req.type), result=AuditResult.FAILURE, details={"request_id": req.id, "error": "unsupported_right"}, ctx=ctx
            )
            raise UnsupportedRightError(str(req.type), request_id=req.id)

        req.status = RightsStatus.IN_PROGRESS
        try:
            check_context(ctx)
            status, result = handler(req, ctx)
        except PrivGuardError as e:
            self.audit.log_rights_request(
                subject_id, rt, result=AuditResult.FAILURE, details={"request_id": req.id, "error": e.code}, ctx=ctx
            )
            raise
        req.status = status
        req.result = result
        req.completed_at = self.clock()
        self.audit.log_rights_request(
            subject_id,
            rt,
            result=AuditResult.SUCCESS if status == RightsStatus.COMPLETED else AuditResult.PARTIAL,
            details={"request_id": req.id, "status": status.value, "counts": result.get("counts", {})},
            ctx=ctx,
        )
        self.logger.info(f"Rights request {req.id} ({rt}) for subject={subject_id}: {status.value}")
        return req

    # ---- bundle ----
    def _collect(self, subject_id: str) -> Tuple[Dict[str, Any], List[str]]:
        failed: List[str] = []
        systems: Dict[str, Any] = {}
        for system_id, h in self.hooks.iter_hooks():
            try:
                systems[system_id] = h.export(subject_id=subject_id)
            except Exception as e:  # noqa: BLE001
                failed.append(system_id)
                self.logger.error(f"Export hook {system_id} failed for subject={subject_id}: {e}")
        consents = [
            {
                "purpose": c.purpose,
                "granted": c.granted,
                "legal_basis": c.legal_basis,
                "source": c.source.value,
                "granted_at": iso(c.granted_at),
                "expires_at": iso(c.expires_at),
                "withdrawn_at": iso(c.withdrawn_at),
                "version": c.version,
            }
            for c in self.consent.repo.list_for_subject(subject_id)
        ]
        retention = [
            {
                "policy_id": r.policy_id,
                "data_type": r.data_type,
                "status": r.status.value,
                "retention_end": iso(r.retention_end),
                "legal_hold": r.legal_hold,
            }
            for r in self.retention.records_for(subject_id)
        ]
        events = [
            {"id": e.id, "timestamp": iso(e.timestamp), "event_type": e.event_type.value, "purpose": e.purpose, "result": e.result.value}
            for e in self.audit.query(AuditFilter(subject_id=subject_id, limit=1000))
        ]
        bundle = {
            "subject_id": subject_id,
            "generated_at": iso(self.clock()),
            "consents": consents,
            "retention": retention,
            "processing_history": events,
            "systems": systems,
        }
        return bundle, failed

    @staticmethod
    def _counts(bundle: Dict[str, Any]) -> Dict[str, int]:
        return {
            "consents": len(bundle["consents"]),
            "retention": len(bundle["retention"]),
            "processing_history": len(bundle["processing_history"]),
            "systems": len(bundle["systems"]),
        }

    def _run_access(self, req: RightsRequest, ctx: Optional[RequestContext]) -> Tuple[RightsStatus, Dict[str, Any]]:
        bundle, failed = self._collect(req.subject_id)
        self.audit.log_data_operation(
            AuditEventType.DATA_ACCESS,
            req.subject_id,
            result=AuditResult.PARTIAL if failed else AuditResult.SUCCESS,
            details={"request_id": req.id, "counts": self._counts(bundle)},
            ctx=ctx,
        )
        result = {"data": bundle, "counts": self._counts(bundle), "failed_systems": failed}
        return (RightsStatus.PARTIAL if failed else RightsStatus.COMPLETED), result

    @staticmethod
    def to_csv(bundle: Dict[str, Any]) -> str:
        buf = io.StringIO()
        w = csv.writer(buf)
        w.writerow(["section", "index", "field", "value"])
        for section in ("consents", "retention", "processing_history"):
            for i, row in enumerate(bundle.get(section) or []):
                for k, v in row.items():
                    w.writerow([section, i, k, "" if v is None else v])
        for system_id, data in (bundle.get("systems") or {}).items():
            for k, v in (data or {}).items():
                w.writerow([f"systems.{system_id}", 0, k, v if isinstance(v, (str, int, float, bool)) else json.dumps(v, ensure_ascii=False, default=str)])
        return buf.getvalue()

    def _run_portability(self, req: RightsRequest, ctx: Optional[RequestContext]) -> Tuple[RightsStatus, Dict[str, Any]]:
        fmt = req.payload.get("format", "json")
        if not isinstance(fmt, str) or fmt.strip().lower() not in {f.lower() for f in self.cfg.portability_formats}:
            raise ValidationError("Unsupported portability format.", format=str(fmt), allowed=list(self.cfg.portability_formats))
        fmt = fmt.strip().lower()
        bundle, failed = self._collect(req.subject_id)
        if fmt == "csv":
            content, content_type = self.to_csv(bundle), "text/csv"
        else:
            content, content_type = json.dumps(bundle, ensure_ascii=False, indent=2, sort_keys=True, default=str), "application/json"
        self.audit.log_data_operation(
            AuditEventType.DATA_EXPORT,
            req.subject_id,
            result=AuditResult.PARTIAL if failed else AuditResult.SUCCESS,
            details={"request_id": req.id, "format": fmt, "bytes": len(content.encode("utf-8"))},
            ctx=ctx,
        )
        result = {"format": fmt, "content_type": content_type, "content": content, "counts": self._counts(bundle), "failed_systems": failed}
        return (RightsStatus.PARTIAL if failed else RightsStatus.COMPLETED), result

    def _run_erasure(self, req: RightsRequest, ctx: Optional[RequestContext]) -> Tuple[RightsStatus, Dict[str, Any]]:
        subject_id = req.subject_id
        held = [r for r in self.retention.records_for(subject_id) if r.legal_hold]
        if held:
            # Data under legal hold must be kept; processing stops by withdrawing every consent.
            withdrawn = 0
            for c in self.consent.repo.list_for_subject(subject_id):
                if self.consent.enabled and c.withdrawn_at is None and c.granted:
                    self.consent.withdraw(subject_id, c.purpose, ctx)
                    withdrawn += 1
            result = {
                "blocked_by_legal_hold": True,
                "counts": {"held_records": len(held), "consents_withdrawn": withdrawn},
            }
            self.audit.log_data_operation(
                AuditEventType.DATA_DELETE, subject_id, result=AuditResult.BLOCKED, details={"request_id": req.id, **result}, ctx=ctx
            )
            return RightsStatus.PARTIAL, result

        counts: Dict[str, int] = {}
        failed: List[str] = []
        for system_id, h in self.hooks.iter_hooks():
            try:
                counts[f"system.{system_id}"] = int(h.erase(subject_id=subject_id) or 0)
            except Exception as e:  # noqa: BLE001
                failed.append(system_id)
                self.logger.error(f"Erase hook {system_id} failed for subject={subject_id}: {e}")
        deleted, _ = self.retention.erase_subject(subject_id, ctx)
        counts["retention_records"] = deleted
        counts["consents"] = self.consent.erase_subject(subject_id, ctx)
        result = {"blocked_by_legal_hold": False, "counts": counts, "failed_systems": failed}
        self.audit.log_data_operation(
            AuditEventType.DATA_DELETE,
            subject_id,
            result=AuditResult.PARTIAL if failed else AuditResult.SUCCESS,
            details={"request_id": req.id, "counts": counts, "failed_systems": failed},
            ctx=ctx,
        )
        return (RightsStatus.PARTIAL if failed else RightsStatus.COMPLETED), result

    def _run_rectification(self, req: RightsRequest, ctx: Optional[RequestContext]) -> Tuple[RightsStatus, Dict[str, Any]]:
        updates = req.payload.get("updates")
        if not isinstance(updates, dict) or not updates:
            raise ValidationError("Rectification requires a non-empty 'updates' object.")
        applied: Dict[str, List[str]] = {}
        failed: List[str] = []
        for system_id, h in self.hooks.iter_hooks():
            try:
                applied[system_id] = list(h.rectify(subject_id=req.subject_id, updates=dict(updates)) or [])
            except Exception as e:  # noqa: BLE001
                failed.append(system_id)
                self.logger.error(f"Rectify hook {system_id} failed for subject={req.subject_id}: {e}")
        self.audit.log_data_operation(
            AuditEventType.DATA_RECTIFY,
            req.subject_id,
            result=AuditResult.PARTIAL if failed else AuditResult.SUCCESS,
            details={"request_id": req.id, "fields": sorted(str(k) for k in updates.keys()), "systems": sorted(applied.keys())},
            ctx=ctx,
        )
        result = {"applied": applied, "failed_systems": failed, "counts": {"systems": len(applied)}}
        return (RightsStatus.PARTIAL if failed else RightsStatus.COMPLETED), result

    @staticmethod
    def _purposes(payload: Dict[str, Any]) -> List[str]:
        if "purpose" in payload:
            p = payload.get("purpose")
            if not isinstance(p, str) or not p.strip():
                raise ValidationError("'purpose' must be a non-empty string.")
            return [p.strip()]
        if "purposes" in payload:
            ps = payload.get("purposes")
            if not isinstance(ps, list) or not ps or not all(isinstance(p, str) and p.strip() for p in ps):
                raise ValidationError("'purposes' must be a non-empty list of non-empty strings.")
            return [p.strip() for p in ps]
        raise ValidationError("Consent withdrawal requires 'purpose' or 'purposes'.")

    def _run_withdraw_consent(self, req: RightsRequest, ctx: Optional[RequestContext]) -> Tuple[RightsStatus, Dict[str, Any]]:
        purposes = self._purposes(req.payload)
        withdrawn: List[str] = []
        missing: List[str] = []
        for purpose in purposes:
            try:
                self.consent.withdraw(req.subject_id, purpose, ctx)
            except ConsentNotFoundError:
                missing.append(purpose)
                continue
            withdrawn.append(purpose)
            self.audit.log_consent_action(req.subject_id, purpose, "withdraw", details={"request_id": req.id}, ctx=ctx)
        if not withdrawn:
            raise ConsentNotFoundError(subject_id=req.subject_id, purposes=missing)
        result = {"withdrawn": withdrawn, "not_found": missing, "counts": {"withdrawn": len(withdrawn)}}
        return (RightsStatus.PARTIAL if missing else RightsStatus.COMPLETED), result
