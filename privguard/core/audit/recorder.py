from __future__ import annotations

import json
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from privguard.core.audit.hasher import GENESIS_HASH, compute_hash, data_fingerprint
from privguard.core.audit.models import (
    AuditEvent,
    AuditEventType,
    AuditFilter,
    AuditResult,
    DetailLevel,
    IntegrityReport,
)
from privguard.core.audit.redaction import redact_details
from privguard.core.audit.store_jsonl import AuditJsonlStore
from privguard.core.audit.store_sqlite import AuditSqliteIndex
from privguard.core.config.models import AuditConfig
from privguard.core.context import RequestContext, current_context, current_trace_id
from privguard.core.crypto import aesgcm_decrypt, aesgcm_encrypt
from privguard.core.logger import get_logger

_ALWAYS = ("id", "timestamp", "event_type", "subject_id", "result", "encrypted")
_STANDARD = _ALWAYS + (
    "purpose",
    "legal_basis",
    "user_id",
    "session_id",
    "ip_address",
    "user_agent",
    "trace_id",
    "stage",
    "data_categories",
    "processing_type",
    "service",
    "version",
)
_ACTOR_FIELDS = ("user_id", "session_id", "ip_address", "user_agent")


class AuditRecorder:
    """
    Compliance audit trail.

    Events go to a hash-chained JSONL file, a SQLite query index and the
    `privguard.audit` logger. Writing is best-effort: sink failures are
    logged and counted in `health_check()` but never raised to the caller.
    """

    def __init__(
        self,
        *,
        cfg: Optional[AuditConfig] = None,
        jsonl: Optional[AuditJsonlStore] = None,
        index: Optional[AuditSqliteIndex] = None,
        encryption_key: Optional[bytes] = None,
        logger: Any = None,
        audit_logger: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg or AuditConfig()
        self.jsonl = jsonl
        self.index = index
        self._key = encryption_key
        self.logger = get_logger("audit.recorder", logger)
        self.audit_logger = get_logger("audit", audit_logger)
        self.clock = clock
        self._stats_lock = threading.Lock()
        self.events_logged = 0
        self.failures = 0
        self.last_error: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled)

    @property
    def detail_level(self) -> DetailLevel:
        return DetailLevel(self.cfg.detail_level)

    def _fail(self, what: str, err: Any) -> None:
        with self._stats_lock:
            self.failures += 1
            self.last_error = f"{what}: {err}"
        self.logger.error(f"Audit {what} failed: {err}")

    # ---- shaping ----
    @staticmethod
    def _enrich(ev: AuditEvent, ctx: Optional[RequestContext]) -> None:
        c = ctx if ctx is not None else current_context()
        if c is not None:
            for name in _ACTOR_FIELDS:
                if getattr(ev, name) is None and getattr(c, name, None):
                    setattr(ev, name, str(getattr(c, name)))
            if ev.trace_id is None and c.trace_id:
                ev.trace_id = str(c.trace_id)
        if ev.trace_id is None:
            ev.trace_id = current_trace_id()

    def _shape(self, ev: AuditEvent) -> Dict[str, Any]:
        full = ev.model_dump(mode="json")
        level = self.detail_level
        if level == DetailLevel.FULL:
            return full
        keep = _ALWAYS if level == DetailLevel.MINIMAL else _STANDARD
        return {k: full[k] for k in keep if k in full}

    def _encrypt(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        details = payload.get("details")
        if not details:
            return payload
        out = dict(payload)
        out["details"] = {}
        if self._key is None:
            self._fail("encryption", "encryption enabled but no key loaded; details dropped")
            return out
        try:
            pt = json.dumps(details, ensure_ascii=False, sort_keys=True, default=str).encode("utf-8")
            out["encrypted_details"] = aesgcm_encrypt(self._key, pt, aad=str(payload["id"]).encode("utf-8"))
            out["encrypted"] = True
        except Exception as e:  # noqa: BLE001
            self._fail("encryption", f"{type(e).__name__}; details dropped")
        return out

    # ---- write path ----
    def log(self, event: AuditEvent, ctx: Optional[RequestContext] = None) -> Optional[AuditEvent]:
        if not self.enabled:
            return None
        try:
            ev = event.model_copy(deep=True)
            ev.timestamp = self.clock()
            self._enrich(ev, ctx)
            ev.details = redact_details(ev.details)
            payload = self._shape(ev)
            if self.cfg.encryption_enabled:
                payload = self._encrypt(payload)
        except Exception as e:  # noqa: BLE001
            self._fail("shaping", e)
            return None

        stored = payload
        if self.jsonl is not None:
            try:
                stored = self.jsonl.append(payload)
            except Exception as e:  # noqa: BLE001
                self._fail("jsonl write", e)
        if self.index is not None:
            try:
                self.index.upsert(payload)
            except Exception as e:  # noqa: BLE001
                self._fail("index write", e)
        try:
            self.audit_logger.info(json.dumps(stored, ensure_ascii=False, sort_keys=True, default=str))
        except Exception as e:  # noqa: BLE001
            self._fail("emit", e)

        with self._stats_lock:
            self.events_logged += 1
        return AuditEvent.model_validate(payload)

    # ---- convenience ----
    def log_data_processing(
        self,
        subject_id: str,
        purpose: str,
        *,
        result: AuditResult = AuditResult.SUCCESS,
        stage: str = "",
        legal_basis: str = "",
        data_categories: Optional[Iterable[str]] = None,
        data: Any = None,
        details: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuditEvent]:
        return self.log(
            AuditEvent(
                event_type=AuditEventType.DATA_PROCESSING,
                subject_id=subject_id,
                purpose=purpose,
                legal_basis=legal_basis,
                stage=stage,
                processing_type="process_data",
                data_categories=list(data_categories or []),
                result=result,
                details=dict(details or {}),
                data_hash=data_fingerprint(data) if data is not None else None,
            ),
            ctx,
        )

    def log_consent_action(
        self,
        subject_id: str,
        purpose: str,
        action: str,
        *,
        legal_basis: str = "",
        result: AuditResult = AuditResult.SUCCESS,
        details: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuditEvent]:
        et = AuditEventType.CONSENT_WITHDRAW if str(action) == "withdraw" else AuditEventType.CONSENT_GRANT
        d = dict(details or {})
        d.setdefault("action", str(action))
        return self.log(
            AuditEvent(event_type=et, subject_id=subject_id, purpose=purpose, legal_basis=legal_basis, result=result, details=d),
            ctx,
        )

    def log_rights_request(
        self,
        subject_id: str,
        request_type: str,
        *,
        result: AuditResult = AuditResult.PENDING,
        details: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuditEvent]:
        return self.log(
            AuditEvent(
                event_type=AuditEventType.RIGHTS_REQUEST,
                subject_id=subject_id,
                processing_type=str(request_type),
                result=result,
                details=dict(details or {}),
                compliance_flags=["data_subject_rights"],
            ),
            ctx,
        )

    def log_data_operation(
        self,
        event_type: AuditEventType,
        subject_id: str,
        *,
        result: AuditResult = AuditResult.SUCCESS,
        details: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuditEvent]:
        return self.log(AuditEvent(event_type=event_type, subject_id=subject_id, result=result, details=dict(details or {})), ctx)

    def log_pii_detection(
        self,
        subject_id: str,
        classifications: Iterable[Any],
        *,
        purpose: str = "",
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuditEvent]:
        items = list(classifications or [])
        if not items:
            return None
        fields = [
            {
                "field": c.field_name,
                "type": c.pii_type.value,
                "sensitivity": c.sensitivity.value,
                "confidence": round(float(c.confidence), 3),
                "method": c.anonymization_method.value,
            }
            for c in items
        ]
        return self.log(
            AuditEvent(
                event_type=AuditEventType.PII_DETECTION,
                subject_id=subject_id,
                purpose=purpose,
                data_categories=sorted({f["type"] for f in fields}),
                details={"fields": fields, "count": len(fields)},
                compliance_flags=["pii_detected"],
            ),
            ctx,
        )

    def log_retention_action(
        self,
        subject_id: str,
        action: str,
        *,
        policy_id: str = "",
        result: AuditResult = AuditResult.SUCCESS,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        d = dict(details or {})
        d.update({"action": str(action), "policy_id": str(policy_id)})
        return self.log(AuditEvent(event_type=AuditEventType.RETENTION_POLICY, subject_id=subject_id, result=result, details=d))

    def log_security_incident(
        self,
        description: str,
        *,
        severity: str = "high",
        subject_id: str = "",
        details: Optional[Dict[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> Optional[AuditEvent]:
        d = dict(details or {})
        d.update({"description": str(description), "severity": str(severity)})
        return self.log(
            AuditEvent(
                event_type=AuditEventType.SECURITY_INCIDENT,
                subject_id=subject_id,
                result=AuditResult.FAILURE,
                details=d,
                compliance_flags=["security_incident"],
            ),
            ctx,
        )

    def log_compliance_check(
        self,
        check: str,
        *,
        result: AuditResult = AuditResult.SUCCESS,
        subject_id: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        d = dict(details or {})
        d["check"] = str(check)
        return self.log(AuditEvent(event_type=AuditEventType.COMPLIANCE_CHECK, subject_id=subject_id, result=result, details=d))

    # ---- read path ----
    def query(self, flt: Optional[AuditFilter] = None) -> List[AuditEvent]:
        if not self.enabled or self.index is None:
            return []
        f = flt or AuditFilter()
        rows = self.index.query(
            subject_id=f.subject_id,
            event_type=f.event_type.value if f.event_type else None,
            result=f.result.value if f.result else None,
            since=f.since,
            until=f.until,
            limit=f.limit,
            offset=f.offset,
        )
        out: List[AuditEvent] = []
        for r in rows:
            try:
                out.append(AuditEvent.model_validate(r))
            except Exception as e:  # noqa: BLE001
                self.logger.warning(f"Skipping unreadable audit row: {e}")
        return out

    def decrypt_details(self, event: AuditEvent) -> Dict[str, Any]:
        if not event.encrypted or not event.encrypted_details:
            return dict(event.details or {})
        if self._key is None:
            raise ValueError("No audit encryption key loaded.")
        pt = aesgcm_decrypt(self._key, event.encrypted_details, aad=str(event.id).encode("utf-8"))
        return json.loads(pt.decode("utf-8"))

    def verify_integrity(self) -> IntegrityReport:
        if self.jsonl is None:
            return IntegrityReport(ok=True, checked=0, message="no chain store")
        head = self.jsonl.read_head_hash()
        prev = GENESIS_HASH
        checked = 0
        for line_no, obj in self.jsonl.iter_lines():
            if not obj:
                return IntegrityReport(ok=False, checked=checked, broken_at_line=line_no, message="unreadable line", head_hash=head)
            if str(obj.get("prev_hash") or "") != prev:
                return IntegrityReport(ok=False, checked=checked, broken_at_line=line_no, message="prev_hash mismatch", head_hash=head)
            payload = dict(obj)
            stored_hash = str(payload.pop("hash", "") or "")
            payload.pop("prev_hash", None)
            if compute_hash(prev, payload) != stored_hash:
                return IntegrityReport(ok=False, checked=checked, broken_at_line=line_no, message="hash mismatch", head_hash=head)
            prev = stored_hash
            checked += 1
        if checked and prev != head:
            return IntegrityReport(ok=False, checked=checked, message="head hash does not match last line", head_hash=head)
        return IntegrityReport(ok=True, checked=checked, message="ok" if checked else "no events", head_hash=head)

    def enforce_retention(self, now: Optional[float] = None) -> int:
        """Prune the query index past the audit retention period. The chain file is never rewritten."""
        if self.index is None:
            return 0
        cutoff = float(now if now is not None else self.clock()) - float(self.cfg.retention_period_seconds)
        try:
            return self.index.delete_older_than(cutoff)
        except Exception as e:  # noqa: BLE001
            self._fail("retention", e)
            return 0

    def health_check(self) -> Dict[str, Any]:
        with self._stats_lock:
            out: Dict[str, Any] = {
                "enabled": self.enabled,
                "detail_level": self.detail_level.value,
                "encryption_enabled": bool(self.cfg.encryption_enabled),
                "encryption_key_loaded": self._key is not None,
                "events_logged": self.events_logged,
                "failures": self.failures,
                "last_error": self.last_error,
            }
        out["status"] = "healthy" if not out["failures"] else "degraded"
        return out
