from __future__ import annotations

import contextlib
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from privguard.core.audit.models import AuditEvent, AuditFilter, AuditResult, IntegrityReport
from privguard.core.audit.recorder import AuditRecorder
from privguard.core.audit.store_jsonl import AuditJsonlStore
from privguard.core.audit.store_sqlite import AuditSqliteIndex
from privguard.core.config.models import ComplianceConfig
from privguard.core.config.paths import ConfigFsPaths
from privguard.core.consent.ledger import ConsentLedger
from privguard.core.consent.models import ConsentRecord, ConsentRequest, ConsentSource
from privguard.core.consent.repository import SqliteConsentRepository
from privguard.core.context import RequestContext, check_context, request_scope
from privguard.core.crypto import load_key_from_env
from privguard.core.errors import (
    ComplianceDisabledError,
    ConsentDeniedError,
    PIIProcessingError,
    PrivGuardError,
    ValidationError,
)
from privguard.core.locks import KeyedLocks
from privguard.core.logger import get_logger
from privguard.core.mapping.mapper import DataMapper
from privguard.core.mapping.models import DataDestination, DataMapping, DataSource, MappingViolation
from privguard.core.pii.engine import PIIEngine
from privguard.core.pii.models import PIIScanResult
from privguard.core.pii.vault import TokenVault
from privguard.core.retention.ledger import RetentionActionHandler, RetentionLedger
from privguard.core.retention.models import RetentionAction, RetentionPolicy, RetentionRecord
from privguard.core.retention.repository import SqliteRetentionRepository
from privguard.core.retention.scheduler import RetentionScheduler
from privguard.core.rights import HooksRegistry, RightsEngine, RightsRequest


def _as_list(purposes: Union[str, List[str]]) -> List[str]:
    return [purposes] if isinstance(purposes, str) else list(purposes or [])


class HooksActionHandler:
    """
    Retention action handler backed by the subject data hooks.

    delete/purge erase the subject's data in every registered system; the
    other actions are recorded only. Every action is audited.
    """

    def __init__(self, *, hooks: HooksRegistry, audit: AuditRecorder, logger: Any = None):
        self.hooks = hooks
        self.audit = audit
        self.logger = get_logger("retention.actions", logger)

    def handle(self, action: RetentionAction, record: RetentionRecord) -> None:
        details: Dict[str, Any] = {"record_id": record.id, "data_type": record.data_type}
        try:
            if action in (RetentionAction.DELETE, RetentionAction.PURGE):
                erased: Dict[str, int] = {}
                for system_id, h in self.hooks.iter_hooks():
                    erased[system_id] = int(h.erase(subject_id=record.subject_id) or 0)
                details["erased"] = erased
            else:
                self.logger.info(f"Retention action {action.value} recorded for subject={record.subject_id} policy={record.policy_id}")
        except Exception as e:
            self.audit.log_retention_action(
                record.subject_id, action.value, policy_id=record.policy_id, result=AuditResult.FAILURE, details={**details, "error": str(e)}
            )
            raise
        self.audit.log_retention_action(record.subject_id, action.value, policy_id=record.policy_id, details=details)


class ComplianceFramework:
    """
    Orchestrates consent, PII handling, retention and audit for every
    processing request and subject rights request.
    """

    def __init__(
        self,
        *,
        cfg: ComplianceConfig,
        pii: PIIEngine,
        consent: ConsentLedger,
        retention: RetentionLedger,
        audit: AuditRecorder,
        hooks: Optional[HooksRegistry] = None,
        mapper: Optional[DataMapper] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.pii = pii
        self.consent = consent
        self.retention = retention
        self.audit = audit
        self.hooks = hooks or HooksRegistry()
        self.mapper = mapper or DataMapper(cfg=cfg.mapping, logger=logger, clock=clock)
        self.logger = get_logger("framework", logger)
        self.clock = clock
        self.rights = RightsEngine(
            consent=consent,
            retention=retention,
            audit=audit,
            hooks=self.hooks,
            cfg=cfg.rights,
            logger=logger,
            clock=clock,
        )
        self.scheduler = RetentionScheduler(
            ledger=retention,
            interval_seconds=float(cfg.retention.sweep_interval_seconds),
            on_report=self._after_sweep,
            logger=logger,
        )

    @classmethod
    def from_config(
        cls,
        cfg: Optional[ComplianceConfig] = None,
        *,
        root: str = ".",
        hooks: Optional[HooksRegistry] = None,
        action_handler: Optional[RetentionActionHandler] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
    ) -> "ComplianceFramework":
        """
        Build every component from config.

        Raises ConfigError when audit encryption is enabled and the key in
        PRIVGUARD_AUDIT_ENCRYPTION_KEY is missing or malformed.
        """
        cfg = cfg or ComplianceConfig()
        fs = ConfigFsPaths(root)
        db_path = fs.resolve(cfg.storage.db_path)
        needs_key = bool(cfg.enabled and cfg.audit.enabled and cfg.audit.encryption_enabled)
        key = load_key_from_env(required=needs_key)

        hooks = hooks or HooksRegistry()
        locks = KeyedLocks()
        vault = TokenVault(db_path=db_path, key=key, logger=logger) if key is not None else None
        pii = PIIEngine(cfg=cfg.pii, vault=vault, logger=logger)
        consent = ConsentLedger(repo=SqliteConsentRepository(db_path=db_path), cfg=cfg.consent, locks=locks, logger=logger, clock=clock)
        if cfg.audit.enabled:
            jsonl: Optional[AuditJsonlStore] = AuditJsonlStore(path=fs.resolve(cfg.audit.path_jsonl))
            index: Optional[AuditSqliteIndex] = AuditSqliteIndex(path=fs.resolve(cfg.audit.sqlite_path))
        else:
            jsonl, index = None, None
        audit = AuditRecorder(
            cfg=cfg.audit,
            jsonl=jsonl,
            index=index,
            encryption_key=key if cfg.audit.encryption_enabled else None,
            logger=logger,
            clock=clock,
        )
        retention = RetentionLedger(
            repo=SqliteRetentionRepository(db_path=db_path),
            cfg=cfg.retention,
            handler=action_handler or HooksActionHandler(hooks=hooks, audit=audit, logger=logger),
            locks=locks,
            logger=logger,
            clock=clock,
        )
        mapper = DataMapper(
            cfg=cfg.mapping,
            snapshot_path=fs.resolve(cfg.mapping.snapshot_path) if cfg.mapping.enabled else None,
            logger=logger,
            clock=clock,
        )
        return cls(
            cfg=cfg,
            pii=pii,
            consent=consent,
            retention=retention,
            audit=audit,
            hooks=hooks,
            mapper=mapper,
            logger=logger,
            clock=clock,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled)

    @staticmethod
    def _scope(ctx: Optional[RequestContext]):
        return request_scope(ctx) if ctx is not None else contextlib.nullcontext()

    # ---- lifecycle ----
    def start(self) -> None:
        if self.enabled and self.retention.enabled and self.cfg.retention.auto_delete:
            self.scheduler.start()
            self.logger.info("Retention scheduler started")

    def stop(self) -> None:
        self.scheduler.stop()

    # ---- processing pipeline ----
    def process_data(
        self,
        subject_id: str,
        data: Mapping[str, Any],
        purpose: str,
        ctx: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """
        Consent check, PII anonymization and retention tracking for one record.

        Returns the anonymized copy of `data`. Raises ConsentDeniedError when
        no valid consent exists for the purpose and PIIProcessingError when
        anonymization fails; neither path returns the input values.
        """
        if not self.enabled:
            return dict(data or {})
        subject_id = str(subject_id or "").strip()
        purpose = str(purpose or "").strip()
        if not subject_id or not purpose:
            raise ValidationError("process_data requires subject_id and purpose.")
        if not isinstance(data, Mapping):
            raise ValidationError("data must be a mapping.")

        with self._scope(ctx):
            check_context(ctx)
            self.audit.log_data_processing(subject_id, purpose, result=AuditResult.PENDING, stage="attempt", ctx=ctx)

            validation = self.consent.validate(subject_id, purpose)
            if not validation.valid:
                self.audit.log_data_processing(
                    subject_id,
                    purpose,
                    result=AuditResult.BLOCKED,
                    stage="denied",
                    details={"reason": validation.reason.value, "required_actions": validation.required_actions},
                    ctx=ctx,
                )
                raise ConsentDeniedError(purpose, subject_id=subject_id, reason=validation.reason.value)
            legal_basis = validation.consent.legal_basis if validation.consent is not None else ""

            try:
                processed, classifications = self.pii.process_record(data)
            except Exception as e:
                err = e if isinstance(e, PIIProcessingError) else PIIProcessingError(error=type(e).__name__)
                self.audit.log_data_processing(
                    subject_id,
                    purpose,
                    result=AuditResult.FAILURE,
                    stage="pii_error",
                    legal_basis=legal_basis,
                    details={"error": err.code},
                    ctx=ctx,
                )
                if err is e:
                    raise
                raise err from e
            self.audit.log_pii_detection(subject_id, classifications, purpose=purpose, ctx=ctx)

            try:
                self.retention.apply_policy(subject_id, processed, ctx)
            except Exception as e:  # noqa: BLE001
                self.logger.warning(f"Retention policy application failed for subject={subject_id}: {e}")
            self._record_field_access(data, purpose, ctx)

            self.audit.log_data_processing(
                subject_id,
                purpose,
                result=AuditResult.SUCCESS,
                stage="success",
                legal_basis=legal_basis,
                data_categories=sorted({c.pii_type.value for c in classifications}),
                data=processed,
                details={"data": processed, "pii_fields": [c.field_name for c in classifications]},
                ctx=ctx,
            )
            return processed

    def handle_rights_request(
        self,
        subject_id: str,
        request: Union[RightsRequest, Mapping[str, Any]],
        ctx: Optional[RequestContext] = None,
    ) -> RightsRequest:
        if not self.enabled or not self.cfg.rights.enabled:
            raise ComplianceDisabledError("Subject rights handling is disabled.")
        req = request if isinstance(request, RightsRequest) else RightsRequest.model_validate(dict(request))
        with self._scope(ctx):
            return self.rights.handle(subject_id, req, ctx)

    # ---- PII ----
    def scan_for_pii(self, data: Mapping[str, Any]) -> PIIScanResult:
        if not self.enabled:
            return PIIScanResult(total_fields=len(data or {}))
        if not isinstance(data, Mapping):
            raise ValidationError("data must be a mapping.")
        return self.pii.scan(data)

    # ---- consent ----
    def grant_consent(self, request: ConsentRequest, ctx: Optional[RequestContext] = None) -> ConsentRecord:
        with self._scope(ctx):
            rec = self.consent.grant(request, ctx)
            self.audit.log_consent_action(
                rec.subject_id,
                rec.purpose,
                "grant" if rec.granted else "deny",
                legal_basis=rec.legal_basis,
                details={"version": rec.version, "source": rec.source.value},
                ctx=ctx,
            )
            return rec

    def record_consent(
        self,
        subject_id: str,
        purposes: Union[str, List[str]],
        source: ConsentSource = ConsentSource.API,
        ctx: Optional[RequestContext] = None,
    ) -> List[ConsentRecord]:
        if not self.enabled:
            return []
        out: List[ConsentRecord] = []
        with self._scope(ctx):
            for purpose in _as_list(purposes):
                rec = self.consent.record_consent(subject_id, purpose, source, ctx)
                self.audit.log_consent_action(
                    subject_id, purpose, "grant", legal_basis=rec.legal_basis, details={"source": source.value}, ctx=ctx
                )
                out.append(rec)
        return out

    def has_consent(self, subject_id: str, purpose: str) -> bool:
        if not self.enabled:
            return True
        return self.consent.has_valid_consent(subject_id, purpose)

    def withdraw_consent(self, subject_id: str, purposes: Union[str, List[str]], ctx: Optional[RequestContext] = None) -> List[ConsentRecord]:
        if not self.enabled:
            return []
        out: List[ConsentRecord] = []
        with self._scope(ctx):
            for purpose in _as_list(purposes):
                rec = self.consent.withdraw(subject_id, purpose, ctx)
                self.audit.log_consent_action(subject_id, purpose, "withdraw", ctx=ctx)
                out.append(rec)
        return out

    # ---- retention ----
    def record_data_creation(
        self,
        subject_id: str,
        category: str,
        data: Optional[Mapping[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> List[RetentionRecord]:
        if not self.enabled:
            return []
        return self.retention.record_data_creation(subject_id, category, data, ctx)

    def get_retention_policy(self, category: str) -> RetentionPolicy:
        """Catalog policy for the category, else one synthesized from the configured periods."""
        if not self.enabled:
            raise ComplianceDisabledError("Compliance framework is disabled.")
        policy = self.retention.get_policy(category)
        if policy is not None:
            return policy
        period = int(self.cfg.retention.per_category_periods.get(category, self.cfg.retention.default_period_seconds))
        return RetentionPolicy(
            id=f"{category}_policy",
            name=f"{category} Data Retention",
            description=f"Data retention policy for {category} category",
            category=category,
            retention_period=period,
            action=RetentionAction.DELETE,
        )

    def should_delete_data(self, subject_id: str, category: str = "") -> bool:
        if not self.enabled:
            return False
        return self.retention.should_delete(subject_id, category)

    def place_legal_hold(self, subject_id: str, reason: str, ctx: Optional[RequestContext] = None) -> int:
        n = self.retention.place_legal_hold(subject_id, reason, ctx)
        self.audit.log_retention_action(subject_id, "legal_hold", details={"reason": reason, "records": n})
        return n

    def remove_legal_hold(self, subject_id: str, ctx: Optional[RequestContext] = None) -> int:
        n = self.retention.remove_legal_hold(subject_id, ctx)
        self.audit.log_retention_action(subject_id, "legal_hold_removed", details={"records": n})
        return n

    def extend_retention(
        self,
        subject_id: str,
        reason: str,
        extend_by: int,
        approver: str,
        ctx: Optional[RequestContext] = None,
    ) -> List[RetentionRecord]:
        recs = self.retention.extend_retention(subject_id, reason, extend_by, approver, ctx)
        self.audit.log_retention_action(
            subject_id, "extend", details={"reason": reason, "extend_by": int(extend_by), "approver": approver, "records": len(recs)}
        )
        return recs

    def run_retention_sweep(self, now: Optional[float] = None) -> Dict[str, Any]:
        report = self.retention.sweep(now)
        self._after_sweep(report)
        return report

    def _after_sweep(self, report: Dict[str, Any]) -> None:
        self.audit.log_compliance_check("retention_sweep", details={k: v for k, v in report.items() if k != "as_of"})
        self.audit.enforce_retention(report.get("as_of"))

    # ---- data map ----
    def _record_field_access(self, data: Mapping[str, Any], purpose: str, ctx: Optional[RequestContext]) -> None:
        if not self.cfg.mapping.enabled:
            return
        actor = (ctx.user_id if ctx is not None and ctx.user_id else "") or "system"
        for name in self.mapper.mapped_fields(data.keys()):
            try:
                self.mapper.record_data_access(name, actor, "process", purpose)
            except PrivGuardError as e:
                self.logger.warning(f"Field access not recorded for field={name}: {e.code}")

    def map_data_field(self, field_name: str, mapping: Union[DataMapping, Mapping[str, Any], None] = None) -> DataMapping:
        return self.mapper.map_field(field_name, mapping)

    def get_data_mapping(self, field_name: str) -> Optional[DataMapping]:
        return self.mapper.get_mapping(field_name)

    def track_data_flow(self, field_name: str, source: DataSource, destination: DataDestination) -> DataMapping:
        return self.mapper.track_data_flow(field_name, source, destination)

    def generate_data_map(self) -> Dict[str, Any]:
        """Inventory every registered data system, then return the full data map."""
        self.mapper.discover_data_systems(self.hooks.list())
        return self.mapper.generate_data_map()

    def validate_data_map(self) -> List[MappingViolation]:
        violations = self.mapper.validate()
        self.audit.log_compliance_check(
            "data_map",
            result=AuditResult.FAILURE if violations else AuditResult.SUCCESS,
            details={
                "violations": len(violations),
                "by_type": {t: sum(1 for v in violations if v.type == t) for t in sorted({v.type for v in violations})},
            },
        )
        return violations

    # ---- audit / status ----
    def validate_compliance(self, subject_id: str, purpose: str, category: str = "") -> Dict[str, Any]:
        """Point-in-time compliance view for a subject and purpose."""
        if not self.enabled:
            return {"compliant": True, "status": "disabled", "issues": []}
        issues: List[str] = []
        validation = self.consent.validate(subject_id, purpose)
        if not validation.valid:
            issues.append(f"consent_{validation.reason.value}")
        records = self.retention.records_for(subject_id)
        due = self.retention.should_delete(subject_id, category)
        if due:
            issues.append("retention_expired")
        out = {
            "subject_id": subject_id,
            "purpose": purpose,
            "compliant": not issues,
            "consent": validation.reason.value,
            "remaining_ttl": validation.remaining_ttl,
            "retention_records": len(records),
            "legal_hold": any(r.legal_hold for r in records),
            "should_delete": due,
            "issues": issues,
        }
        self.audit.log_compliance_check(
            "validate_compliance",
            subject_id=subject_id,
            result=AuditResult.SUCCESS if not issues else AuditResult.FAILURE,
            details={"purpose": purpose, "issues": issues},
        )
        return out

    def get_audit_logs(self, flt: Optional[AuditFilter] = None) -> List[AuditEvent]:
        if not self.enabled:
            return []
        return self.audit.query(flt or AuditFilter(limit=100))

    def verify_audit_integrity(self) -> IntegrityReport:
        report = self.audit.verify_integrity()
        if not report.ok:
            self.logger.error(f"Audit chain verification failed: {report.message}")
            self.audit.log_security_incident(
                "audit chain verification failed",
                severity="critical",
                details={"broken_at_line": report.broken_at_line, "reason": report.message},
            )
        return report

    def get_compliance_status(self) -> Dict[str, Any]:
        if not self.enabled:
            return {"enabled": False, "status": "disabled"}
        status: Dict[str, Any] = {
            "enabled": True,
            "default_region": self.cfg.default_region,
            "components": {
                "pii_detection": bool(self.cfg.pii.enabled),
                "consent_mgmt": bool(self.cfg.consent.enabled),
                "audit_logging": bool(self.cfg.audit.enabled),
                "data_retention": bool(self.cfg.retention.enabled),
                "rights": bool(self.cfg.rights.enabled),
                "data_mapping": bool(self.cfg.mapping.enabled),
            },
            "scheduler_running": self.scheduler.running,
            "data_systems": self.hooks.list(),
        }
        for name, fn in (
            ("pii", self.pii.health_check),
            ("consent", self.consent.health_check),
            ("retention", self.retention.health_check),
            ("audit", self.audit.health_check),
            ("mapping", self.mapper.health_check),
        ):
            try:
                status[name] = fn()
            except PrivGuardError as e:
                status[name] = {"status": "unhealthy", "error": e.to_dict()}
        return status
