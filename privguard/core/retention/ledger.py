from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from privguard.core.config.models import RetentionConfig
from privguard.core.context import RequestContext, check_context
from privguard.core.errors import RetentionRecordNotFoundError, ValidationError
from privguard.core.locks import KeyedLocks
from privguard.core.logger import get_logger
from privguard.core.retention.models import (
    RetentionAction,
    RetentionExtension,
    RetentionPolicy,
    RetentionRecord,
    RetentionStatus,
    SWEEPABLE,
)
from privguard.core.retention.policies import CATEGORY_FIELD, DATA_TYPE_FIELD, PolicyCatalog, infer_data_type
from privguard.core.retention.repository import RetentionRepository


class RetentionActionHandler(Protocol):
    """Executes the policy action for an expired record. Raising marks the attempt failed."""

    def handle(self, action: RetentionAction, record: RetentionRecord) -> None: ...


class LoggingActionHandler:
    def __init__(self, logger: Any = None):
        self.logger = get_logger("retention.actions", logger)

    def handle(self, action: RetentionAction, record: RetentionRecord) -> None:
        self.logger.info(
            f"Retention action {action.value}: subject={record.subject_id} policy={record.policy_id} data_type={record.data_type}"
        )


class RetentionLedger:
    def __init__(
        self,
        *,
        repo: RetentionRepository,
        cfg: Optional[RetentionConfig] = None,
        policies: Optional[PolicyCatalog] = None,
        handler: Optional[RetentionActionHandler] = None,
        locks: Optional[KeyedLocks] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.repo = repo
        self.cfg = cfg or RetentionConfig()
        self.policies = policies or PolicyCatalog.from_config(self.cfg)
        self.logger = get_logger("retention", logger)
        self.handler: RetentionActionHandler = handler or LoggingActionHandler(self.logger)
        self.locks = locks or KeyedLocks()
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled)

    def _lock(self, subject_id: str):
        return self.locks.lock("retention", subject_id)

    # ---- policy application ----
    def apply_policy(self, subject_id: str, record: Mapping[str, Any], ctx: Optional[RequestContext] = None) -> List[RetentionRecord]:
        """
        Open one retention record per matching policy for this subject.

        Policies that already have an open record for the subject are left
        alone. A failure on one policy is logged and the rest still apply.
        """
        if not self.enabled:
            return []
        subject_id = str(subject_id or "").strip()
        if not subject_id:
            raise ValidationError("Retention requires a subject_id.")
        data_type = infer_data_type(record or {})
        view = dict(record or {})
        view[DATA_TYPE_FIELD] = data_type

        created: List[RetentionRecord] = []
        with self._lock(subject_id):
            check_context(ctx)
            now = self.clock()
            for policy in self.policies.applicable(view):
                try:
                    rec = self._open_record(subject_id, policy, view, data_type, now)
                    if rec is not None:
                        created.append(rec)
                except Exception as e:  # noqa: BLE001
                    self.logger.error(f"Retention policy {policy.id} failed for subject={subject_id}: {e}")
        return created

    def _open_record(
        self,
        subject_id: str,
        policy: RetentionPolicy,
        view: Mapping[str, Any],
        data_type: str,
        now: float,
    ) -> Optional[RetentionRecord]:
        if self.repo.get_open(subject_id, policy.id) is not None:
            return None
        hold = self.repo.get_hold(subject_id)
        end = now + int(policy.retention_period)
        reasons: List[str] = []
        for ex in self.policies.matching_exceptions(policy, view, now):
            end += int(ex.extend_by)
            reasons.append(ex.reason)
        rec = RetentionRecord(
            subject_id=subject_id,
            data_type=data_type,
            policy_id=policy.id,
            created_at=now,
            retention_start=now,
            retention_end=end,
            grace_end=(end + int(policy.grace_period)) if int(policy.grace_period) > 0 else None,
            action=policy.action,
            metadata={"policy_category": policy.category, "exceptions": reasons} if reasons else {"policy_category": policy.category},
            updated_at=now,
        )
        if hold is not None:
            rec.legal_hold = True
            rec.legal_hold_reason = hold
            rec.status = RetentionStatus.ON_HOLD
        if not self.repo.insert(rec):
            return None
        return rec

    def record_data_creation(
        self,
        subject_id: str,
        category: str,
        data: Optional[Mapping[str, Any]] = None,
        ctx: Optional[RequestContext] = None,
    ) -> List[RetentionRecord]:
        view = dict(data or {})
        view[CATEGORY_FIELD] = str(category or "")
        return self.apply_policy(subject_id, view, ctx)

    def get_policy(self, category: str) -> Optional[RetentionPolicy]:
        return self.policies.policy_for_category(category)

    # ---- sweep ----
    def sweep(self, now: Optional[float] = None) -> Dict[str, Any]:
        """
        Execute the action of every due record.

        Due = status active/extended and retention_end < now. Records still
        inside their grace window are skipped, as is every record of a subject
        under legal hold.
        """
        now = float(now if now is not None else self.clock())
        report: Dict[str, Any] = {
            "ok": True,
            "as_of": now,
            "due": 0,
            "processed": 0,
            "skipped_legal_hold": 0,
            "skipped_grace": 0,
            "errors": 0,
            "by_action": {},
        }
        if not self.enabled:
            report["ok"] = False
            report["reason"] = "disabled"
            return report

        due = self.repo.list_due(now)
        report["due"] = len(due)
        for candidate in due:
            with self._lock(candidate.subject_id):
                rec = self.repo.get(candidate.id)
                if rec is None or rec.status not in SWEEPABLE or not rec.past_end(now):
                    continue
                if rec.legal_hold or self.is_held(rec.subject_id):
                    report["skipped_legal_hold"] += 1
                    continue
                if rec.in_grace(now):
                    report["skipped_grace"] += 1
                    continue
                previous = rec.status
                rec.status = RetentionStatus.PROCESSING
                rec.updated_at = now
                self.repo.update(rec)
                try:
                    self.handler.handle(rec.action, rec)
                except Exception as e:  # noqa: BLE001
                    report["errors"] += 1
                    rec.status = previous
                    rec.updated_at = self.clock()
                    self.repo.update(rec)
                    self.logger.error(f"Retention action {rec.action.value} failed for record={rec.id}: {e}")
                    continue
                rec.status = RetentionStatus.COMPLETED
                rec.action_taken = True
                rec.action_taken_at = self.clock()
                rec.updated_at = rec.action_taken_at
                self.repo.update(rec)
                report["processed"] += 1
                report["by_action"][rec.action.value] = int(report["by_action"].get(rec.action.value, 0)) + 1
        if report["processed"] or report["errors"]:
            self.logger.info(
                f"Retention sweep: due={report['due']} processed={report['processed']} errors={report['errors']} "
                f"held={report['skipped_legal_hold']} grace={report['skipped_grace']}"
            )
        return report

    # ---- holds / extensions ----
    def _subject_records(self, subject_id: str) -> List[RetentionRecord]:
        subject_id = str(subject_id or "").strip()
        if not subject_id:
            raise ValidationError("subject_id is required.")
        recs = self.repo.list_for_subject(subject_id)
        if not recs:
            raise RetentionRecordNotFoundError(subject_id=subject_id)
        return recs

    def place_legal_hold(self, subject_id: str, reason: str, ctx: Optional[RequestContext] = None) -> int:
        if not str(reason or "").strip():
            raise ValidationError("A legal hold requires a reason.")
        with self._lock(subject_id):
            check_context(ctx)
            now = self.clock()
            n = 0
            recs = self._subject_records(subject_id)
            self.repo.set_hold(subject_id, str(reason), now)
            for rec in recs:
                if rec.status == RetentionStatus.COMPLETED:
                    continue
                rec.legal_hold = True
                rec.legal_hold_reason = str(reason)
                rec.status = RetentionStatus.ON_HOLD
                rec.updated_at = now
                self.repo.update(rec)
                n += 1
        self.logger.warning(f"Legal hold placed: subject={subject_id} records={n}")
        return n

    def remove_legal_hold(self, subject_id: str, ctx: Optional[RequestContext] = None) -> int:
        with self._lock(subject_id):
            check_context(ctx)
            now = self.clock()
            n = 0
            recs = self._subject_records(subject_id)
            self.repo.clear_hold(subject_id)
            for rec in recs:
                if not rec.legal_hold:
                    continue
                rec.legal_hold = False
                rec.legal_hold_reason = ""
                if rec.status == RetentionStatus.ON_HOLD:
                    rec.status = RetentionStatus.ACTIVE
                rec.updated_at = now
                self.repo.update(rec)
                n += 1
        self.logger.info(f"Legal hold removed: subject={subject_id} records={n}")
        return n

    def extend_retention(
        self,
        subject_id: str,
        reason: str,
        extend_by: int,
        approver: str,
        ctx: Optional[RequestContext] = None,
    ) -> List[RetentionRecord]:
        if int(extend_by) <= 0:
            raise ValidationError("extend_by must be positive.")
        extended: List[RetentionRecord] = []
        with self._lock(subject_id):
            check_context(ctx)
            now = self.clock()
            for rec in self._subject_records(subject_id):
                if rec.status not in SWEEPABLE:
                    continue
                rec.retention_end = float(rec.retention_end) + int(extend_by)
                if rec.grace_end is not None:
                    rec.grace_end = float(rec.grace_end) + int(extend_by)
                rec.extensions.append(
                    RetentionExtension(
                        reason=str(reason or ""),
                        extend_by=int(extend_by),
                        extended_by=str(approver or ""),
                        extended_at=now,
                        expires_at=rec.retention_end,
                    )
                )
                rec.status = RetentionStatus.EXTENDED
                rec.updated_at = now
                self.repo.update(rec)
                extended.append(rec)
        self.logger.info(f"Retention extended: subject={subject_id} records={len(extended)} by={int(extend_by)}s approver={approver}")
        return extended

    # ---- queries ----
    def is_held(self, subject_id: str) -> bool:
        """True while a legal hold is placed on the subject or any open record of it is held."""
        subject_id = str(subject_id or "")
        if self.repo.get_hold(subject_id) is not None:
            return True
        return any(r.legal_hold and r.status != RetentionStatus.COMPLETED for r in self.repo.list_for_subject(subject_id))

    def should_delete(self, subject_id: str, category: str = "", now: Optional[float] = None) -> bool:
        if not self.enabled:
            return False
        now = float(now if now is not None else self.clock())
        if self.is_held(subject_id):
            return False
        for rec in self.repo.list_for_subject(str(subject_id or "")):
            if category and rec.data_type != category:
                continue
            if rec.past_end(now) and (rec.grace_end is None or float(now) > float(rec.grace_end)):
                return True
        return False

    def records_for(self, subject_id: str) -> List[RetentionRecord]:
        return self.repo.list_for_subject(str(subject_id or ""))

    def erase_subject(self, subject_id: str, ctx: Optional[RequestContext] = None, *, keep_held: bool = True) -> Tuple[int, int]:
        """Delete the subject's records, sparing those under legal hold unless keep_held is False. Returns (deleted, held)."""
        deleted = held = 0
        with self._lock(subject_id):
            check_context(ctx)
            for rec in self.repo.list_for_subject(str(subject_id or "")):
                if rec.legal_hold:
                    held += 1
                    if keep_held:
                        continue
                if self.repo.delete(rec.id):
                    deleted += 1
            if not keep_held:
                self.repo.clear_hold(str(subject_id or ""))
        return deleted, held

    def health_check(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "enabled": self.enabled,
            "auto_delete": bool(self.cfg.auto_delete),
            "policies": [p.id for p in self.policies.list()],
        }
        try:
            out["records"] = self.repo.count_by_status()
            out["status"] = "healthy"
        except Exception as e:  # noqa: BLE001
            out["status"] = "unhealthy"
            out["error"] = str(e)
        return out
