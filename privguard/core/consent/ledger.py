from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional

from privguard.core.config.models import DAY, ConsentConfig
from privguard.core.consent.models import (
    ConsentHistoryEntry,
    ConsentRecord,
    ConsentRequest,
    ConsentSource,
    ConsentValidation,
    LegalBasis,
    ValidationReason,
)
from privguard.core.consent.repository import ConsentRepository
from privguard.core.context import RequestContext, check_context
from privguard.core.errors import ComplianceDisabledError, ConsentNotFoundError, ValidationError
from privguard.core.locks import KeyedLocks
from privguard.core.logger import get_logger


class ConsentLedger:
    def __init__(
        self,
        *,
        repo: ConsentRepository,
        cfg: Optional[ConsentConfig] = None,
        locks: Optional[KeyedLocks] = None,
        logger: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.repo = repo
        self.cfg = cfg or ConsentConfig()
        self.locks = locks or KeyedLocks()
        self.logger = get_logger("consent", logger)
        self.clock = clock

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled)

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise ComplianceDisabledError("Consent management is disabled.")

    def _expiry(self, request: ConsentRequest, now: float) -> Optional[float]:
        if request.expiration_days is not None:
            return now + int(request.expiration_days) * DAY
        if int(self.cfg.ttl_seconds) > 0:
            return now + int(self.cfg.ttl_seconds)
        return None

    @staticmethod
    def _validate_request(request: ConsentRequest) -> None:
        missing = [
            name
            for name, v in (("subject_id", request.subject_id), ("purpose", request.purpose), ("legal_basis", request.legal_basis))
            if not str(v or "").strip()
        ]
        if missing:
            raise ValidationError(f"Consent request is missing: {', '.join(missing)}.", missing=missing)

    def grant(self, request: ConsentRequest, ctx: Optional[RequestContext] = None) -> ConsentRecord:
        """
        Create or update the consent for (subject_id, purpose).

        An existing record is overwritten in place: version +1, withdrawal
        cleared when granting again, expiry recomputed.
        """
        self._require_enabled()
        if not isinstance(request, ConsentRequest):
            request = ConsentRequest.model_validate(request)
        self._validate_request(request)
        subject_id = request.subject_id.strip()
        purpose = request.purpose.strip()

        with self.locks.lock("consent", subject_id, purpose):
            check_context(ctx)
            now = self.clock()
            existing = self.repo.get(subject_id, purpose)
            action = "grant" if request.granted else "deny"
            if existing is not None:
                rec = existing.model_copy(deep=True)
                rec.granted = bool(request.granted)
                rec.legal_basis = request.legal_basis.strip()
                rec.source = request.source
                rec.granted_at = now
                rec.expires_at = self._expiry(request, now)
                if request.granted:
                    rec.withdrawn_at = None
                rec.ip_address = request.ip_address
                rec.user_agent = request.user_agent
                rec.consent_string = request.consent_string
                rec.metadata = dict(request.metadata or {})
                rec.version = existing.version + 1
                rec.updated_at = now
                self.repo.update(rec, expected_version=existing.version, action=action)
            else:
                rec = ConsentRecord(
                    subject_id=subject_id,
                    purpose=purpose,
                    granted=bool(request.granted),
                    legal_basis=request.legal_basis.strip(),
                    source=request.source,
                    granted_at=now,
                    expires_at=self._expiry(request, now),
                    ip_address=request.ip_address,
                    user_agent=request.user_agent,
                    consent_string=request.consent_string,
                    metadata=dict(request.metadata or {}),
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
                self.repo.insert(rec, action=action)

        self.logger.info(f"Consent {action}: subject={subject_id} purpose={purpose} version={rec.version}")
        return rec

    def record_consent(
        self,
        subject_id: str,
        purpose: str,
        source: ConsentSource = ConsentSource.API,
        ctx: Optional[RequestContext] = None,
    ) -> ConsentRecord:
        return self.grant(
            ConsentRequest(subject_id=subject_id, purpose=purpose, granted=True, legal_basis=LegalBasis.CONSENT.value, source=source),
            ctx,
        )

    def validate(self, subject_id: str, purpose: str, now: Optional[float] = None) -> ConsentValidation:
        if not self.enabled:
            return ConsentValidation(valid=True, reason=ValidationReason.DISABLED)
        now = float(now if now is not None else self.clock())
        rec = self.repo.get(str(subject_id or ""), str(purpose or ""))
        if rec is None:
            return ConsentValidation(valid=False, reason=ValidationReason.NOT_FOUND, required_actions=["request_consent"])
        if not rec.granted:
            return ConsentValidation(valid=False, reason=ValidationReason.NOT_GRANTED, consent=rec, required_actions=["request_consent"])
        if rec.withdrawn_at is not None:
            return ConsentValidation(valid=False, reason=ValidationReason.WITHDRAWN, consent=rec, required_actions=["request_new_consent"])
        if rec.expires_at is not None and float(rec.expires_at) < now:
            return ConsentValidation(valid=False, reason=ValidationReason.EXPIRED, consent=rec, required_actions=["renew_consent"])
        remaining = float(rec.expires_at) - now if rec.expires_at is not None else None
        return ConsentValidation(valid=True, reason=ValidationReason.VALID, consent=rec, remaining_ttl=remaining)

    def has_valid_consent(self, subject_id: str, purpose: str) -> bool:
        return self.validate(subject_id, purpose).valid

    def withdraw(self, subject_id: str, purpose: str, ctx: Optional[RequestContext] = None) -> ConsentRecord:
        self._require_enabled()
        subject_id = str(subject_id or "").strip()
        purpose = str(purpose or "").strip()
        if not subject_id or not purpose:
            raise ValidationError("Withdrawal requires subject_id and purpose.")
        with self.locks.lock("consent", subject_id, purpose):
            check_context(ctx)
            existing = self.repo.get(subject_id, purpose)
            if existing is None:
                raise ConsentNotFoundError(subject_id=subject_id, purpose=purpose)
            now = self.clock()
            rec = existing.model_copy(deep=True)
            rec.withdrawn_at = now
            rec.updated_at = now
            rec.version = existing.version + 1
            self.repo.update(rec, expected_version=existing.version, action="withdraw")
        self.logger.info(f"Consent withdrawn: subject={subject_id} purpose={purpose}")
        return rec

    def history(self, subject_id: str, purpose: str) -> List[ConsentHistoryEntry]:
        self._require_enabled()
        return self.repo.history(str(subject_id or ""), str(purpose or ""))

    def list_consents(self, subject_id: str) -> List[ConsentRecord]:
        self._require_enabled()
        return self.repo.list_for_subject(str(subject_id or ""))

    def erase_subject(self, subject_id: str, ctx: Optional[RequestContext] = None) -> int:
        check_context(ctx)
        n = self.repo.delete_subject(str(subject_id or ""))
        self.logger.info(f"Consent records erased: subject={subject_id} count={n}")
        return n

    def health_check(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "enabled": self.enabled,
            "default_purposes": list(self.cfg.default_purposes),
            "ttl_seconds": int(self.cfg.ttl_seconds),
            "granularity_level": self.cfg.granularity_level,
        }
        try:
            out["records"] = self.repo.count()
            out["status"] = "healthy"
        except Exception as e:  # noqa: BLE001
            out["status"] = "unhealthy"
            out["error"] = str(e)
        return out
