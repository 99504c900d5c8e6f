from __future__ import annotations

import base64
import json
import re

import pytest

from privguard.core.audit.models import AuditEventType, AuditFilter, AuditResult
from privguard.core.config.models import DAY, YEAR, ComplianceConfig
from privguard.core.consent.models import ConsentRequest
from privguard.core.context import RequestContext
from privguard.core.crypto import AUDIT_KEY_ENV, generate_key_bytes
from privguard.core.errors import (
    ConfigError,
    ConsentDeniedError,
    PIIProcessingError,
    RequestCancelledError,
    ValidationError,
)
from privguard.core.framework import ComplianceFramework
from privguard.core.pii.models import AnonymizationMethod
from tests.helpers.fakes import DummyLogger, FakeDataSystem

HEX64 = re.compile(r"^[0-9a-f]{64}$")


def _events(fw, subject_id, **kw):
    return fw.get_audit_logs(AuditFilter(subject_id=subject_id, limit=100, **kw))


def test_process_data_with_consent_masks_pii(framework):
    framework.record_consent("u1", "marketing")
    out = framework.process_data("u1", {"email": "maria@example.com", "age": 30}, "marketing")
    assert HEX64.match(out["email"])
    assert out["age"] == 30

    kinds = [(e.event_type, e.result) for e in _events(framework, "u1")]
    assert (AuditEventType.DATA_PROCESSING, AuditResult.PENDING) in kinds
    assert (AuditEventType.DATA_PROCESSING, AuditResult.SUCCESS) in kinds
    assert (AuditEventType.PII_DETECTION, AuditResult.SUCCESS) in kinds
    assert (AuditEventType.CONSENT_GRANT, AuditResult.SUCCESS) in kinds

    success = _events(framework, "u1", event_type=AuditEventType.DATA_PROCESSING, result=AuditResult.SUCCESS)[0]
    assert "maria@example.com" not in success.model_dump_json()
    assert success.data_hash is not None


def test_process_data_opens_retention_records(framework):
    framework.record_consent("u1", "marketing")
    framework.process_data("u1", {"email": "maria@example.com"}, "marketing")
    recs = framework.retention.records_for("u1")
    assert {r.policy_id for r in recs} == {"user_data_policy", "task_data_policy"}
    assert framework.should_delete_data("u1") is False


def test_process_data_without_consent_is_denied_and_audited(framework):
    with pytest.raises(ConsentDeniedError) as ei:
        framework.process_data("u1", {"email": "maria@example.com"}, "marketing")
    assert str(ei.value) == "no valid consent for purpose: marketing"
    assert ei.value.context["reason"] == "not_found"

    blocked = _events(framework, "u1", result=AuditResult.BLOCKED)
    assert len(blocked) == 1
    assert blocked[0].stage == "denied"
    assert framework.retention.records_for("u1") == []


def test_withdrawn_consent_blocks_processing(framework):
    framework.record_consent("u1", ["marketing", "analytics"])
    framework.withdraw_consent("u1", "marketing")
    with pytest.raises(ConsentDeniedError):
        framework.process_data("u1", {"x": 1}, "marketing")
    assert framework.process_data("u1", {"x": 1}, "analytics") == {"x": 1}


def test_pii_failure_is_audited_and_raised(framework):
    class _Boom:
        method = AnonymizationMethod.HASH

        def anonymize(self, value, context=None):
            raise RuntimeError("boom")

        def is_reversible(self):
            return False

    framework.pii.anonymizers[AnonymizationMethod.HASH] = _Boom()
    framework.record_consent("u1", "marketing")
    with pytest.raises(PIIProcessingError):
        framework.process_data("u1", {"email": "maria@example.com"}, "marketing")
    failed = _events(framework, "u1", result=AuditResult.FAILURE)
    assert [e.stage for e in failed] == ["pii_error"]


def test_process_data_validates_inputs(framework):
    with pytest.raises(ValidationError):
        framework.process_data("", {"x": 1}, "marketing")
    with pytest.raises(ValidationError):
        framework.process_data("u1", ["x"], "marketing")  # type: ignore[arg-type]


def test_cancelled_context_stops_processing(framework):
    framework.record_consent("u1", "marketing")
    ctx = RequestContext(user_id="svc")
    ctx.cancel()
    with pytest.raises(RequestCancelledError):
        framework.process_data("u1", {"x": 1}, "marketing", ctx)


def test_context_actor_lands_on_audit_events(framework):
    framework.record_consent("u1", "marketing")
    ctx = RequestContext(user_id="svc", ip_address="10.1.1.1")
    framework.process_data("u1", {"x": 1}, "marketing", ctx)
    ev = _events(framework, "u1", result=AuditResult.SUCCESS, event_type=AuditEventType.DATA_PROCESSING)[0]
    assert ev.user_id == "svc"
    assert ev.trace_id == ctx.trace_id


def test_disabled_framework_passes_data_through(tmp_config_root, clock):
    fw = ComplianceFramework.from_config(ComplianceConfig(enabled=False), root=tmp_config_root.root, logger=DummyLogger(), clock=clock)
    data = {"email": "maria@example.com"}
    assert fw.process_data("u1", data, "marketing") == data
    assert fw.has_consent("u1", "anything") is True
    assert fw.get_compliance_status() == {"enabled": False, "status": "disabled"}


def test_grant_consent_requires_legal_basis(framework):
    with pytest.raises(ValidationError):
        framework.grant_consent(ConsentRequest(subject_id="u1", purpose="marketing"))


def test_encryption_requires_key(tmp_config_root, clock):
    cfg = ComplianceConfig.model_validate({"audit": {"encryption_enabled": True}})
    with pytest.raises(ConfigError):
        ComplianceFramework.from_config(cfg, root=tmp_config_root.root, logger=DummyLogger(), clock=clock)


def test_encryption_with_env_key(tmp_config_root, clock, monkeypatch):
    monkeypatch.setenv(AUDIT_KEY_ENV, base64.b64encode(generate_key_bytes()).decode("ascii"))
    cfg = ComplianceConfig.model_validate({"audit": {"encryption_enabled": True}})
    fw = ComplianceFramework.from_config(cfg, root=tmp_config_root.root, logger=DummyLogger(), clock=clock)
    fw.record_consent("u1", "billing")
    out = fw.process_data("u1", {"cpf": "52998224725"}, "billing")
    assert out["cpf"].startswith("TKN_")
    assert fw.pii.detokenize(out["cpf"]) == "52998224725"
    ev = _events(fw, "u1", event_type=AuditEventType.DATA_PROCESSING, result=AuditResult.SUCCESS)[0]
    assert ev.encrypted is True
    assert "pii_fields" in fw.audit.decrypt_details(ev)


def test_retention_policy_lookup(framework):
    assert framework.get_retention_policy("user_data").id == "user_data_policy"
    synth = framework.get_retention_policy("billing")
    assert synth.id == "billing_policy"
    assert synth.retention_period == 2 * YEAR


def test_legal_hold_and_extension_are_audited(framework):
    framework.record_data_creation("u1", "user_data")
    assert framework.place_legal_hold("u1", "subpoena") == 2
    framework.remove_legal_hold("u1")
    assert len(framework.extend_retention("u1", "tax audit", 30 * DAY, "dpo")) == 2
    actions = [e.details.get("action") for e in _events(framework, "u1", event_type=AuditEventType.RETENTION_POLICY)]
    assert set(actions) == {"legal_hold", "legal_hold_removed", "extend"}


def test_retention_sweep_erases_through_hooks(framework, hooks, clock):
    system = FakeDataSystem(rows={"u1": {"email": "maria@example.com"}})
    hooks.register("crm", system)
    framework.record_data_creation("u1", "user_data")
    rep = framework.run_retention_sweep(clock() + 3 * YEAR)
    assert rep["processed"] == 2
    assert rep["by_action"] == {"delete": 1, "archive": 1}
    assert system.erased == ["u1"]
    assert "u1" not in system.rows


def test_validate_compliance_reports_issues(framework, clock):
    out = framework.validate_compliance("u1", "marketing")
    assert out["compliant"] is False
    assert out["issues"] == ["consent_not_found"]

    framework.record_consent("u1", "marketing")
    framework.record_data_creation("u1", "user_data")
    assert framework.validate_compliance("u1", "marketing")["compliant"] is True

    clock.advance(3 * YEAR)
    out = framework.validate_compliance("u1", "marketing")
    assert "retention_expired" in out["issues"]
    assert "consent_expired" in out["issues"]


def test_compliance_status_reports_components(framework):
    st = framework.get_compliance_status()
    assert st["enabled"] is True
    assert st["components"]["pii_detection"] is True
    assert st["consent"]["status"] == "healthy"
    assert st["retention"]["status"] == "healthy"
    assert st["audit"]["status"] == "healthy"
    assert st["scheduler_running"] is False


def test_start_and_stop_scheduler(framework):
    framework.start()
    assert framework.scheduler.running is True
    framework.stop()
    assert framework.scheduler.running is False


def test_verify_audit_integrity_flags_tampering(framework):
    framework.record_consent("u1", "marketing")
    framework.process_data("u1", {"age": 30}, "marketing")
    assert framework.verify_audit_integrity().ok is True

    path = framework.audit.jsonl.path
    with open(path, "r", encoding="utf-8") as f:
        lines = f.readlines()
    obj = json.loads(lines[0])
    obj["subject_id"] = "someone-else"
    lines[0] = json.dumps(obj, ensure_ascii=False) + "\n"
    with open(path, "w", encoding="utf-8") as f:
        f.writelines(lines)

    rep = framework.verify_audit_integrity()
    assert rep.ok is False
    assert rep.broken_at_line == 1
    incidents = framework.get_audit_logs(AuditFilter(event_type=AuditEventType.SECURITY_INCIDENT))
    assert len(incidents) == 1
    assert incidents[0].result == AuditResult.FAILURE
    assert incidents[0].details["severity"] == "critical"
    assert any("verification failed" in line for line in framework.logger.lines)


def test_legal_hold_covers_data_recorded_later(tmp_config_root, hooks, clock):
    cfg = ComplianceConfig.model_validate({"retention": {"per_category_periods": {"billing": DAY}, "default_grace_seconds": 0}})
    fw = ComplianceFramework.from_config(cfg, root=tmp_config_root.root, hooks=hooks, logger=DummyLogger(), clock=clock)
    system = FakeDataSystem(rows={"u1": {"plan": "pro"}})
    hooks.register("crm", system)

    fw.record_data_creation("u1", "user_data")
    fw.place_legal_hold("u1", "litigation")
    fw.record_data_creation("u1", "billing")
    clock.advance(2 * DAY)

    assert fw.should_delete_data("u1") is False
    rep = fw.run_retention_sweep()
    assert rep["processed"] == 0
    assert system.erased == []
    assert system.rows == {"u1": {"plan": "pro"}}
    fw.stop()


def test_scheduled_sweep_records_check_and_prunes_audit_index(framework, clock):
    framework.record_consent("u1", "marketing")
    assert framework.get_audit_logs(AuditFilter(subject_id="u1"))
    clock.advance(8 * YEAR)

    framework.scheduler.run_once()

    checks = framework.get_audit_logs(AuditFilter(event_type=AuditEventType.COMPLIANCE_CHECK))
    assert [e.details["check"] for e in checks] == ["retention_sweep"]
    assert framework.get_audit_logs(AuditFilter(subject_id="u1")) == []
