from __future__ import annotations

import importlib
import json

import pytest

from privguard.core.audit.models import AuditEventType, AuditFilter, AuditResult
from privguard.core.config.models import ComplianceConfig
from privguard.core.consent.models import ValidationReason
from privguard.core.errors import ComplianceDisabledError, ConsentNotFoundError, UnsupportedRightError, ValidationError
from privguard.core.framework import ComplianceFramework
from privguard.core.rights import RightsRequest, RightsRequestType, RightsStatus
from tests.helpers.fakes import DummyLogger, FakeDataSystem


@pytest.fixture
def crm(hooks):
    system = FakeDataSystem(rows={"u1": {"name": "Maria", "plan": "pro"}})
    hooks.register("crm", system)
    return system


def _seed(fw):
    fw.record_consent("u1", ["marketing", "analytics"])
    fw.process_data("u1", {"email": "maria@example.com"}, "marketing")


def test_access_returns_bundle(framework, crm):
    _seed(framework)
    req = framework.handle_rights_request("u1", {"type": "access"})
    assert req.status == RightsStatus.COMPLETED
    assert req.completed_at is not None
    data = req.result["data"]
    assert {c["purpose"] for c in data["consents"]} == {"marketing", "analytics"}
    assert data["systems"]["crm"] == {"name": "Maria", "plan": "pro"}
    assert req.result["counts"]["retention"] == 2
    assert req.result["counts"]["processing_history"] > 0


def test_access_with_failing_system_is_partial(framework, hooks):
    hooks.register("broken", FakeDataSystem(fail=True))
    req = framework.handle_rights_request("u1", RightsRequest(type=RightsRequestType.ACCESS))
    assert req.status == RightsStatus.PARTIAL
    assert req.result["failed_systems"] == ["broken"]


def test_portability_json_and_csv(framework, crm):
    _seed(framework)
    req = framework.handle_rights_request("u1", {"type": "portability", "payload": {"format": "json"}})
    assert req.result["content_type"] == "application/json"
    assert json.loads(req.result["content"])["subject_id"] == "u1"

    req = framework.handle_rights_request("u1", {"type": "portability", "payload": {"format": "CSV"}})
    assert req.result["content_type"] == "text/csv"
    assert req.result["content"].splitlines()[0] == "section,index,field,value"
    assert "systems.crm,0,plan,pro" in req.result["content"]


def test_portability_rejects_unknown_format(framework):
    with pytest.raises(ValidationError):
        framework.handle_rights_request("u1", {"type": "portability", "payload": {"format": "xml"}})
    failures = framework.get_audit_logs(AuditFilter(subject_id="u1", result=AuditResult.FAILURE))
    assert failures[0].details["error"] == "validation_error"


def test_erasure_removes_everything(framework, crm):
    _seed(framework)
    req = framework.handle_rights_request("u1", {"type": "erasure"})
    assert req.status == RightsStatus.COMPLETED
    counts = req.result["counts"]
    assert counts["system.crm"] == 1
    assert counts["consents"] == 2
    assert counts["retention_records"] == 2
    assert "u1" not in crm.rows
    assert framework.consent.validate("u1", "marketing").reason == ValidationReason.NOT_FOUND
    assert framework.retention.records_for("u1") == []


def test_erasure_under_legal_hold_withdraws_consent_and_keeps_data(framework, crm):
    _seed(framework)
    framework.place_legal_hold("u1", "litigation")
    req = framework.handle_rights_request("u1", {"type": "erasure"})
    assert req.status == RightsStatus.PARTIAL
    assert req.result["blocked_by_legal_hold"] is True
    assert req.result["counts"]["consents_withdrawn"] == 2
    assert crm.rows["u1"]["plan"] == "pro"
    assert len(framework.retention.records_for("u1")) == 2
    assert framework.consent.validate("u1", "marketing").reason == ValidationReason.WITHDRAWN
    blocked = framework.get_audit_logs(AuditFilter(subject_id="u1", event_type=AuditEventType.DATA_DELETE))
    assert blocked[0].result == AuditResult.BLOCKED


def test_rectification(framework, crm):
    req = framework.handle_rights_request("u1", {"type": "rectification", "payload": {"updates": {"plan": "free"}}})
    assert req.status == RightsStatus.COMPLETED
    assert req.result["applied"] == {"crm": ["plan"]}
    assert crm.rows["u1"]["plan"] == "free"
    with pytest.raises(ValidationError):
        framework.handle_rights_request("u1", {"type": "rectification", "payload": {"updates": {}}})


def test_withdraw_consent_request(framework):
    framework.record_consent("u1", ["marketing", "analytics"])
    req = framework.handle_rights_request("u1", {"type": "withdraw_consent", "payload": {"purposes": ["marketing", "ghost"]}})
    assert req.status == RightsStatus.PARTIAL
    assert req.result["withdrawn"] == ["marketing"]
    assert req.result["not_found"] == ["ghost"]
    assert framework.has_consent("u1", "marketing") is False
    assert framework.has_consent("u1", "analytics") is True


@pytest.mark.parametrize(
    "payload",
    [{}, {"purpose": ""}, {"purpose": 3}, {"purposes": []}, {"purposes": "marketing"}, {"purposes": ["ok", ""]}],
)
def test_withdraw_consent_payload_validation(framework, payload):
    with pytest.raises(ValidationError):
        framework.handle_rights_request("u1", {"type": "withdraw_consent", "payload": payload})


def test_withdraw_consent_nothing_found(framework):
    with pytest.raises(ConsentNotFoundError):
        framework.handle_rights_request("u1", {"type": "withdraw_consent", "payload": {"purpose": "marketing"}})


def test_unsupported_right_type(framework):
    with pytest.raises(UnsupportedRightError) as ei:
        framework.handle_rights_request("u1", {"type": "restriction"})
    assert str(ei.value) == "unsupported data right type: restriction"
    events = framework.get_audit_logs(AuditFilter(subject_id="u1", event_type=AuditEventType.RIGHTS_REQUEST))
    assert [e.result for e in events] == [AuditResult.FAILURE, AuditResult.PENDING]


def test_rights_disabled(tmp_config_root, clock):
    cfg = ComplianceConfig.model_validate({"rights": {"enabled": False}})
    fw = ComplianceFramework.from_config(cfg, root=tmp_config_root.root, logger=DummyLogger(), clock=clock)
    with pytest.raises(ComplianceDisabledError):
        fw.handle_rights_request("u1", {"type": "access"})


def test_unregistered_system_is_not_consulted(framework, hooks, crm):
    hooks.unregister("crm")
    hooks.unregister("missing")
    assert hooks.list() == []
    req = framework.handle_rights_request("u1", {"type": "access"})
    assert req.status == RightsStatus.COMPLETED
    assert req.result["data"]["systems"] == {}


@pytest.mark.parametrize(
    "module,first_words",
    [
        ("privguard.core.rights", "Data subject rights"),
        ("privguard.core.consent", "Purpose-bound consent ledger"),
        ("privguard.core.pii", "PII classification"),
        ("privguard.core.retention", "Retention lifecycle"),
        ("privguard.core.mapping", "Data inventory and field mapping"),
    ],
)
def test_module_docstrings_are_attached(module, first_words):
    mod = importlib.import_module(module)
    assert (mod.__doc__ or "").strip().startswith(first_words)
