from __future__ import annotations

import pytest

from privguard.core.config.models import DAY, YEAR, RetentionConfig
from privguard.core.errors import RetentionRecordNotFoundError, ValidationError
from privguard.core.retention.ledger import RetentionLedger
from privguard.core.retention.models import (
    RetentionAction,
    RetentionCondition,
    RetentionException,
    RetentionPolicy,
    RetentionStatus,
)
from privguard.core.retention.policies import PolicyCatalog, evaluate_conditions, infer_data_type
from privguard.core.retention.repository import SqliteRetentionRepository
from tests.helpers.fakes import DummyLogger


class _Handler:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    def handle(self, action, record):
        if self.fail:
            raise RuntimeError("handler failed")
        self.calls.append((action, record.subject_id))


def _policy(**kw):
    base = {"id": "p1", "category": "user_data", "retention_period": 10 * DAY, "grace_period": 0}
    base.update(kw)
    return RetentionPolicy(**base)


def _ledger(tmp_path, clock, *policies, handler=None, cfg=None):
    return RetentionLedger(
        repo=SqliteRetentionRepository(db_path=str(tmp_path / "retention.sqlite")),
        cfg=cfg or RetentionConfig(),
        policies=PolicyCatalog(policies or [_policy()]),
        handler=handler or _Handler(),
        logger=DummyLogger(),
        clock=clock,
    )


def test_infer_data_type():
    assert infer_data_type({"_category": "billing"}) == "billing"
    assert infer_data_type({"email": "x"}) == "user_data"
    assert infer_data_type({"task_id": 1}) == "task_data"
    assert infer_data_type({}) == "general_data"


def test_conditions_left_to_right():
    conds = [
        RetentionCondition(field="a", operator="eq", value=1),
        RetentionCondition(field="b", operator="exists", logic="OR"),
        RetentionCondition(field="c", operator="gt", value=5),
    ]
    assert evaluate_conditions(conds, {"a": 2, "b": "x", "c": 6}) is True
    assert evaluate_conditions(conds, {"a": 2, "b": "x", "c": 1}) is False
    assert evaluate_conditions([], {}) is True


def test_default_catalog_includes_configured_categories():
    cat = PolicyCatalog.from_config(RetentionConfig(per_category_periods={"billing": 5 * YEAR}))
    ids = [p.id for p in cat.list()]
    assert ids[:2] == ["user_data_policy", "task_data_policy"]
    assert "billing_policy" in ids
    billing = cat.policy_for_category("billing")
    assert billing is not None and billing.retention_period == 5 * YEAR
    assert PolicyCatalog.matches(billing, {"_data_type": "billing"}) is True
    assert PolicyCatalog.matches(billing, {"_data_type": "user_data"}) is False


def test_per_category_period_must_be_positive():
    with pytest.raises(ValueError):
        RetentionConfig(per_category_periods={"billing": 0})


def test_should_delete_lifecycle_with_grace(tmp_path, clock):
    led = _ledger(tmp_path, clock, _policy(grace_period=2 * DAY))
    recs = led.apply_policy("u1", {"email": "a@b.com"})
    assert len(recs) == 1
    assert recs[0].data_type == "user_data"
    assert recs[0].grace_end == pytest.approx(recs[0].retention_end + 2 * DAY)
    assert led.should_delete("u1") is False

    clock.advance(11 * DAY)
    assert led.should_delete("u1") is False  # inside grace
    clock.advance(2 * DAY)
    assert led.should_delete("u1") is True
    assert led.should_delete("u1", "other_category") is False


def test_apply_policy_is_idempotent_while_record_open(tmp_path, clock):
    led = _ledger(tmp_path, clock)
    assert len(led.apply_policy("u1", {})) == 1
    assert led.apply_policy("u1", {}) == []
    assert len(led.records_for("u1")) == 1


def test_policy_exception_extends_end(tmp_path, clock):
    ex = RetentionException(
        reason="open litigation",
        extend_by=30 * DAY,
        conditions=[RetentionCondition(field="litigation", operator="eq", value=True)],
    )
    led = _ledger(tmp_path, clock, _policy(exceptions=[ex]))
    rec = led.apply_policy("u1", {"litigation": True})[0]
    assert rec.retention_end == pytest.approx(clock() + 40 * DAY)
    assert rec.metadata["exceptions"] == ["open litigation"]


def test_legal_hold_blocks_deletion_after_expiry(tmp_path, clock):
    led = _ledger(tmp_path, clock)
    led.apply_policy("u1", {})
    assert led.place_legal_hold("u1", "subpoena") == 1
    clock.advance(365 * DAY)
    assert led.should_delete("u1") is False
    assert led.records_for("u1")[0].status == RetentionStatus.ON_HOLD

    assert led.remove_legal_hold("u1") == 1
    rec = led.records_for("u1")[0]
    assert rec.status == RetentionStatus.ACTIVE
    assert led.should_delete("u1") is True


def test_legal_hold_requires_reason_and_records(tmp_path, clock):
    led = _ledger(tmp_path, clock)
    with pytest.raises(ValidationError):
        led.place_legal_hold("u1", "  ")
    with pytest.raises(RetentionRecordNotFoundError):
        led.place_legal_hold("nobody", "subpoena")


def test_extend_retention_shifts_end_and_grace(tmp_path, clock):
    led = _ledger(tmp_path, clock, _policy(grace_period=DAY))
    before = led.apply_policy("u1", {})[0]
    out = led.extend_retention("u1", "audit", 5 * DAY, "dpo")
    assert len(out) == 1
    rec = out[0]
    assert rec.status == RetentionStatus.EXTENDED
    assert rec.retention_end == pytest.approx(before.retention_end + 5 * DAY)
    assert rec.grace_end == pytest.approx(before.grace_end + 5 * DAY)
    assert rec.extensions[0].extended_by == "dpo"
    with pytest.raises(ValidationError):
        led.extend_retention("u1", "audit", 0, "dpo")


def test_sweep_processes_due_records(tmp_path, clock):
    handler = _Handler()
    led = _ledger(tmp_path, clock, _policy(action=RetentionAction.ARCHIVE), handler=handler)
    led.apply_policy("u1", {})
    led.apply_policy("u2", {})
    led.place_legal_hold("u2", "subpoena")

    rep = led.sweep(clock() + DAY)
    assert rep["due"] == 0 and rep["processed"] == 0

    rep = led.sweep(clock() + 11 * DAY)
    assert rep["processed"] == 1
    assert rep["by_action"] == {"archive": 1}
    assert handler.calls == [(RetentionAction.ARCHIVE, "u1")]
    done = led.records_for("u1")[0]
    assert done.status == RetentionStatus.COMPLETED
    assert done.action_taken is True and done.action_taken_at is not None

    # completed records are not swept again
    assert led.sweep(clock() + 12 * DAY)["processed"] == 0


def test_sweep_skips_grace_window(tmp_path, clock):
    led = _ledger(tmp_path, clock, _policy(grace_period=5 * DAY))
    led.apply_policy("u1", {})
    led.apply_policy("u2", {})
    led.extend_retention("u2", "audit", DAY, "dpo")
    rep = led.sweep(clock() + 12 * DAY)
    assert rep["skipped_grace"] == 2
    assert rep["processed"] == 0

    rep = led.sweep(clock() + 20 * DAY)
    assert rep["processed"] == 2


def test_sweep_counts_held_records(tmp_path, clock):
    led = _ledger(tmp_path, clock)
    rec = led.apply_policy("u1", {})[0]
    rec.legal_hold = True
    led.repo.update(rec)
    rep = led.sweep(clock() + 11 * DAY)
    assert rep["due"] == 1
    assert rep["skipped_legal_hold"] == 1
    assert rep["processed"] == 0


def test_sweep_handler_failure_restores_status(tmp_path, clock):
    led = _ledger(tmp_path, clock, handler=_Handler(fail=True))
    led.apply_policy("u1", {})
    rep = led.sweep(clock() + 11 * DAY)
    assert rep["errors"] == 1
    assert rep["processed"] == 0
    assert led.records_for("u1")[0].status == RetentionStatus.ACTIVE


def test_disabled_retention(tmp_path, clock):
    led = _ledger(tmp_path, clock, cfg=RetentionConfig(enabled=False))
    assert led.apply_policy("u1", {}) == []
    assert led.should_delete("u1") is False
    assert led.sweep()["ok"] is False


def test_erase_subject_keeps_held_records(tmp_path, clock):
    led = _ledger(tmp_path, clock, _policy(), _policy(id="p2", category="other"))
    led.apply_policy("u1", {})
    assert len(led.records_for("u1")) == 2
    rec = led.records_for("u1")[0]
    rec.legal_hold = True
    led.repo.update(rec)
    assert led.erase_subject("u1") == (1, 1)
    assert len(led.records_for("u1")) == 1
    assert led.erase_subject("u1", keep_held=False) == (1, 1)
    assert led.records_for("u1") == []


def test_records_opened_after_hold_inherit_it(tmp_path, clock):
    billing = _policy(
        id="p2",
        category="billing",
        action=RetentionAction.DELETE,
        conditions=[RetentionCondition(field="kind", operator="eq", value="billing")],
    )
    handler = _Handler()
    led = _ledger(tmp_path, clock, _policy(), billing, handler=handler)
    assert len(led.apply_policy("u1", {})) == 1
    led.place_legal_hold("u1", "litigation")

    rec = led.apply_policy("u1", {"kind": "billing"})[0]
    assert rec.policy_id == "p2"
    assert rec.legal_hold is True
    assert rec.legal_hold_reason == "litigation"
    assert rec.status == RetentionStatus.ON_HOLD
    assert led.is_held("u1") is True

    clock.advance(11 * DAY)
    assert led.should_delete("u1") is False
    assert led.sweep()["processed"] == 0
    assert handler.calls == []

    assert led.remove_legal_hold("u1") == 2
    assert led.is_held("u1") is False
    assert led.sweep()["processed"] == 2


def test_sweep_spares_every_record_of_a_held_subject(tmp_path, clock):
    handler = _Handler()
    led = _ledger(tmp_path, clock, _policy(), _policy(id="p2", category="other"), handler=handler)
    first, second = led.apply_policy("u1", {})
    first.legal_hold = True
    led.repo.update(first)
    rep = led.sweep(clock() + 11 * DAY)
    assert rep["skipped_legal_hold"] == 2
    assert handler.calls == []
    assert led.records_for("u1")[0].status != RetentionStatus.COMPLETED


def test_full_erase_clears_subject_hold(tmp_path, clock):
    led = _ledger(tmp_path, clock)
    led.apply_policy("u1", {})
    led.place_legal_hold("u1", "subpoena")
    assert led.erase_subject("u1", keep_held=False) == (1, 1)
    assert led.is_held("u1") is False
    assert led.apply_policy("u1", {})[0].legal_hold is False
