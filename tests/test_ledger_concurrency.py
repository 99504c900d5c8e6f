from __future__ import annotations

import threading

from privguard.core.config.models import DAY
from privguard.core.consent.models import ConsentRequest, LegalBasis
from privguard.core.retention.ledger import RetentionLedger
from privguard.core.retention.models import RetentionPolicy
from privguard.core.retention.policies import PolicyCatalog
from privguard.core.retention.repository import SqliteRetentionRepository
from tests.helpers.fakes import DummyLogger

THREADS = 8
ROUNDS = 20


def _run_threads(target, n=THREADS):
    errors = []
    start = threading.Barrier(n)

    def _wrapped(i):
        try:
            start.wait()
            target(i)
        except Exception as e:  # noqa: BLE001
            errors.append(e)

    threads = [threading.Thread(target=_wrapped, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    assert errors == []


def _req():
    return ConsentRequest(subject_id="u1", purpose="marketing", granted=True, legal_basis=LegalBasis.CONSENT.value)


def test_concurrent_grants_lose_no_versions(consent_ledger):
    def _grant(_i):
        for _ in range(ROUNDS):
            consent_ledger.grant(_req())

    _run_threads(_grant)
    rec = consent_ledger.repo.get("u1", "marketing")
    assert rec.version == THREADS * ROUNDS
    assert len(consent_ledger.history("u1", "marketing")) == THREADS * ROUNDS


def test_concurrent_grant_and_withdraw_are_serialized(consent_ledger):
    consent_ledger.grant(_req())

    def _flip(i):
        for _ in range(ROUNDS):
            if i % 2:
                consent_ledger.withdraw("u1", "marketing")
            else:
                consent_ledger.grant(_req())

    _run_threads(_flip)
    rec = consent_ledger.repo.get("u1", "marketing")
    assert rec.version == 1 + THREADS * ROUNDS
    assert len(consent_ledger.history("u1", "marketing")) == 1 + THREADS * ROUNDS


class _CountingHandler:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def handle(self, action, record):
        with self._lock:
            self.calls.append(record.id)


def _retention(tmp_path, clock, handler=None):
    return RetentionLedger(
        repo=SqliteRetentionRepository(db_path=str(tmp_path / "retention.sqlite")),
        policies=PolicyCatalog([RetentionPolicy(id="p1", retention_period=DAY)]),
        handler=handler,
        logger=DummyLogger(),
        clock=clock,
    )


def test_concurrent_apply_opens_one_record_per_policy(tmp_path, clock):
    led = _retention(tmp_path, clock)
    created = []
    lock = threading.Lock()

    def _apply(_i):
        for _ in range(ROUNDS):
            out = led.apply_policy("u1", {"email": "a@b.com"})
            with lock:
                created.extend(out)

    _run_threads(_apply)
    assert len(created) == 1
    assert len(led.records_for("u1")) == 1


def test_concurrent_sweeps_run_each_action_once(tmp_path, clock):
    handler = _CountingHandler()
    led = _retention(tmp_path, clock, handler)
    for i in range(5):
        led.apply_policy(f"u{i}", {})
    clock.advance(2 * DAY)
    processed = []
    lock = threading.Lock()

    def _sweep(_i):
        rep = led.sweep()
        with lock:
            processed.append(rep["processed"])

    _run_threads(_sweep)
    assert sum(processed) == 5
    assert sorted(handler.calls) == sorted({r.id for i in range(5) for r in led.records_for(f"u{i}")})
    assert len(handler.calls) == len(set(handler.calls)) == 5


def test_sweep_and_apply_race_keeps_one_open_record(tmp_path, clock):
    led = _retention(tmp_path, clock, _CountingHandler())
    led.apply_policy("u1", {})
    clock.advance(2 * DAY)

    def _work(i):
        for _ in range(ROUNDS):
            if i % 2:
                led.sweep()
            else:
                led.apply_policy("u1", {})

    _run_threads(_work)
    open_records = [r for r in led.records_for("u1") if r.status.value != "completed"]
    assert len(open_records) <= 1
