from __future__ import annotations

import os

import pytest

from privguard.core.audit.recorder import AuditRecorder
from privguard.core.audit.store_jsonl import AuditJsonlStore
from privguard.core.audit.store_sqlite import AuditSqliteIndex
from privguard.core.config.manager import ConfigManager
from privguard.core.config.models import AuditConfig, ComplianceConfig
from privguard.core.config.paths import ConfigFsPaths
from privguard.core.consent.ledger import ConsentLedger
from privguard.core.consent.repository import SqliteConsentRepository
from privguard.core.crypto import AUDIT_KEY_ENV
from privguard.core.framework import ComplianceFramework
from privguard.core.rights import HooksRegistry
from tests.helpers.fakes import DummyLogger, FakeClock


@pytest.fixture(autouse=True)
def _no_audit_key(monkeypatch):
    monkeypatch.delenv(AUDIT_KEY_ENV, raising=False)


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated repo root with config/ and runtime/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    os.makedirs(fs.runtime_dir, exist_ok=True)
    return fs


@pytest.fixture
def config_manager(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=DummyLogger(), read_only=False)
    cm.load()
    return cm


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def consent_ledger(tmp_path, clock):
    repo = SqliteConsentRepository(db_path=str(tmp_path / "consent.sqlite"))
    return ConsentLedger(repo=repo, logger=DummyLogger(), clock=clock)


@pytest.fixture
def make_recorder(tmp_path, clock):
    def _make(*, key=None, **cfg):
        return AuditRecorder(
            cfg=AuditConfig(**cfg),
            jsonl=AuditJsonlStore(path=str(tmp_path / "audit" / "audit.jsonl")),
            index=AuditSqliteIndex(path=str(tmp_path / "audit" / "index.sqlite")),
            encryption_key=key,
            logger=DummyLogger(),
            audit_logger=DummyLogger(),
            clock=clock,
        )

    return _make


@pytest.fixture
def recorder(make_recorder):
    return make_recorder()


@pytest.fixture
def hooks():
    return HooksRegistry()


@pytest.fixture
def framework(tmp_config_root, clock, hooks):
    fw = ComplianceFramework.from_config(ComplianceConfig(), root=tmp_config_root.root, hooks=hooks, logger=DummyLogger(), clock=clock)
    yield fw
    fw.stop()
