from __future__ import annotations

import json
import os

import pytest

from privguard.core.config.manager import ConfigManager
from privguard.core.config.models import DAY, ComplianceConfig
from privguard.core.errors import ConfigError
from tests.helpers.fakes import DummyLogger


def test_missing_file_writes_defaults(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=DummyLogger())
    cfg = cm.load()
    assert cfg == ComplianceConfig()
    assert os.path.exists(tmp_config_root.compliance)
    with open(tmp_config_root.compliance, "r", encoding="utf-8") as f:
        on_disk = json.load(f)
    assert on_disk["default_region"] == "BR"
    assert on_disk["pii"]["confidence_threshold"] == 0.8


def test_read_only_does_not_write(tmp_config_root):
    cm = ConfigManager(fs=tmp_config_root, logger=DummyLogger(), read_only=True)
    cm.load()
    assert not os.path.exists(tmp_config_root.compliance)
    with pytest.raises(ConfigError):
        cm.save(ComplianceConfig())


def test_corrupt_json_is_quarantined(tmp_config_root):
    with open(tmp_config_root.compliance, "w", encoding="utf-8") as f:
        f.write("{not json")
    logger = DummyLogger()
    cfg = ConfigManager(fs=tmp_config_root, logger=logger).load()
    assert cfg.enabled is True
    backups = os.listdir(tmp_config_root.backups_dir)
    assert any("compliance.json" in b and "corrupt" in b for b in backups)
    assert any("corrupt" in line for line in logger.lines)


def test_unknown_fields_are_rejected(tmp_config_root):
    with open(tmp_config_root.compliance, "w", encoding="utf-8") as f:
        json.dump({"pii": {"enabled": True, "bogus": 1}}, f)
    with pytest.raises(ConfigError) as ei:
        ConfigManager(fs=tmp_config_root, logger=DummyLogger()).load()
    assert ei.value.code == "config_error"


def test_invalid_values_are_rejected(tmp_config_root):
    with open(tmp_config_root.compliance, "w", encoding="utf-8") as f:
        json.dump({"audit": {"detail_level": "verbose"}}, f)
    with pytest.raises(ConfigError):
        ConfigManager(fs=tmp_config_root, logger=DummyLogger()).load()


def test_save_round_trips_overrides(config_manager):
    cfg = config_manager.get()
    changed = cfg.model_copy(update={"default_region": "EU"})
    changed.retention.per_category_periods = {"billing": 5 * 365 * DAY}
    config_manager.save(changed)
    reloaded = ConfigManager(fs=config_manager.fs, logger=DummyLogger()).load()
    assert reloaded.default_region == "EU"
    assert reloaded.retention.per_category_periods == {"billing": 5 * 365 * DAY}


def test_save_rejects_invalid_dict(config_manager):
    with pytest.raises(ConfigError):
        config_manager.save({"consent": {"granularity_level": "galaxy"}})


def test_non_object_json_is_quarantined_and_defaults_rewritten(tmp_config_root):
    with open(tmp_config_root.compliance, "w", encoding="utf-8") as f:
        json.dump([1, 2], f)
    cfg = ConfigManager(fs=tmp_config_root, logger=DummyLogger()).load()
    assert cfg == ComplianceConfig()
    assert any(b.endswith(".corrupt.json") for b in os.listdir(tmp_config_root.backups_dir))
    with open(tmp_config_root.compliance, "r", encoding="utf-8") as f:
        assert isinstance(json.load(f), dict)


def test_save_keeps_previous_file_as_backup(config_manager):
    config_manager.get()
    config_manager.save(ComplianceConfig(default_region="EU"))
    backups = os.listdir(config_manager.fs.backups_dir)
    assert any(b.startswith("compliance.json.") and ".prewrite." in b for b in backups)
