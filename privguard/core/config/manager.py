from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from privguard.core.config.io import ensure_dirs, load_json_object, quarantine, write_json_atomic
from privguard.core.config.models import ComplianceConfig, default_compliance_config_dict
from privguard.core.config.paths import ConfigFsPaths
from privguard.core.errors import ConfigError
from privguard.core.logger import get_logger


class ConfigManager:
    """
    Loads and saves config/compliance.json.

    - missing file: defaults are written (unless read_only)
    - corrupt JSON: file is moved to backups/ and defaults are used
    - schema violations: ConfigError (startup-fatal)
    """

    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger: Any = None, read_only: bool = False):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = get_logger("config", logger)
        self.read_only = bool(read_only)
        self._cfg: Optional[ComplianceConfig] = None

    def load(self) -> ComplianceConfig:
        ensure_dirs(self.fs.config_dir, self.fs.backups_dir)
        loaded = load_json_object(self.fs.compliance)
        raw: Dict[str, Any]
        if loaded.ok:
            raw = loaded.data
        else:
            moved = None
            if loaded.corrupt:
                moved = quarantine(self.fs.compliance, self.fs.backups_dir)
                self.logger.warning(f"compliance.json was corrupt ({loaded.error}); moved to {moved}; using defaults")
            elif loaded.error != "missing":
                self.logger.warning(f"compliance.json could not be read ({loaded.error}); using defaults")
            raw = default_compliance_config_dict()
            if not self.read_only and (loaded.error == "missing" or moved):
                write_json_atomic(self.fs.compliance, raw, backups_dir=self.fs.backups_dir)
        try:
            cfg = ComplianceConfig.model_validate(raw)
        except PydanticValidationError as e:
            raise ConfigError("compliance.json is invalid.", errors=e.errors(include_url=False)) from e
        self._cfg = cfg
        return cfg

    def get(self) -> ComplianceConfig:
        if self._cfg is None:
            return self.load()
        return self._cfg

    def save(self, cfg: ComplianceConfig | Dict[str, Any]) -> ComplianceConfig:
        if self.read_only:
            raise ConfigError("Config manager is read-only.")
        try:
            model = cfg if isinstance(cfg, ComplianceConfig) else ComplianceConfig.model_validate(cfg)
        except PydanticValidationError as e:
            raise ConfigError("Refusing to save invalid compliance config.", errors=e.errors(include_url=False)) from e
        write_json_atomic(self.fs.compliance, model.model_dump(mode="json"), backups_dir=self.fs.backups_dir)
        self._cfg = model
        return model
