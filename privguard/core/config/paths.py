from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ConfigFsPaths:
    root: str = "."

    @property
    def config_dir(self) -> str:
        return os.path.join(self.root, "config")

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.config_dir, "backups")

    @property
    def runtime_dir(self) -> str:
        return os.path.join(self.root, "runtime")

    @property
    def logs_dir(self) -> str:
        return os.path.join(self.root, "logs")

    @property
    def compliance(self) -> str:
        return os.path.join(self.config_dir, "compliance.json")

    def resolve(self, path: str) -> str:
        """Resolve a config-relative path against the root."""
        if os.path.isabs(path):
            return path
        return os.path.join(self.root, path)
