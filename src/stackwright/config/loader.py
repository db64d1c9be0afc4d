"""
Project configuration file loading and merging.

Search order:
1. Explicit path (--config flag)
2. .stackwright/config.yaml (project root)
3. ~/.stackwright/config.yaml (user home)
4. Settings from environment / defaults only

Example file:

    declarations_file: infra/stack.yaml
    backend:
      state: sql
      lock: dynamodb
      database_url: sqlite+aiosqlite:///.stackwright/state.db
      dynamodb_table: infra-locks
      aws_region: eu-west-1
    lock:
      lease_seconds: 120
      timeout_seconds: 30
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from stackwright.config.settings import Settings, get_settings
from stackwright.core.errors import ConfigurationError

logger = structlog.get_logger()

# (section, key) -> Settings field
_FIELD_MAP: dict[tuple[str | None, str], str] = {
    (None, "declarations_file"): "declarations_file",
    (None, "log_level"): "log_level",
    ("backend", "state"): "state_backend",
    ("backend", "lock"): "lock_backend",
    ("backend", "state_dir"): "state_dir",
    ("backend", "database_url"): "database_url",
    ("backend", "dynamodb_table"): "dynamodb_table",
    ("backend", "aws_region"): "aws_region",
    ("lock", "lease_seconds"): "lock_lease_seconds",
    ("lock", "timeout_seconds"): "lock_timeout_seconds",
    ("lock", "backoff_initial"): "lock_backoff_initial",
    ("lock", "backoff_max"): "lock_backoff_max",
    ("lock", "holder"): "holder",
}


def get_config_path(explicit_path: str | Path | None = None) -> Path | None:
    """
    Find the configuration file to use.

    An explicit path that does not exist is a configuration error rather
    than a silent fallback.
    """
    if explicit_path:
        path = Path(explicit_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        return path

    cwd_config = Path.cwd() / ".stackwright" / "config.yaml"
    if cwd_config.exists():
        return cwd_config

    home_config = Path.home() / ".stackwright" / "config.yaml"
    if home_config.exists():
        return home_config

    return None


class ConfigLoader:
    """Loads a project config file and merges it over Settings."""

    def __init__(self, config_path: Path | None = None, base: Settings | None = None):
        self.config_path = config_path
        self.base = base or get_settings()

    def load(self) -> Settings:
        if not self.config_path:
            return self.base
        data = self._read(self.config_path)
        overrides = self._flatten(data)
        if not overrides:
            return self.base

        merged = {**self.base.model_dump(), **overrides}
        try:
            settings = Settings(**merged)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration in {self.config_path}: {e.errors()[0]['msg']}",
                {"path": str(self.config_path)},
            ) from e

        logger.debug("loaded_config", path=str(self.config_path), keys=sorted(overrides))
        return settings

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file must be a YAML dictionary: {path}")
        return data

    def _flatten(self, data: dict[str, Any]) -> dict[str, Any]:
        overrides: dict[str, Any] = {}
        for (section, key), field_name in _FIELD_MAP.items():
            source = data if section is None else data.get(section) or {}
            if not isinstance(source, dict):
                raise ConfigurationError(f"'{section}' section must be a dictionary")
            if key in source:
                overrides[field_name] = source[key]
        return overrides


def load_config(path: str | Path | None = None, base: Settings | None = None) -> Settings:
    """
    Convenience function to load effective settings.

    Args:
        path: Optional explicit config file path
        base: Settings to merge over (defaults to environment settings)

    Returns:
        Settings instance
    """
    return ConfigLoader(get_config_path(path), base=base).load()
