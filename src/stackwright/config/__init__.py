"""
stackwright configuration.

- Pydantic-based settings (environment variables, .env files)
- Optional YAML project config overriding backend and lock options
"""

from stackwright.config.loader import ConfigLoader, get_config_path, load_config
from stackwright.config.settings import Settings, default_holder, get_settings

__all__ = [
    "ConfigLoader",
    "Settings",
    "default_holder",
    "get_config_path",
    "get_settings",
    "load_config",
]
