"""Configuration loading and schema for mailcache sessions.

What:
  Expose the Pydantic settings models and the cached YAML loader.

Interfaces:
  - load_settings / get_settings / reset_settings / parse_settings
  - StoreSettings / ConnectionSettings / CacheSettings
  - ConfigLoadError / SettingsError
"""

from .loader import (
    ConfigLoadError,
    SettingsError,
    get_settings,
    load_settings,
    parse_settings,
    reset_settings,
)
from .schema import CacheSettings, ConnectionSettings, StoreSettings

__all__ = [
    "CacheSettings",
    "ConfigLoadError",
    "ConnectionSettings",
    "SettingsError",
    "StoreSettings",
    "get_settings",
    "load_settings",
    "parse_settings",
    "reset_settings",
]
