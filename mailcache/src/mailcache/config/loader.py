"""Locate, parse and cache the mailcache configuration file.

What:
  Resolve the YAML configuration describing the server connection, the cache
  directory and the operation mode, validate it into
  :class:`~mailcache.config.schema.StoreSettings`, and memoise the result.

Why:
  The CLI and long-running synchronisation jobs all need the same settings;
  resolving the file once with a fixed precedence order avoids surprises when
  several candidate files exist.

How:
  Candidate paths are yielded in priority order (explicit argument, the
  ``MAILCACHE_CONFIG_PATH`` environment variable, then well-known defaults).
  The first existing file is parsed with :func:`yaml.safe_load` and validated
  with Pydantic. ``MAILCACHE_PASSWORD`` overrides the password so secrets can
  stay out of the file.

Interfaces:
  :func:`load_settings`, :func:`get_settings`, :func:`reset_settings`,
  :class:`ConfigLoadError`, :class:`SettingsError`.

Invariants:
  - Configuration is only ever read, never written back.
  - Filesystem, YAML and validation failures surface as
    :class:`SettingsError` naming the offending path.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from .schema import StoreSettings


class ConfigLoadError(Exception):
    """Base error for configuration discovery or validation failures."""


class SettingsError(ConfigLoadError):
    """Raised when the configuration file cannot be found, parsed or validated."""


_CONFIG_ENV = "MAILCACHE_CONFIG_PATH"
_PASSWORD_ENV = "MAILCACHE_PASSWORD"
_DEFAULT_LOCATIONS: Tuple[Path, ...] = (
    Path("mailcache.yaml"),
    Path("~/.config/mailcache/config.yaml"),
)
_SETTINGS_CACHE: Optional[Tuple[Path, StoreSettings]] = None


def _candidate_paths(path: Optional[Path]) -> Iterable[Path]:
    """Yield configuration locations, most specific first, without duplicates."""

    seen: set[Path] = set()
    ordered = []
    if path is not None:
        ordered.append(path)
    env_path = os.environ.get(_CONFIG_ENV)
    if env_path:
        ordered.append(Path(env_path))
    ordered.extend(_DEFAULT_LOCATIONS)
    for item in ordered:
        candidate = item.expanduser()
        if candidate not in seen:
            seen.add(candidate)
            yield candidate


def parse_settings(text: str, source: Union[Path, str] = "<string>") -> StoreSettings:
    """Parse YAML ``text`` into validated settings.

    Raises:
      SettingsError: On invalid YAML, a non-mapping document, or schema errors.
    """

    try:
        payload = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise SettingsError(f"Invalid YAML in {source}: {exc}") from exc
    if not isinstance(payload, dict):
        raise SettingsError(f"{source} must contain a mapping at the top level")
    payload = _apply_environment(payload)
    try:
        return StoreSettings.model_validate(payload)
    except ValidationError as exc:
        raise SettingsError(f"Invalid configuration in {source}: {exc}") from exc


def _apply_environment(payload: Dict[str, Any]) -> Dict[str, Any]:
    password = os.environ.get(_PASSWORD_ENV)
    if not password:
        return payload
    merged = dict(payload)
    connection = dict(merged.get("connection") or {})
    connection["password"] = password
    merged["connection"] = connection
    return merged


def _load_from_path(path: Path) -> StoreSettings:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise SettingsError(f"Configuration file missing: {path}") from exc
    except OSError as exc:
        raise SettingsError(f"Unable to read configuration file {path}: {exc}") from exc
    return parse_settings(text, path)


def load_settings(path: Optional[Union[Path, str]] = None, *, reload: bool = False) -> StoreSettings:
    """Resolve, parse and cache the configuration.

    What:
      Returns the validated settings from the first existing candidate file.

    Why:
      Repeated callers share one parsed instance; ``reload`` forces a fresh
      read after the file changed or between tests.

    Args:
      path: Optional explicit configuration path.
      reload: Bypass the cache.

    Returns:
      The validated :class:`StoreSettings`.

    Raises:
      SettingsError: If no candidate exists or the chosen file is invalid.
    """

    global _SETTINGS_CACHE

    requested = Path(path).expanduser() if isinstance(path, (str, Path)) else None
    if not reload and _SETTINGS_CACHE is not None:
        cached_path, cached = _SETTINGS_CACHE
        if requested is None or cached_path == requested:
            return cached

    searched: list[str] = []
    for candidate in _candidate_paths(requested):
        if not candidate.exists():
            searched.append(str(candidate))
            continue
        settings = _load_from_path(candidate)
        _SETTINGS_CACHE = (candidate, settings)
        return settings

    raise SettingsError(f"Unable to locate configuration (searched: {', '.join(searched) or '<none>'})")


def get_settings() -> StoreSettings:
    """Return the cached settings, loading them on first use."""

    return load_settings()


def reset_settings() -> None:
    """Forget the cached settings."""

    global _SETTINGS_CACHE
    _SETTINGS_CACHE = None
