"""Pytest configuration shared by every suite.

What:
  Make the ``mailcache`` source tree importable and reset process-wide state
  (cached settings, registered stores, environment overrides) around each
  test.

Why:
  Settings and open stores are module-level singletons. Without explicit
  resets, tests could reuse a store opened by another test or pick up a
  configuration file from the developer's home directory.

How:
  Prepend ``mailcache/src`` to ``sys.path`` when the source tree is present,
  then use an autouse fixture that clears ``MAILCACHE_CONFIG_PATH`` and
  ``MAILCACHE_PASSWORD``, resets the settings cache and closes all stores.

Interfaces:
  :func:`isolated_state` (autouse pytest fixture).
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "mailcache" / "src"
if SRC_DIR.exists():
    sys.path.insert(0, str(SRC_DIR))

import pytest

from mailcache.config.loader import reset_settings
from mailcache.core.registry import close_all_stores


@pytest.fixture(autouse=True)
def isolated_state(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Run each test with no configuration file and no open store."""

    monkeypatch.delenv("MAILCACHE_CONFIG_PATH", raising=False)
    monkeypatch.delenv("MAILCACHE_PASSWORD", raising=False)
    monkeypatch.chdir(tmp_path)
    reset_settings()
    try:
        yield
    finally:
        close_all_stores()
        reset_settings()
