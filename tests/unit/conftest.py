"""Pytest fixtures for unit tests requiring an IMAP fake and a cache store.

What:
  Expose a :class:`FakeImapBackend`, a factory building connected stores in a
  temporary cache directory for any operation mode, and small helpers.

Why:
  Nearly every engine test needs "a store in mode X whose server is this
  fake". Building it in one place keeps tests focused on behaviour.

How:
  Monkeypatch ``mailcache.imap.client.IMAPClient`` so that every connection
  attempt returns the shared backend, and build :class:`StoreSettings` with
  dummy credentials pointing at ``tmp_path``.

Interfaces:
  :func:`backend`, :func:`make_store` (pytest fixtures).
"""

import io
import sys
from pathlib import Path

import pytest

from mailcache.config.schema import CacheSettings, ConnectionSettings, StoreSettings
from mailcache.core.store import Store
from mailcache.utils.logging import JsonLogger

UNIT_DIR = Path(__file__).resolve().parent
if str(UNIT_DIR) not in sys.path:
    sys.path.insert(0, str(UNIT_DIR))

from fakes import FakeImapBackend


@pytest.fixture
def backend(monkeypatch: pytest.MonkeyPatch) -> FakeImapBackend:
    fake = FakeImapBackend()
    monkeypatch.setattr("mailcache.imap.client.IMAPClient", lambda host, port=None, ssl=True, **_: fake)
    return fake


@pytest.fixture
def log_stream() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def make_store(tmp_path: Path, backend: FakeImapBackend, log_stream):
    """Return a factory ``make_store(mode, **cache_options) -> Store``."""

    stores = []

    def factory(mode: str = "accelerated", *, host: str = "imap.example.com", **cache_options) -> Store:
        settings = StoreSettings(
            mode=mode,
            connection=ConnectionSettings(host=host, username="alice", password="secret"),
            cache=CacheSettings(directory=tmp_path / "cache", **cache_options),
        )
        store = Store(settings, logger=JsonLogger(stream=log_stream, component="test")).connect()
        stores.append(store)
        return store

    yield factory
    for store in stores:
        store.close()
