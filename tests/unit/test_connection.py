"""
Module: tests/unit/test_connection.py

What:
    Check how the connection manager reaches the server: no traffic in
    offline mode, lazy login, the per-mode failure policy, retry after a
    failure, read-write upgrades and the session's rate limit.

Why:
    The manager is the single place deciding between "use the server",
    "continue from the cache" and "fail". Getting it wrong either floods the
    server or hides outages from callers that need to know.
"""

import pytest

from mailcache.config.schema import CacheSettings, ConnectionSettings, StoreSettings
from mailcache.core.errors import RemoteUnavailable
from mailcache.core.store import Store
from mailcache.imap.client import ImapSession
from mailcache.utils.logging import JsonLogger


def test_offline_never_connects(make_store, backend):
    store = make_store("offline")
    assert store.connection.session() is None
    assert store.connection.resolve("INBOX") is None
    assert backend.calls == []


def test_connection_is_lazy(make_store, backend):
    store = make_store("accelerated")
    assert backend.connections == 0
    handle = store.connection.resolve("INBOX")
    assert handle is not None and handle.is_open and handle.readonly
    assert backend.connections == 1
    assert store.connection.resolve("INBOX") is handle
    assert backend.connections == 1


def test_tolerant_mode_falls_back_and_retries(make_store, backend, log_stream):
    backend.fail_on = {"login"}
    store = make_store("accelerated")

    assert store.connection.resolve("INBOX") is None
    assert isinstance(store.connection.last_error, RemoteUnavailable)
    assert "remote_unavailable" in log_stream.getvalue()

    backend.fail_on = set()
    assert store.connection.resolve("INBOX") is not None
    assert store.connection.last_error is None
    assert backend.connections == 1


@pytest.mark.parametrize("mode", ["online", "refresh"])
def test_strict_modes_raise(mode, make_store, backend):
    backend.fail_on = {"login"}
    store = make_store(mode)
    with pytest.raises(RemoteUnavailable):
        store.connection.resolve("INBOX")


def test_missing_credentials_fail_without_network(tmp_path, backend, log_stream):
    settings = StoreSettings(
        mode="accelerated",
        connection=ConnectionSettings(host="imap.example.com"),
        cache=CacheSettings(directory=tmp_path / "cache"),
    )
    store = Store(settings, logger=JsonLogger(stream=log_stream)).connect()
    assert store.connection.session() is None
    assert "missing connection parameters" in str(store.connection.last_error)
    assert backend.calls == []


def test_writable_request_upgrades_read_only_handle(make_store, backend):
    store = make_store("accelerated")
    handle = store.connection.resolve("INBOX")
    assert handle.readonly

    upgraded = store.connection.resolve("INBOX", writable=True)

    assert upgraded is handle
    assert not handle.readonly
    assert backend.readonly is False
    assert backend.calls.count("select_folder") == 2


def test_unknown_folder_open_is_tolerated(make_store, backend):
    store = make_store("destructive")
    assert store.connection.resolve("Missing") is None
    assert store.connection.connected


def test_mode_switch_to_offline_drops_session(make_store, backend):
    store = make_store("accelerated")
    store.connection.resolve("INBOX")
    assert store.connection.connected

    store.set_mode("offline")

    assert not store.connection.connected
    assert "logout" in backend.calls


def test_action_limit_refuses_excess_writes(backend):
    settings = ConnectionSettings(host="imap.example.com", username="alice", password="secret")
    session = ImapSession(settings, action_limit=2).connect()
    session.create_folder("A")
    session.create_folder("B")
    with pytest.raises(RemoteUnavailable, match="rate limit"):
        session.create_folder("C")
    assert "C" not in backend.folders
    session.close()
