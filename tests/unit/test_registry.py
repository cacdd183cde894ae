"""Store registry: one live store per configuration, explicit and bulk close."""

import pytest

from mailcache.config.schema import CacheSettings, ConnectionSettings, StoreSettings
from mailcache.core import registry
from mailcache.core.errors import MailCacheError
from mailcache.core.modes import OperationMode


def _settings(tmp_path, mode="accelerated", username="alice"):
    return StoreSettings(
        mode=mode,
        connection=ConnectionSettings(host="imap.example.com", username=username, password="secret"),
        cache=CacheSettings(directory=tmp_path / "cache"),
    )


def test_same_settings_share_one_store(tmp_path):
    first = registry.open_store(_settings(tmp_path))
    second = registry.open_store(_settings(tmp_path))
    other_mode = registry.open_store(_settings(tmp_path, mode="offline"))

    assert first is second
    assert other_mode is not first
    assert first.is_open
    assert len(registry.registered_stores()) == 2


def test_close_store_forgets_it(tmp_path):
    settings = _settings(tmp_path)
    store = registry.open_store(settings)

    assert registry.close_store(settings) is True
    assert not store.is_open
    assert registry.close_store(settings) is False
    assert registry.open_store(settings) is not store


def test_offline_store_and_lookup_by_username(tmp_path):
    store = registry.open_offline_store(tmp_path / "cache", "bob")

    assert store.mode is OperationMode.OFFLINE
    assert store.root == tmp_path / "cache" / "bob"
    assert registry.store_for_username("bob") is store
    assert registry.store_for_username("carol") is None


def test_close_all_reports_failures_after_closing_the_rest(tmp_path, monkeypatch):
    healthy = registry.open_store(_settings(tmp_path, username="alice"))
    broken = registry.open_store(_settings(tmp_path, username="bob"))

    def explode():
        raise OSError("disk gone")

    monkeypatch.setattr(broken, "close", explode)
    with pytest.raises(MailCacheError, match="disk gone"):
        registry.close_all_stores()
    assert not healthy.is_open
    assert registry.registered_stores() == []
