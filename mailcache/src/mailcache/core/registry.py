"""Process-wide registry of open stores.

What:
  Hand out one :class:`~mailcache.core.store.Store` per configuration so that
  repeated ``open`` requests for the same mailbox share a live connection, and
  close them individually or all together.

Why:
  Callers opening "the mailbox for alice" from several places would
  otherwise race to create duplicate sessions and duplicate folder caches.

How:
  Stores are keyed by :meth:`StoreSettings.fingerprint` (connection
  parameters, mode and cache directory). A lock guards creation only; lookups
  of existing stores never block on one another.

Interfaces:
  :func:`open_store`, :func:`open_offline_store`, :func:`store_for_username`,
  :func:`close_store`, :func:`close_all_stores`.
"""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..config.schema import CacheSettings, ConnectionSettings, StoreSettings
from ..utils.logging import JsonLogger, get_logger
from .errors import MailCacheError
from .modes import OperationMode
from .store import Store

_LOCK = threading.Lock()
_STORES: Dict[str, Store] = {}
_LOGGER = get_logger("mailcache.registry")


def open_store(settings: StoreSettings, *, logger: Optional[JsonLogger] = None) -> Store:
    """Return the connected store for ``settings``, creating it on first use."""

    key = settings.fingerprint()
    store = _STORES.get(key)
    if store is not None and store.is_open:
        return store
    with _LOCK:
        store = _STORES.get(key)
        if store is None or not store.is_open:
            store = Store(settings, logger=logger).connect()
            _STORES[key] = store
            _LOGGER.info("store_registered", root=str(store.root), mode=store.mode.value, stores=len(_STORES))
    return store


def open_offline_store(directory: Union[str, Path], username: Optional[str] = None) -> Store:
    """Open a cache directory in offline mode, without any server settings."""

    settings = StoreSettings(
        mode=OperationMode.OFFLINE,
        connection=ConnectionSettings(username=username),
        cache=CacheSettings(directory=directory),
    )
    return open_store(settings)


def store_for_username(username: str) -> Optional[Store]:
    """First open store whose account is ``username``."""

    for store in list(_STORES.values()):
        if store.username == username and store.is_open:
            return store
    return None


def registered_stores() -> List[Store]:
    return list(_STORES.values())


def close_store(settings: StoreSettings) -> bool:
    """Close and forget the store for ``settings``; ``False`` if none was open."""

    with _LOCK:
        store = _STORES.pop(settings.fingerprint(), None)
    if store is None:
        return False
    store.close()
    return True


def close_all_stores() -> None:
    """Close every registered store.

    Raises:
      MailCacheError: After attempting all of them, when any close failed.
    """

    with _LOCK:
        stores = list(_STORES.values())
        _STORES.clear()
    failures: List[str] = []
    for store in stores:
        try:
            store.close()
        except (MailCacheError, OSError) as exc:
            _LOGGER.error("store_close_failed", root=str(store.root), error=str(exc))
            failures.append(f"{store.root}: {exc}")
    if failures:
        raise MailCacheError("failed to close stores: " + "; ".join(failures))
