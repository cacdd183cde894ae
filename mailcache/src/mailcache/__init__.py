"""
Module: mailcache.__init__

What:
  Public entry points of the mail cache: opening stores, the engine objects
  they hand out, operation modes, search queries and the error taxonomy.

Why:
  Callers (the CLI, synchronisation jobs, scripts) should not need to know
  which submodule hosts the registry or the folder engine; keeping the
  surface here lets the internal layout evolve.

How:
  Re-export the registry helpers and the core types, and enumerate them in
  ``__all__``.

Interfaces:
  - open_store / open_offline_store / close_store / close_all_stores
  - Store / Folder / Message / CacheManager / BatchResult
  - OperationMode / SearchQuery
  - MailCacheError and its subclasses

Invariants:
  - Importing the package performs no I/O and opens no connection.
"""

from .core.errors import (
    CacheCorruption,
    Collision,
    FolderStateError,
    MailCacheError,
    NotFound,
    PolicyViolation,
    RemoteUnavailable,
)
from .core.folder import READ_ONLY, READ_WRITE, Folder
from .core.manager import CacheManager
from .core.message import Message
from .core.modes import OperationMode
from .core.registry import (
    close_all_stores,
    close_store,
    open_offline_store,
    open_store,
    store_for_username,
)
from .core.results import BatchResult, ItemResult
from .core.search import SearchQuery
from .core.store import Store

__version__ = "0.1.0"

__all__ = [
    "BatchResult",
    "CacheCorruption",
    "CacheManager",
    "Collision",
    "Folder",
    "FolderStateError",
    "ItemResult",
    "MailCacheError",
    "Message",
    "NotFound",
    "OperationMode",
    "PolicyViolation",
    "READ_ONLY",
    "READ_WRITE",
    "RemoteUnavailable",
    "SearchQuery",
    "Store",
    "close_all_stores",
    "close_store",
    "open_offline_store",
    "open_store",
    "store_for_username",
]
