"""Store: the root of one cached mailbox session.

What:
  Tie together the per-account cache directory, the current operation mode,
  the connection manager, the change bus and the folder instances handed out
  to callers.

Why:
  Folders and messages need a shared place to ask "which mode are we in?",
  "how do I reach the server?" and "who wants to hear about changes?". The
  store is that place and nothing more; the cache logic lives in the folder
  and message engines.

How:
  The remote session is created lazily by the
  :class:`~mailcache.core.connection.ConnectionManager`; the capability row is
  looked up on every access so a mode switch between operations takes
  effect immediately. Folder instances are memoised per path so open state
  and count caches are shared by everyone asking for the same folder.

Interfaces:
  :class:`Store`.

Invariants & Safety:
  - The cache root is ``<cache dir>/<sanitized username>`` unless the cache
    directory already ends with that component.
  - Closing the store closes open folders (without expunging) and the remote
    session.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..config.schema import StoreSettings
from ..utils.logging import JsonLogger, get_logger
from .connection import ConnectionManager
from .events import ChangeBus, ChangeKind, Listener
from .folder import Folder
from .layout import normalize_folder_path, user_directory
from .modes import POLICY, Capabilities, OperationMode


class Store:
    """One cached mailbox: root directory, mode, connection and listeners."""

    def __init__(self, settings: StoreSettings, *, logger: Optional[JsonLogger] = None) -> None:
        self.settings = settings
        self.logger = logger or get_logger("mailcache.store")
        self._mode = settings.mode
        self.root: Path = user_directory(settings.cache.directory, settings.connection.username)
        self.bus = ChangeBus(logger=self.logger.child("mailcache.events"))
        self.connection = ConnectionManager(
            settings.connection,
            lambda: self.capabilities,
            logger=self.logger.child("mailcache.connection"),
            commit_after_write=settings.cache.commit_after_write,
        )
        self._folders: Dict[str, Folder] = {}
        self._open = False

    def __repr__(self) -> str:
        return f"Store(root={str(self.root)!r}, mode={self._mode.value})"

    # Lifecycle -----------------------------------------------------------
    def connect(self) -> "Store":
        """Prepare the cache root and announce the store; no network traffic."""

        if self._open:
            return self
        self.root.mkdir(parents=True, exist_ok=True)
        self._open = True
        self.logger.info("store_opened", root=str(self.root), mode=self._mode.value)
        self.emit(self, ChangeKind.STORE_OPENED, mode=self._mode.value, root=str(self.root))
        return self

    def close(self) -> None:
        if not self._open:
            return
        for folder in list(self._folders.values()):
            if folder.is_open:
                folder.close(expunge=False)
        self.connection.close()
        self._open = False
        self.logger.info("store_closed", root=str(self.root))
        self.emit(self, ChangeKind.STORE_CLOSED, root=str(self.root))

    @property
    def is_open(self) -> bool:
        return self._open

    def __enter__(self) -> "Store":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Policy --------------------------------------------------------------
    @property
    def mode(self) -> OperationMode:
        return self._mode

    @property
    def capabilities(self) -> Capabilities:
        return POLICY[self._mode]

    @property
    def cache_attachments(self) -> bool:
        return self.settings.cache.cache_attachments

    @property
    def username(self) -> Optional[str]:
        return self.settings.connection.username

    def set_mode(self, mode: Union[str, OperationMode]) -> OperationMode:
        """Switch the operation mode between operations.

        Dropping to a mode that never uses the server also drops the session.

        Returns:
          The previous mode.
        """

        new_mode = OperationMode.parse(mode)
        previous = self._mode
        if new_mode == previous:
            return previous
        self._mode = new_mode
        if not self.capabilities.uses_remote:
            self.connection.close()
        self.logger.info("mode_changed", previous=previous.value, mode=new_mode.value)
        self.emit(self, ChangeKind.MODE_CHANGED, previous=previous.value, mode=new_mode.value)
        return previous

    # Folders -------------------------------------------------------------
    def get_folder(self, path: str) -> Folder:
        """Folder instance for ``path`` (created on first reference)."""

        normalized = normalize_folder_path(path)
        folder = self._folders.get(normalized)
        if folder is None:
            folder = Folder(self, normalized)
            self._folders[normalized] = folder
        return folder

    def default_folder(self) -> Folder:
        return self.get_folder("")

    def list_folders(self, pattern: str = "*") -> List[Folder]:
        return self.default_folder().list(pattern)

    def _forget_folder(self, path: str) -> None:
        prefix = f"{path}/"
        for key in [key for key in self._folders if key == path or key.startswith(prefix)]:
            del self._folders[key]
        self.connection.forget(path)

    # Notifications -------------------------------------------------------
    def add_listener(self, listener: Listener) -> None:
        self.bus.subscribe(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.bus.unsubscribe(listener)

    def emit(self, source: Any, kind: ChangeKind, **payload: Any) -> None:
        self.bus.emit(source, kind, **payload)
