"""Connection manager: the single place that decides how to reach the server.

What:
  Lazily establish the store's IMAP session, hand out per-folder remote
  handles opened read-only or read-write, upgrade handles before writes,
  force close+reopen "commits" after mutations, and apply the failure policy
  of the active operation mode.

Why:
  Every folder and message operation needs "the remote folder for this path,
  or nothing". Repeating the connect/open/upgrade/retry dance at each call
  site is how failures end up handled differently in different places.

How:
  :meth:`ConnectionManager.resolve` returns a :class:`RemoteFolder` or
  ``None``. ``None`` means cache-only: either the mode never uses the server
  (offline) or the connection failed in a mode that tolerates running from
  the cache. In the other modes a failure raises
  :class:`~mailcache.core.errors.RemoteUnavailable`. A failed resolution
  leaves no state behind, so the next call retries from scratch.

Interfaces:
  :class:`ConnectionManager`.

Invariants & Safety:
  - No network traffic happens before an operation needs the server.
  - Handles are bound to the session that created them; after a reconnect
    stale handles are replaced.
"""
from __future__ import annotations

from typing import Callable, Dict, Optional

from ..config.schema import ConnectionSettings
from ..imap.client import ImapSession
from ..imap.remote import RemoteFolder
from ..utils.logging import JsonLogger, get_logger
from .errors import RemoteUnavailable
from .modes import Capabilities

_GMAIL_HOSTS = ("gmail", "googlemail")


class ConnectionManager:
    """Lazy owner of the remote session and the per-folder handles."""

    def __init__(
        self,
        settings: ConnectionSettings,
        capabilities: Callable[[], Capabilities],
        *,
        logger: Optional[JsonLogger] = None,
        commit_after_write: bool = False,
    ) -> None:
        self._settings = settings
        self._capabilities = capabilities
        self._logger = logger or get_logger("mailcache.connection")
        self._commit_after_write = commit_after_write
        self._session: Optional[ImapSession] = None
        self._handles: Dict[str, RemoteFolder] = {}
        self.last_error: Optional[RemoteUnavailable] = None

    @property
    def settings(self) -> ConnectionSettings:
        return self._settings

    @property
    def connected(self) -> bool:
        return self._session is not None and self._session.connected

    @property
    def is_gmail(self) -> bool:
        host = (self._settings.host or "").lower()
        return any(marker in host for marker in _GMAIL_HOSTS)

    # Session -------------------------------------------------------------
    def session(self) -> Optional[ImapSession]:
        """Return the live session, connecting on first use.

        Returns:
          The session, or ``None`` when the mode does not use the server or a
          tolerated failure occurred.

        Raises:
          RemoteUnavailable: On failure in a mode that does not tolerate it.
        """

        if not self._capabilities().uses_remote:
            return None
        if self._session is not None and self._session.connected:
            return self._session
        session = ImapSession(self._settings, logger=self._logger.child("mailcache.imap"))
        try:
            session.connect()
        except RemoteUnavailable as exc:
            self.failed(exc, "connect")
            return None
        self._session = session
        self._handles.clear()
        self.last_error = None
        return session

    def failed(self, exc: RemoteUnavailable, operation: str, path: Optional[str] = None) -> None:
        """Apply the mode's failure policy to ``exc``.

        What:
          Logs the failure, forgets the affected handle (and the session when
          the failure was at connection level), then either returns (tolerant
          modes continue from the cache) or re-raises.

        Args:
          exc: The translated remote failure.
          operation: Short name of the failing operation.
          path: Folder path involved, when any.

        Raises:
          RemoteUnavailable: ``exc`` itself unless the mode tolerates it.
        """

        self.last_error = exc
        if path is not None:
            self._handles.pop(path, None)
        if isinstance(exc.__cause__, OSError) or operation == "connect" or not self.connected:
            self.drop()
        if self._capabilities().tolerate_remote_failure:
            self._logger.warning(
                "remote_unavailable", operation=operation, path=path, error=str(exc), fallback="cache"
            )
            return
        self._logger.error("remote_unavailable", operation=operation, path=path, error=str(exc))
        raise exc

    # Handles -------------------------------------------------------------
    def remote_folder(self, path: str) -> Optional[RemoteFolder]:
        """Unselected handle for structural operations (exists, create, list)."""

        session = self.session()
        if session is None:
            return None
        handle = self._handles.get(path)
        if handle is None or handle.session is not session:
            handle = RemoteFolder(session, path)
            self._handles[path] = handle
        return handle

    def resolve(self, path: str, *, writable: bool = False) -> Optional[RemoteFolder]:
        """Remote handle for ``path`` opened for reading or writing.

        A read-only handle is closed and reopened read-write when ``writable``
        is requested.
        """

        handle = self.remote_folder(path)
        if handle is None:
            return None
        try:
            if not handle.is_open:
                handle.open(readonly=not writable)
            elif writable and handle.readonly:
                self._logger.debug("remote_upgrade", path=path)
                handle.reopen(readonly=False)
        except RemoteUnavailable as exc:
            self.failed(exc, "open", path)
            return None
        return handle

    def live(self, path: str) -> Optional[RemoteFolder]:
        """The handle for ``path`` if it is already open; never connects."""

        handle = self._handles.get(path)
        if handle is not None and handle.is_open and self.connected:
            return handle
        return None

    def commit(self, handle: RemoteFolder, *, force: bool = False) -> None:
        """Close and reopen ``handle`` so the server applies pending changes."""

        if not (force or self._commit_after_write) or not handle.is_open:
            return
        try:
            handle.reopen(readonly=handle.readonly)
        except RemoteUnavailable as exc:
            self.failed(exc, "commit", handle.path)

    def release(self, path: str, *, expunge: bool = False) -> None:
        handle = self._handles.pop(path, None)
        if handle is None or not self.connected:
            return
        try:
            handle.close(expunge=expunge)
        except RemoteUnavailable as exc:
            self._logger.warning("remote_release_failed", path=path, error=str(exc))

    def forget(self, path: str) -> None:
        """Drop cached handles for ``path`` and its descendants."""

        prefix = f"{path}/"
        for key in [key for key in self._handles if key == path or key.startswith(prefix)]:
            del self._handles[key]

    def drop(self) -> None:
        """Discard the session so the next call reconnects."""

        session, self._session = self._session, None
        self._handles.clear()
        if session is not None:
            session.close()

    def close(self) -> None:
        for path in list(self._handles):
            self.release(path)
        self.drop()
