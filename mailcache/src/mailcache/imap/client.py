"""Stateful IMAP session with mailcache guardrails.

What:
  Wrap :class:`imapclient.IMAPClient` with connection bootstrap from
  :class:`~mailcache.config.schema.ConnectionSettings`, folder name
  translation between cache paths (``/``) and the server delimiter,
  selection tracking, rate limiting and error translation.

Why:
  Direct use of ``imapclient`` leaks sharp edges into the cache engines:
  delimiter quirks, ``CLOSE`` silently expunging a read-write folder, fetches
  that set ``\\Seen`` as a side effect, and library-specific exceptions. The
  engines only ever see this narrow surface and
  :class:`~mailcache.core.errors.RemoteUnavailable`.

How:
  Connects lazily in :meth:`ImapSession.connect`, discovers the hierarchy
  delimiter from ``LIST``, remembers which folder is selected and in which
  mode so handles can share one connection, fetches with ``BODY.PEEK[]``,
  deselects with ``UNSELECT`` (falling back to a read-only ``EXAMINE``) and
  throttles mutating commands to 500 per minute.

Interfaces:
  :class:`ImapSession`, :func:`remote_call`, :data:`REMOTE_ERRORS`.

Invariants & Safety:
  - All message operations use UIDs.
  - Folders are only closed with ``CLOSE`` when an expunge was requested.
  - Every library error leaves this module as ``RemoteUnavailable``.
"""
from __future__ import annotations

import contextlib
import re
import time
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from imapclient import IMAPClient
from imapclient.exceptions import CapabilityError, IMAPClientError

from ..config.schema import ConnectionSettings
from ..core.errors import RemoteUnavailable
from ..utils.logging import JsonLogger, get_logger
from .remote import RemoteMessage

REMOTE_ERRORS = (IMAPClientError, OSError)
FETCH_FULL = ["BODY.PEEK[]", "FLAGS", "INTERNALDATE", "RFC822.SIZE"]
FETCH_HEADERS = ["BODY.PEEK[HEADER]", "FLAGS", "INTERNALDATE", "RFC822.SIZE"]
ACTION_LIMIT_PER_MINUTE = 500
_APPENDUID = re.compile(rb"APPENDUID\s+\d+\s+(\d+)", re.IGNORECASE)


@contextlib.contextmanager
def remote_call(operation: str) -> Iterator[None]:
    """Translate ``imapclient``/socket failures into :class:`RemoteUnavailable`."""

    try:
        yield
    except RemoteUnavailable:
        raise
    except REMOTE_ERRORS as exc:
        raise RemoteUnavailable(f"{operation} failed: {exc}", operation=operation) from exc


def _text(value: object) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)


class ImapSession:
    """One authenticated IMAP connection shared by all folder handles of a store.

    What:
      Owns the ``IMAPClient`` instance and exposes the UID-based primitives the
      cache needs (list/create/delete/rename folders, select, search, fetch,
      append, copy, flag changes, Gmail label removal, expunge).

    Why:
      IMAP allows a single selected folder per connection; tracking the
      selection here lets many :class:`~mailcache.imap.remote.RemoteFolder`
      handles reuse one login.

    How:
      :meth:`connect` performs the network handshake; :meth:`select` only
      issues ``SELECT``/``EXAMINE`` when the wanted folder or mode differs from
      the current selection.
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        *,
        logger: Optional[JsonLogger] = None,
        action_limit: int = ACTION_LIMIT_PER_MINUTE,
    ) -> None:
        self._settings = settings
        self._logger = logger or get_logger("mailcache.imap")
        self._client: Optional[IMAPClient] = None
        self._delimiter = "/"
        self._selected: Optional[Tuple[str, bool]] = None
        self._actions: Deque[float] = deque()
        self._action_limit = action_limit

    # Lifecycle -----------------------------------------------------------
    def connect(self) -> "ImapSession":
        """Open the connection and log in.

        Raises:
          RemoteUnavailable: When parameters are missing or the server refuses.
        """

        if self._client is not None:
            return self
        if not self._settings.complete:
            raise RemoteUnavailable("missing connection parameters", operation="connect")
        kwargs: Dict[str, object] = {"port": self._settings.effective_port, "ssl": self._settings.ssl}
        if self._settings.timeout is not None:
            kwargs["timeout"] = self._settings.timeout
        with remote_call("connect"):
            client = IMAPClient(self._settings.host, **kwargs)
            try:
                client.login(self._settings.username, self._settings.secret())
            except REMOTE_ERRORS:
                self._shutdown(client)
                raise
        self._client = client
        self._selected = None
        with remote_call("list"):
            self._refresh_delimiter()
        self._logger.info("imap_connected", host=self._settings.host, port=self._settings.effective_port)
        return self

    def close(self) -> None:
        """Log out; errors during logout are logged and the session is dropped."""

        client, self._client = self._client, None
        self._selected = None
        if client is not None:
            self._shutdown(client)

    def _shutdown(self, client: IMAPClient) -> None:
        try:
            client.logout()
        except REMOTE_ERRORS as exc:
            self._logger.warning("imap_logout_failed", error=repr(exc))

    def __enter__(self) -> "ImapSession":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> IMAPClient:
        if self._client is None:
            raise RemoteUnavailable("IMAP session not connected")
        return self._client

    @property
    def host(self) -> str:
        return self._settings.host or ""

    @property
    def delimiter(self) -> str:
        return self._delimiter

    # Naming --------------------------------------------------------------
    def _refresh_delimiter(self) -> None:
        for _flags, delimiter, _name in self.client.list_folders():
            if delimiter:
                decoded = _text(delimiter)
                if decoded:
                    self._delimiter = decoded
                    return

    def to_server(self, path: str) -> str:
        """Translate a ``/`` cache path into the server's folder name."""

        segments = [segment for segment in path.split("/") if segment]
        return self._delimiter.join(segments)

    def to_cache(self, name: object) -> str:
        """Translate a server folder name into a ``/`` cache path."""

        decoded = _text(name)
        if self._delimiter and self._delimiter != "/":
            decoded = decoded.replace(self._delimiter, "/")
        return decoded.strip("/")

    # Folder operations ---------------------------------------------------
    def list_folders(self, parent: str = "", pattern: str = "*") -> List[str]:
        """Cache paths of folders under ``parent`` matching an IMAP pattern."""

        prefix = self.to_server(parent)
        query = f"{prefix}{self._delimiter}{pattern}" if prefix else pattern
        with remote_call("list"):
            entries = self.client.list_folders("", query)
        names: List[str] = []
        for _flags, _delimiter, name in entries:
            path = self.to_cache(name)
            if path and path != parent:
                names.append(path)
        return names

    def folder_exists(self, path: str) -> bool:
        with remote_call("exists"):
            return bool(self.client.folder_exists(self.to_server(path)))

    def create_folder(self, path: str) -> None:
        self._throttle()
        with remote_call("create"):
            self.client.create_folder(self.to_server(path))

    def delete_folder(self, path: str) -> None:
        self._throttle()
        self.release(path)
        with remote_call("delete"):
            self.client.delete_folder(self.to_server(path))

    def rename_folder(self, old: str, new: str) -> None:
        self._throttle()
        self.release(old)
        with remote_call("rename"):
            self.client.rename_folder(self.to_server(old), self.to_server(new))

    def folder_status(self, path: str) -> Tuple[int, int]:
        """``(messages, unseen)`` counts without selecting the folder."""

        with remote_call("status"):
            status = self.client.folder_status(self.to_server(path), [b"MESSAGES", b"UNSEEN"])
        return int(status.get(b"MESSAGES", 0)), int(status.get(b"UNSEEN", 0))

    # Selection -----------------------------------------------------------
    def select(self, path: str, *, readonly: bool = True) -> dict:
        """Select ``path`` unless it is already selected in the wanted mode."""

        name = self.to_server(path)
        if self._selected == (name, readonly):
            return {}
        with remote_call("select"):
            response = self.client.select_folder(name, readonly=readonly)
        self._selected = (name, readonly)
        return response

    def is_selected(self, path: str) -> bool:
        return self._selected is not None and self._selected[0] == self.to_server(path)

    def release(self, path: str, *, expunge: bool = False) -> None:
        """Deselect ``path`` if selected; ``CLOSE`` only when ``expunge``."""

        if not self.is_selected(path) or self._client is None:
            return
        with remote_call("close"):
            if expunge:
                self.client.close_folder()
            else:
                try:
                    self.client.unselect_folder()
                except CapabilityError:
                    self.client.select_folder(self.to_server(path), readonly=True)
        self._selected = None

    # Message operations --------------------------------------------------
    def search(self, criteria: Sequence[object]) -> List[int]:
        with remote_call("search"):
            return sorted(int(uid) for uid in self.client.search(list(criteria) or ["ALL"]))

    def fetch(self, path: str, uids: Iterable[int], *, headers_only: bool = False) -> List[RemoteMessage]:
        """Fetch messages without altering their ``\\Seen`` state."""

        wanted = list(uids)
        if not wanted:
            return []
        items = FETCH_HEADERS if headers_only else FETCH_FULL
        with remote_call("fetch"):
            response = self.client.fetch(wanted, items)
        messages: List[RemoteMessage] = []
        for uid in wanted:
            data = response.get(uid)
            if not data:
                continue
            messages.append(RemoteMessage.from_fetch(path, uid, data, headers_only=headers_only))
        return messages

    def append(
        self,
        path: str,
        raw: bytes,
        flags: Sequence[bytes] = (),
        msg_time: Optional[datetime] = None,
    ) -> Optional[int]:
        """Append ``raw`` to ``path``; returns the new UID when the server reports it."""

        self._throttle()
        with remote_call("append"):
            response = self.client.append(self.to_server(path), raw, flags=tuple(flags), msg_time=msg_time)
        match = _APPENDUID.search(response if isinstance(response, bytes) else _text(response).encode())
        return int(match.group(1)) if match else None

    def copy(self, uids: Sequence[int], destination: str) -> None:
        self._throttle()
        with remote_call("copy"):
            self.client.copy(list(uids), self.to_server(destination))

    def add_flags(self, uids: Sequence[int], flags: Sequence[bytes]) -> None:
        self._throttle()
        with remote_call("store"):
            self.client.add_flags(list(uids), list(flags))

    def remove_flags(self, uids: Sequence[int], flags: Sequence[bytes]) -> None:
        self._throttle()
        with remote_call("store"):
            self.client.remove_flags(list(uids), list(flags))

    def remove_gmail_labels(self, uids: Sequence[int], labels: Sequence[str]) -> None:
        self._throttle()
        with remote_call("store"):
            self.client.remove_gmail_labels(list(uids), list(labels))

    def expunge(self) -> None:
        self._throttle()
        with remote_call("expunge"):
            self.client.expunge()

    def _throttle(self) -> None:
        """Refuse more than ``action_limit`` mutating commands per minute."""

        now = time.monotonic()
        while self._actions and now - self._actions[0] > 60:
            self._actions.popleft()
        if len(self._actions) >= self._action_limit:
            raise RemoteUnavailable("IMAP action rate limit exceeded", operation="throttle")
        self._actions.append(now)
