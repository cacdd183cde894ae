"""Folder engine: path-addressed folder operations over cache and server.

What:
  Structural operations (exists, list, create, delete, rename), the open/close
  lifecycle, memoised message counts, message enumeration, dual-write append
  and move, expunge with local archiving, search and folder-level extras.

Why:
  A folder is where the mode policy meets the on-disk layout: every call has
  to decide between the local directory tree and the server, and every
  mutation has to keep the two from silently diverging.

How:
  Each operation reads the capability row of the store's current mode and
  asks the connection manager for a remote handle only when the row says the
  server is involved. Mutations run the remote leg first; the local leg runs
  when the remote leg succeeded, was skipped because the mode is cache-only,
  or failed in a mode that tolerates it (append, move and expunge only).
  Deletions never remove data: folders move to ``archived_folders/`` and
  messages to ``archived_messages/``.

Interfaces:
  :class:`Folder`, :data:`READ_ONLY`, :data:`READ_WRITE`.

Invariants & Safety:
  - Message-level operations require the folder to be open; ``delete`` and
    ``rename_to`` require it closed.
  - Counts are invalidated by append, move, expunge and flag changes.
  - Remote failures in create/delete/rename propagate before any local change.
"""
from __future__ import annotations

import fnmatch
import re
from email.message import EmailMessage
from pathlib import Path
from typing import TYPE_CHECKING, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from ..imap.remote import RemoteFolder, RemoteMessage
from ..imap.search import build_search
from ..utils import mime
from ..utils.ids import epoch_millis, synthesize_message_id
from ..utils.logging import JsonLogger
from . import flags as flagset
from .errors import Collision, FolderStateError, NotFound, PolicyViolation, RemoteUnavailable
from .events import ChangeBus, ChangeKind, Listener
from .layout import (
    ARCHIVED_FOLDERS_DIR,
    ARCHIVED_MESSAGES_DIR,
    EXTRAS_DIR,
    FLAGS_FILE,
    MESSAGES_DIR,
    RESERVED_NAMES,
    archived_folder_path,
    folder_directory,
    list_message_directories,
    normalize_folder_path,
    relocate,
    sanitize_filename,
    stored_identity,
)
from .message import Message, remote_identity
from .modes import Capabilities, require_delete, require_write
from .results import BatchResult, ItemResult
from .search import SearchQuery

if TYPE_CHECKING:
    from .store import Store

READ_ONLY = "r"
READ_WRITE = "rw"
UNKNOWN = -1
GMAIL_INBOX_LABEL = "\\Inbox"

Appendable = Union[EmailMessage, Message, bytes]


def _pattern_regex(pattern: str) -> "re.Pattern[str]":
    """Compile an IMAP LIST pattern: ``*`` spans levels, ``%`` stays in one."""

    translated = fnmatch.translate(pattern.replace("%", "\0"))
    return re.compile(translated.replace("\0", "[^/]*"))


class Folder:
    """One mailbox folder addressed by its ``/``-delimited path."""

    def __init__(self, store: "Store", path: str, *, create_directories: bool = False) -> None:
        self.store = store
        self.path = normalize_folder_path(path)
        self.directory: Path = folder_directory(store.root, self.path)
        self.logger: JsonLogger = store.logger.child("mailcache.folder")
        self.bus = ChangeBus(logger=self.logger)
        self.bus.subscribe(store.bus.publish)
        self._open = False
        self._readonly = False
        self._message_count = UNKNOWN
        self._unread_count = UNKNOWN
        if create_directories:
            self._ensure_directories()

    def __repr__(self) -> str:
        return f"Folder({self.path!r})"

    # Layout --------------------------------------------------------------
    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def messages_dir(self) -> Path:
        return self.directory / MESSAGES_DIR

    @property
    def archived_dir(self) -> Path:
        return self.directory / ARCHIVED_MESSAGES_DIR

    @property
    def extras_dir(self) -> Path:
        return self.directory / EXTRAS_DIR

    @property
    def capabilities(self) -> Capabilities:
        return self.store.capabilities

    def _ensure_directories(self) -> None:
        self.messages_dir.mkdir(parents=True, exist_ok=True)

    def _require_open(self, operation: str) -> None:
        if not self._open:
            raise FolderStateError(f"{operation} requires folder {self.path!r} to be open")

    def _require_closed(self, operation: str) -> None:
        if self._open:
            raise FolderStateError(f"{operation} requires folder {self.path!r} to be closed")

    def _structural_handle(self, operation: str) -> Optional[RemoteFolder]:
        """Server handle for create/delete/rename; ``None`` only when the mode is cache-only.

        Raises:
          RemoteUnavailable: When the mode uses the server but it cannot be
            reached, so the cached tree is left as it is.
        """

        if not self.capabilities.uses_remote:
            return None
        connection = self.store.connection
        handle = connection.remote_folder(self.path)
        if handle is None:
            error = connection.last_error or RemoteUnavailable(f"no server session for {operation}")
            self.logger.error(f"folder_{operation}_failed", folder=self.path, error=str(error))
            raise error
        return handle

    def add_listener(self, listener: Listener) -> None:
        self.bus.subscribe(listener)

    def remove_listener(self, listener: Listener) -> None:
        self.bus.unsubscribe(listener)

    # Navigation ----------------------------------------------------------
    @property
    def parent(self) -> Optional["Folder"]:
        if not self.path:
            return None
        head = self.path.rsplit("/", 1)[0] if "/" in self.path else ""
        return self.store.get_folder(head)

    def get_folder(self, name: str) -> "Folder":
        child = normalize_folder_path(name)
        return self.store.get_folder(f"{self.path}/{child}" if self.path else child)

    def exists(self) -> bool:
        """True when the folder is cached, healing the cache when only the server has it."""

        if self.directory.is_dir():
            return True
        if not self.capabilities.fallback_on_miss:
            return False
        connection = self.store.connection
        handle = connection.remote_folder(self.path)
        if handle is None:
            return False
        try:
            remote_exists = handle.exists()
        except RemoteUnavailable as exc:
            connection.failed(exc, "exists", self.path)
            return False
        if remote_exists:
            self._ensure_directories()
            self.logger.info("folder_self_healed", folder=self.path)
            self.bus.emit(self, ChangeKind.FOLDER_ADDED, folder=self.path, origin="remote")
        return remote_exists

    def cached_subfolders(self) -> List[str]:
        """Paths of every cached folder below this one, at any depth."""

        if not self.directory.is_dir():
            return []
        found: List[str] = []
        pending: List[Tuple[Path, str]] = [(self.directory, self.path)]
        while pending:
            directory, path = pending.pop()
            for entry in directory.iterdir():
                if not entry.is_dir() or entry.name in RESERVED_NAMES or entry.name.startswith("."):
                    continue
                if directory == self.store.root and entry.name == ARCHIVED_FOLDERS_DIR:
                    continue
                child = f"{path}/{entry.name}" if path else entry.name
                found.append(child)
                pending.append((entry, child))
        return found

    def _remote_children(self, pattern: str) -> List[str]:
        if not self.capabilities.search_remote:
            return []
        connection = self.store.connection
        handle = connection.remote_folder(self.path)
        if handle is None:
            return []
        try:
            return handle.children(pattern)
        except RemoteUnavailable as exc:
            connection.failed(exc, "list", self.path)
            return []

    def list(self, pattern: str = "%") -> List["Folder"]:
        """Subfolders matching an IMAP ``LIST`` pattern, cache and server merged.

        What:
          Returns the union of cached subdirectories (reserved names excluded)
          and, when the mode searches the server, the server's children.

        Why:
          Folders created on the server by other clients must show up before
          anything from them was cached.

        How:
          Paths are compared as full ``/`` paths; a folder known to both sides
          appears once. Server-only folders get their cache directory created.

        Args:
          pattern: ``%`` matches one level, ``*`` any depth.

        Returns:
          Folders ordered by path.
        """

        matcher = _pattern_regex(pattern)
        prefix = f"{self.path}/" if self.path else ""

        def wanted(path: str) -> bool:
            return path.startswith(prefix) and bool(matcher.fullmatch(path[len(prefix):]))

        local = {path for path in self.cached_subfolders() if wanted(path)}
        remote = {path for path in self._remote_children(pattern) if wanted(path)} - local
        folders: List[Folder] = []
        for path in sorted(local | remote):
            folder = self.store.get_folder(path)
            if path in remote:
                folder._ensure_directories()
            folders.append(folder)
        return folders

    # Structure -----------------------------------------------------------
    def create(self) -> "Folder":
        """Create the folder; the server leg only runs in modes that write.

        Raises:
          RemoteUnavailable: When the server refuses the creation or cannot be
            reached in a mode that writes to it.
        """

        if self.path and self.capabilities.write_allowed:
            handle = self._structural_handle("create")
            if handle is not None:
                try:
                    if not handle.exists():
                        handle.create()
                except RemoteUnavailable as exc:
                    self.logger.error("folder_create_failed", folder=self.path, error=str(exc))
                    raise
        existed = self.directory.is_dir()
        self._ensure_directories()
        if not existed:
            self.logger.info("folder_created", folder=self.path)
            self.bus.emit(self, ChangeKind.FOLDER_ADDED, folder=self.path)
        return self

    def delete(self) -> Optional[Path]:
        """Delete on the server, then archive the cached tree.

        Returns:
          The archive directory, or ``None`` when nothing was cached.

        Raises:
          PolicyViolation: Outside destructive mode.
          RemoteUnavailable: When the server refuses the deletion.
        """

        self._require_closed("delete")
        if not self.path:
            raise FolderStateError("the root folder cannot be deleted")
        require_delete(self.store.mode, "delete folder")
        handle = self._structural_handle("delete")
        if handle is not None:
            try:
                if handle.exists():
                    handle.delete()
            except RemoteUnavailable as exc:
                self.logger.error("folder_delete_failed", folder=self.path, error=str(exc))
                raise
        archived: Optional[Path] = None
        if self.directory.exists():
            archived = relocate(self.directory, archived_folder_path(self.store.root, self.path))
        self.store._forget_folder(self.path)
        self.logger.info("folder_archived", folder=self.path, archive=str(archived) if archived else None)
        self.bus.emit(self, ChangeKind.FOLDER_REMOVED, folder=self.path, archive=str(archived) if archived else None)
        return archived

    def rename_to(self, new_path: str) -> "Folder":
        """Rename on the server, then move the cached tree.

        Raises:
          Collision: When the destination is already cached.
          PolicyViolation: When the mode does not write.
          RemoteUnavailable: When the server refuses the rename.
        """

        self._require_closed("rename")
        target = normalize_folder_path(new_path)
        if not self.path or not target:
            raise FolderStateError("the root folder cannot be renamed")
        require_write(self.store.mode, "rename folder")
        target_dir = folder_directory(self.store.root, target)
        if target_dir.exists():
            raise Collision(f"folder {target!r} already exists in the cache")
        handle = self._structural_handle("rename")
        if handle is not None:
            try:
                if handle.exists():
                    handle.rename(target)
            except RemoteUnavailable as exc:
                self.logger.error("folder_rename_failed", folder=self.path, target=target, error=str(exc))
                raise
        if self.directory.exists():
            relocate(self.directory, target_dir)
        self.store._forget_folder(self.path)
        renamed = self.store.get_folder(target)
        self.logger.info("folder_renamed", folder=self.path, target=target)
        self.bus.emit(self, ChangeKind.FOLDER_UPDATED, folder=target, previous=self.path)
        return renamed

    # Lifecycle -----------------------------------------------------------
    def open(self, mode: str = READ_WRITE) -> "Folder":
        """Open the folder and reset both count caches.

        Remote-preferring modes also select the server folder right away.

        Raises:
          NotFound: When neither the cache nor the server has the folder.
        """

        if mode not in (READ_ONLY, READ_WRITE):
            raise ValueError(f"Unknown folder open mode {mode!r}")
        self._require_closed("open")
        if not self.exists():
            raise NotFound(f"folder {self.path!r} does not exist")
        self._ensure_directories()
        self._open = True
        self._readonly = mode == READ_ONLY
        self.invalidate_counts()
        if self.capabilities.prefer_remote_read:
            self.store.connection.resolve(self.path)
        return self

    def close(self, expunge: bool = False) -> None:
        """Close the folder, expunging first when asked and the mode deletes."""

        self._require_open("close")
        try:
            if expunge and self.capabilities.delete_allowed:
                self.expunge()
            elif expunge:
                self.logger.info("expunge_skipped", folder=self.path, mode=self.store.mode.value)
        finally:
            self.store.connection.release(self.path)
            self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def readonly(self) -> bool:
        return self._readonly

    def __enter__(self) -> "Folder":
        if not self._open:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._open:
            self.close()

    # Counts --------------------------------------------------------------
    def invalidate_counts(self) -> None:
        self._message_count = UNKNOWN
        self._unread_count = UNKNOWN

    @property
    def message_count(self) -> int:
        self._require_open("message_count")
        if self._message_count == UNKNOWN:
            self._message_count = self._count(unread=False)
        return self._message_count

    @property
    def unread_count(self) -> int:
        self._require_open("unread_count")
        if self._unread_count == UNKNOWN:
            self._unread_count = self._count(unread=True)
        return self._unread_count

    def _local_count(self, unread: bool) -> int:
        directories = list_message_directories(self.messages_dir)
        if not unread:
            return len(directories)
        return sum(1 for directory in directories if flagset.SEEN not in flagset.read_flags(directory / FLAGS_FILE))

    def _count(self, unread: bool) -> int:
        caps = self.capabilities
        if not caps.prefer_remote_read or not caps.search_remote:
            return self._local_count(unread)
        handle = self.store.connection.live(self.path)
        if handle is None:
            return self._local_count(unread)
        try:
            return handle.unread() if unread else handle.count()
        except RemoteUnavailable as exc:
            self.logger.warning("remote_count_failed", folder=self.path, error=str(exc), fallback="cache")
            return self._local_count(unread)

    # Reading -------------------------------------------------------------
    def _cached_messages(self) -> List[Message]:
        return [Message.from_directory(self, directory) for directory in list_message_directories(self.messages_dir)]

    def _materialize(self, remote_messages: Iterable[RemoteMessage]) -> List[Message]:
        overwrite = self.capabilities.overwrite_cache
        unique: Dict[Path, Message] = {}
        for remote in remote_messages:
            message = Message.from_remote(self, remote, overwrite=overwrite)
            unique[message.directory] = message
        return [unique[key] for key in sorted(unique, key=lambda path: path.name)]

    def _fetch_remote(self) -> Optional[List[Message]]:
        """Every server message materialized in the cache; ``None`` when unreachable."""

        connection = self.store.connection
        handle = connection.resolve(self.path)
        if handle is None:
            return None
        try:
            remote_messages = handle.messages()
        except RemoteUnavailable as exc:
            connection.failed(exc, "fetch", self.path)
            return None
        messages = self._materialize(remote_messages)
        self.logger.info("remote_fetched", folder=self.path, count=len(messages))
        return messages

    def get_messages(self, start: Optional[int] = None, end: Optional[int] = None) -> List[Message]:
        """Messages in cache directory order, optionally the 1-based range ``start..end``.

        Remote-preferring modes fetch from the server and materialize (refresh
        overwrites existing entries); the others read the cache and go to the
        server only when the cache is empty.
        """

        self._require_open("get_messages")
        caps = self.capabilities
        if caps.prefer_remote_read:
            messages = self._fetch_remote()
            if messages is None:
                messages = self._cached_messages()
        else:
            messages = self._cached_messages()
            if not messages and caps.fallback_on_miss:
                messages = self._fetch_remote() or []
        if start is None and end is None:
            return messages
        first = 1 if start is None else start
        last = len(messages) if end is None else end
        if first < 1 or last > len(messages) or first > last + 1:
            raise NotFound(f"range {first}..{last} outside 1..{len(messages)} in {self.path!r}")
        return messages[first - 1:last]

    def get_message(self, number: int) -> Message:
        messages = self.get_messages()
        if not 1 <= number <= len(messages):
            raise NotFound(f"message {number} outside 1..{len(messages)} in {self.path!r}")
        return messages[number - 1]

    # Dual writes ---------------------------------------------------------
    def _outgoing(self, item: Appendable) -> Tuple[EmailMessage, FrozenSet[str]]:
        if isinstance(item, Message):
            email = mime.parse_message(item.as_bytes())
            if not mime.header_text(email, "Message-ID") and item.message_id:
                email["Message-ID"] = item.message_id
            return email, item.flags
        if isinstance(item, (bytes, bytearray)):
            return mime.parse_message(bytes(item)), frozenset()
        return item, frozenset()

    def _writable_handle(self) -> Optional[RemoteFolder]:
        connection = self.store.connection
        if not self.capabilities.uses_remote:
            return None
        return connection.resolve(self.path, writable=True)

    def append_messages(self, messages: Iterable[Appendable]) -> BatchResult:
        """Append messages to the server, then to the cache.

        What:
          Gives every message a Message-ID, appends it remotely, reads the
          server's copy back into the cache and caches whatever the server
          did not echo.

        Why:
          Servers rewrite messages on ingestion; reading back keeps the cache
          equal to what later fetches will return.

        How:
          Synthesized identities use the append time and the position in the
          batch. A remote failure raises in modes that need the server and is
          recorded per item in the tolerant ones, where the local leg still
          runs.

        Args:
          messages: ``EmailMessage`` objects, raw bytes, or cached messages.

        Returns:
          One :class:`ItemResult` per input.

        Raises:
          PolicyViolation: When the mode does not write.
          RemoteUnavailable: On server failure in online or refresh mode.
        """

        self._require_open("append")
        require_write(self.store.mode, "append messages")
        connection = self.store.connection
        now = epoch_millis()
        result = BatchResult("append")
        handle = self._writable_handle()
        stale = False
        for index, item in enumerate(messages):
            if stale:
                handle = connection.resolve(self.path, writable=True)
                stale = False
            email, flags = self._outgoing(item)
            identity = mime.header_text(email, "Message-ID")
            if not identity:
                identity = synthesize_message_id(now, index)
                email["Message-ID"] = identity
            outcome = result.add(ItemResult(identity))
            if handle is None and self.capabilities.uses_remote:
                outcome.remote_ok = False
                outcome.error = str(connection.last_error or "remote folder unavailable")
            if handle is not None:
                try:
                    handle.append(email.as_bytes(), sorted(flags), msg_time=mime.header_date(email))
                    outcome.remote_ok = True
                except RemoteUnavailable as exc:
                    outcome.remote_ok = False
                    outcome.error = str(exc)
                    connection.failed(exc, "append", self.path)
                    handle = connection.resolve(self.path, writable=True) if connection.connected else None
            if outcome.remote_ok:
                try:
                    connection.commit(handle)
                    echoed = handle.find_by_message_id(identity)
                except RemoteUnavailable as exc:
                    echoed = None
                    outcome.error = f"appended, read-back failed: {exc}"
                    self.logger.warning("append_read_back_failed", folder=self.path, identity=identity, error=str(exc))
                    connection.forget(self.path)
                    stale = True
                if echoed is not None:
                    outcome.message = Message.from_remote(self, echoed, overwrite=True)
                    outcome.local_ok = True
            if not outcome.local_ok:
                try:
                    outcome.message = Message.from_email(self, email, flags=flags)
                    outcome.local_ok = True
                except OSError as exc:
                    outcome.error = outcome.error or str(exc)
                    self.logger.error("append_local_failed", folder=self.path, identity=identity, error=str(exc))
        self.invalidate_counts()
        self.logger.info("append_complete", folder=self.path, **result.summary())
        self.bus.emit(self, ChangeKind.FOLDER_UPDATED, folder=self.path, operation="append")
        return result

    def _remote_move(self, uids: Sequence[int], destination: "Folder") -> Optional[str]:
        """Copy then delete (or unlabel on Gmail); returns the tolerated error, if any."""

        connection = self.store.connection
        handle = connection.resolve(self.path, writable=True)
        if handle is None:
            return str(connection.last_error or "remote folder unavailable")
        try:
            handle.copy(uids, destination.path)
            if connection.is_gmail:
                label = GMAIL_INBOX_LABEL if self.path.upper() == "INBOX" else handle.session.to_server(self.path)
                handle.remove_label(uids, label)
                connection.commit(handle, force=True)
            else:
                handle.set_flags(uids, [flagset.DELETED], True)
                if self.capabilities.delete_allowed:
                    handle.expunge()
                connection.commit(handle)
        except RemoteUnavailable as exc:
            connection.failed(exc, "move", self.path)
            return str(exc)
        return None

    def move_messages(self, messages: Sequence[Message], destination: Union["Folder", str]) -> BatchResult:
        """Move messages to ``destination`` on the server, then in the cache.

        What:
          Copies to the destination and removes from the source remotely,
          then relocates each cached directory into the destination's
          ``messages/``.

        Why:
          IMAP has no portable move; Gmail removes a message from a folder by
          dropping its label, everywhere else it is flagged ``\\Deleted`` and
          expunged when the mode allows deletes.

        How:
          A name collision in the destination cache fails only that item. A
          message with no server copy stays put in online and refresh mode;
          the tolerant modes still move it locally and report the item partial.

        Raises:
          PolicyViolation: When the mode does not write.
          RemoteUnavailable: On server failure in online or refresh mode.
        """

        self._require_open("move")
        require_write(self.store.mode, "move messages")
        target = destination if isinstance(destination, Folder) else self.store.get_folder(destination)
        if target.path == self.path:
            raise ValueError("source and destination folders are the same")
        target._ensure_directories()
        result = BatchResult("move")
        bound: List[Tuple[Message, Optional[RemoteMessage]]] = []
        for message in messages:
            if message.folder.path != self.path:
                outcome = result.add(ItemResult(message.message_id, message=message))
                outcome.error = f"message is in {message.folder.path!r}, not {self.path!r}"
                continue
            bound.append((message, message.resolve_remote()))
        uids = [remote.uid for _message, remote in bound if remote is not None]
        remote_error = self._remote_move(uids, target) if uids else None
        for message, remote in bound:
            outcome = result.add(ItemResult(message.message_id, message=message))
            if remote is not None:
                outcome.remote_ok = remote_error is None
                outcome.error = remote_error
            elif self.capabilities.uses_remote:
                outcome.remote_ok = False
                if not self.capabilities.tolerate_remote_failure:
                    outcome.error = str(NotFound(f"{message.message_id or message.directory.name} is not on the server"))
                    self.logger.error("move_remote_missing", folder=self.path, directory=message.directory.name)
                    continue
                outcome.error = str(self.store.connection.last_error or "no server copy found")
            name = message.directory.name
            try:
                message.move_to(target)
            except Collision as exc:
                outcome.error = str(exc)
                self.logger.warning("move_collision", folder=self.path, target=target.path, directory=name)
                continue
            outcome.local_ok = True
            self.bus.emit(message, ChangeKind.MESSAGE_REMOVED, folder=self.path, directory=name)
            target.bus.emit(message, ChangeKind.MESSAGE_ADDED, folder=target.path, directory=name)
        self.invalidate_counts()
        target.invalidate_counts()
        self.logger.info("move_complete", folder=self.path, target=target.path, **result.summary())
        return result

    def expunge(self) -> List[Message]:
        """Expunge ``\\Deleted`` messages remotely and archive their cache entries.

        Cached entries flagged ``DELETED`` are archived as well, so a tolerated
        server failure still honours the local deletion marks.

        Returns:
          The archived messages.

        Raises:
          PolicyViolation: Outside destructive mode.
        """

        self._require_open("expunge")
        require_delete(self.store.mode, "expunge")
        connection = self.store.connection
        removed_identities = set()
        handle = connection.resolve(self.path, writable=True)
        if handle is not None:
            try:
                removed_identities = {remote_identity(remote) for remote in handle.expunge()}
                connection.commit(handle)
            except RemoteUnavailable as exc:
                connection.failed(exc, "expunge", self.path)
        archived: List[Message] = []
        for directory in list_message_directories(self.messages_dir):
            doomed = stored_identity(directory) in removed_identities
            if not doomed and flagset.DELETED not in flagset.read_flags(directory / FLAGS_FILE):
                continue
            message = Message.from_directory(self, directory)
            name = directory.name
            location = message.archive()
            archived.append(message)
            self.bus.emit(message, ChangeKind.MESSAGE_REMOVED, folder=self.path, directory=name, archive=str(location))
        self.invalidate_counts()
        self.logger.info("expunge_complete", folder=self.path, archived=len(archived))
        return archived

    # Search --------------------------------------------------------------
    def _search_local(self, query: SearchQuery) -> List[Message]:
        return [message for message in self._cached_messages() if query.matches(message)]

    def _search_remote(self, query: SearchQuery) -> Optional[List[Message]]:
        connection = self.store.connection
        try:
            handle = connection.resolve(self.path)
            if handle is None:
                return None
            try:
                found = handle.search(build_search(query))
            except RemoteUnavailable as exc:
                connection.failed(exc, "search", self.path)
                return None
        except RemoteUnavailable as exc:
            self.logger.warning("remote_search_failed", folder=self.path, error=str(exc), fallback="cache")
            return None
        return self._materialize(found)

    def search(self, query: Union[SearchQuery, str]) -> List[Message]:
        """Messages matching ``query`` (a plain string searches subjects).

        Cache-preferring modes filter the cache and ask the server only when
        nothing matched; remote-preferring modes ask the server first and fall
        back to the cache when it is unreachable.
        """

        self._require_open("search")
        if isinstance(query, str):
            query = SearchQuery.by_subject(query)
        caps = self.capabilities
        if caps.prefer_remote_read:
            found = self._search_remote(query)
            return found if found is not None else self._search_local(query)
        local = self._search_local(query)
        if local or not caps.search_remote:
            return local
        return self._search_remote(query) or []

    def synchronize(self) -> int:
        """Fetch every server message into the cache; returns how many were seen.

        Raises:
          PolicyViolation: In offline mode.
          RemoteUnavailable: When the server cannot be reached.
        """

        self._require_open("synchronize")
        if not self.capabilities.uses_remote:
            raise PolicyViolation(self.store.mode.value, "synchronize", "the mode never contacts the server")
        fetched = self._fetch_remote()
        if fetched is None:
            raise self.store.connection.last_error or RemoteUnavailable(
                f"folder {self.path!r} unavailable", operation="synchronize"
            )
        self.invalidate_counts()
        return len(fetched)

    # Extras --------------------------------------------------------------
    def add_extra(self, name: str, data: Union[str, bytes]) -> Path:
        self.extras_dir.mkdir(parents=True, exist_ok=True)
        path = self.extras_dir / sanitize_filename(name)
        if isinstance(data, str):
            path.write_text(data, encoding="utf-8")
        else:
            path.write_bytes(data)
        self.bus.emit(self, ChangeKind.FOLDER_UPDATED, folder=self.path, extra=path.name)
        return path

    def read_extra(self, name: str) -> Optional[str]:
        path = self.extras_dir / sanitize_filename(name)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")

    def list_extras(self) -> List[str]:
        if not self.extras_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.extras_dir.iterdir() if entry.is_file())
