"""Message engine: one cached message and its remote counterpart.

What:
  Persist a message (metadata, text/HTML bodies, flags, attachments) into its
  cache directory, load it back lazily, answer field accessors according to
  the operation mode, resolve the matching server message on a cache miss,
  and apply flag changes remote-first.

Why:
  The cache directory is the durability backstop: whatever the server does,
  a message that was once observed can still be read. At the same time,
  remote-preferring modes must answer from the server when a live copy is at
  hand, and writes must never leave the cache claiming something the server
  refused.

How:
  A :class:`Message` is created either from a server snapshot
  (:meth:`Message.from_remote`, which writes the directory), from an email
  being appended (:meth:`Message.from_email`), or from an existing directory
  (:meth:`Message.from_directory`, no I/O until a field is read). Field
  accessors answer from the bound :class:`~mailcache.imap.remote.RemoteMessage`
  when the mode prefers remote reads, otherwise from the parsed cache files.
  When nothing is cached, the remote copy is looked up by Message-ID, then by
  the first message with equal subject and sent date, and what it carries is
  written back to the cache.

Interfaces:
  :class:`Message`, metadata key constants (``KEY_*``).

Invariants & Safety:
  - Every cached message has a Message-ID; one is synthesized when the source
    lacks it.
  - Flag changes reach the server first; a server failure leaves memory and
    ``flags.txt`` untouched.
  - Accessors never return ``None`` for text: missing values are ``""``.
  - Unreadable metadata is recovered field by field and logged.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime
from email.message import EmailMessage
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, Dict, FrozenSet, Iterable, List, Optional, Set, Union

from ..imap.remote import RemoteMessage
from ..utils import mime
from ..utils.ids import content_index, epoch_millis, synthesize_message_id
from ..utils.logging import JsonLogger
from ..utils.properties import read_properties, write_properties
from . import content as transforms
from . import flags as flagset
from .errors import Collision, CacheCorruption, NotFound, RemoteUnavailable
from .events import ChangeKind
from .layout import (
    ATTACHMENTS_DIR,
    CONTENT_HTML_FILE,
    CONTENT_TEXT_FILE,
    EXTRAS_DIR,
    FLAGS_FILE,
    PROPERTIES_FILE,
    format_timestamp,
    message_directory_name,
    parse_timestamp,
    relocate,
    resolve_message_directory,
    sanitize_filename,
    unique_path,
)
from .modes import Capabilities, require_delete, require_write

if TYPE_CHECKING:
    from .folder import Folder

KEY_MESSAGE_ID = "message.id"
KEY_SUBJECT = "subject"
KEY_FROM = "from"
KEY_REPLY_TO = "reply.to"
KEY_TO = "to"
KEY_CC = "cc"
KEY_SENT_DATE = "sent.date"
KEY_RECEIVED_DATE = "received.date"
KEY_SIZE = "size.bytes"
KEY_FOLDER = "original.folder.name"
KEY_HAS_TEXT = "has.text.content"
KEY_HAS_HTML = "has.html.content"
KEY_PREFERRED_TYPE = "preferred.content.type"

ATTACHMENT_TEXT_SUFFIX = ".txt.cache"
_PROPERTIES_COMMENT = " Mail Message Properties"


@dataclass
class _Source:
    """A message about to be written to the cache."""

    email: EmailMessage
    flags: FrozenSet[str]
    received: Optional[datetime]
    size: int

    @classmethod
    def from_remote(cls, remote: RemoteMessage) -> "_Source":
        return cls(email=remote.email, flags=remote.flags, received=remote.internaldate, size=remote.size)

    @classmethod
    def from_email(
        cls, email: EmailMessage, flags: Iterable[str] = (), received: Optional[datetime] = None
    ) -> "_Source":
        raw = email.as_bytes()
        return cls(email=email, flags=flagset.from_imap(flags), received=received, size=len(raw))

    def header(self, name: str) -> str:
        return mime.header_text(self.email, name)

    @property
    def subject(self) -> str:
        return self.header("Subject")

    @property
    def sent(self) -> Optional[datetime]:
        return mime.header_date(self.email)

    def identity(self) -> str:
        """Message-ID of the source, synthesized deterministically when absent."""

        existing = self.header("Message-ID")
        if existing:
            return existing
        anchor = self.sent or self.received
        timestamp = epoch_millis(anchor) if anchor is not None else 0
        return synthesize_message_id(timestamp, content_index((self.header("From"), self.subject, self.size)))


def remote_identity(remote: RemoteMessage) -> str:
    """Identity the cache records for ``remote`` (header or synthesized)."""

    return _Source.from_remote(remote).identity()


def _read_optional(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8", errors="replace")


def _unique_file(directory: Path, name: str) -> Path:
    candidate = directory / name
    if not candidate.exists():
        return candidate
    stem, suffix = candidate.stem, candidate.suffix
    counter = 1
    while (directory / f"{stem}_{counter}{suffix}").exists():
        counter += 1
    return directory / f"{stem}_{counter}{suffix}"


class Message:
    """A cached message, optionally bound to its server copy."""

    def __init__(self, folder: "Folder", directory: Path, *, remote: Optional[RemoteMessage] = None) -> None:
        self.folder = folder
        self.directory = directory
        self._remote = remote
        self._remote_checked = remote is not None
        self._loaded = False
        self._meta: Dict[str, str] = {}
        self._text: Optional[str] = None
        self._html: Optional[str] = None
        self._flags: Set[str] = set()
        self.archived = False

    def __repr__(self) -> str:
        return f"Message({self.folder.path!r}, {self.directory.name!r})"

    # Construction --------------------------------------------------------
    @classmethod
    def from_directory(cls, folder: "Folder", directory: Path) -> "Message":
        """Wrap an existing cache directory; nothing is read until needed."""

        return cls(folder, directory)

    @classmethod
    def from_remote(cls, folder: "Folder", remote: RemoteMessage, *, overwrite: bool = False) -> "Message":
        """Materialize a server message in ``folder``'s cache.

        What:
          Picks the directory for the message and writes it unless an entry for
          the same identity already exists; ``overwrite`` (refresh mode) wipes
          and rewrites an existing entry.

        Args:
          folder: Folder owning the cache directory.
          remote: Full snapshot fetched from the server.
          overwrite: Replace an existing entry instead of keeping it.

        Returns:
          A message bound to ``remote``.
        """

        source = _Source.from_remote(remote)
        identity = source.identity()
        directory = cls._directory_for(folder, source, identity)
        message = cls(folder, directory, remote=remote)
        existed = (directory / PROPERTIES_FILE).exists()
        if existed and not overwrite:
            return message
        message._persist(source, identity, wipe=existed)
        message._announce(ChangeKind.MESSAGE_UPDATED if existed else ChangeKind.MESSAGE_ADDED)
        return message

    @classmethod
    def from_email(
        cls,
        folder: "Folder",
        email: EmailMessage,
        *,
        flags: Iterable[str] = (),
        received: Optional[datetime] = None,
    ) -> "Message":
        """Cache an email that has no server copy (yet)."""

        source = _Source.from_email(email, flags, received)
        identity = source.identity()
        directory = cls._directory_for(folder, source, identity)
        message = cls(folder, directory)
        if (directory / PROPERTIES_FILE).exists():
            return message
        message._persist(source, identity, wipe=False)
        message._announce(ChangeKind.MESSAGE_ADDED)
        return message

    @staticmethod
    def _directory_for(folder: "Folder", source: _Source, identity: str) -> Path:
        base = message_directory_name(source.sent, source.subject, fallback=source.received)
        return resolve_message_directory(folder.messages_dir, base, identity)

    # Context -------------------------------------------------------------
    @property
    def capabilities(self) -> Capabilities:
        return self.folder.store.capabilities

    @property
    def logger(self) -> JsonLogger:
        return self.folder.store.logger

    @property
    def remote(self) -> Optional[RemoteMessage]:
        return self._remote

    @property
    def uid(self) -> Optional[int]:
        return self._remote.uid if self._remote is not None else None

    def _announce(self, kind: ChangeKind, **payload: object) -> None:
        self.folder.bus.emit(self, kind, folder=self.folder.path, directory=self.directory.name, **payload)

    # Persistence ---------------------------------------------------------
    def _persist(self, source: _Source, identity: str, *, wipe: bool) -> None:
        if wipe:
            self._wipe()
        self.directory.mkdir(parents=True, exist_ok=True)
        text, html = mime.extract_bodies(source.email)
        if text and not html and transforms.looks_like_html(text):
            text, html = "", text
        self._write_body(CONTENT_TEXT_FILE, text)
        self._write_body(CONTENT_HTML_FILE, html)
        if self.folder.store.cache_attachments:
            self._write_attachments(source.email)
        flagset.write_flags(self.directory / FLAGS_FILE, source.flags)
        meta = {
            KEY_MESSAGE_ID: identity,
            KEY_SUBJECT: source.subject,
            KEY_FROM: source.header("From"),
            KEY_REPLY_TO: source.header("Reply-To"),
            KEY_TO: source.header("To"),
            KEY_CC: source.header("Cc"),
            KEY_SENT_DATE: format_timestamp(source.sent),
            KEY_RECEIVED_DATE: format_timestamp(source.received),
            KEY_SIZE: str(source.size),
            KEY_FOLDER: self.folder.path,
        }
        self._meta = {key: value for key, value in meta.items() if value is not None}
        self._text, self._html = (text or None), (html or None)
        self._flags = set(source.flags)
        self._loaded = True
        self._save_metadata()

    def _write_body(self, name: str, body: str) -> None:
        path = self.directory / name
        if body:
            path.write_text(body, encoding="utf-8")
        elif path.exists():
            path.unlink()

    def _write_attachments(self, email: EmailMessage) -> None:
        target = self.directory / ATTACHMENTS_DIR
        for filename, _content_type, data in mime.iter_attachments(email):
            target.mkdir(exist_ok=True)
            _unique_file(target, sanitize_filename(filename)).write_bytes(data)

    def _wipe(self) -> None:
        """Remove cached content, keeping caller-attached extras."""

        if not self.directory.exists():
            return
        for entry in self.directory.iterdir():
            if entry.name == EXTRAS_DIR:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def _save_metadata(self) -> None:
        self._meta[KEY_HAS_TEXT] = "true" if self._text else "false"
        self._meta[KEY_HAS_HTML] = "true" if self._html else "false"
        self._meta[KEY_PREFERRED_TYPE] = "text/html" if self._html else "text/plain"
        write_properties(self.directory / PROPERTIES_FILE, self._meta, comment=_PROPERTIES_COMMENT)

    def _corrupt(self, part: str, exc: BaseException) -> None:
        problem = CacheCorruption(f"{part} unreadable in {self.directory}")
        self.logger.warning("cache_corruption", directory=str(self.directory), part=part, error=f"{problem}: {exc}")

    def _load(self) -> None:
        """Read the cache files once; a message with nothing cached triggers a miss."""

        if self._loaded:
            return
        self._loaded = True
        try:
            self._meta = read_properties(self.directory / PROPERTIES_FILE)
        except FileNotFoundError:
            self._meta = {}
        except OSError as exc:
            self._corrupt(PROPERTIES_FILE, exc)
            self._meta = {}
        for name in (CONTENT_TEXT_FILE, CONTENT_HTML_FILE):
            try:
                body = _read_optional(self.directory / name)
            except OSError as exc:
                self._corrupt(name, exc)
                body = None
            if name == CONTENT_TEXT_FILE:
                self._text = body
            else:
                self._html = body
        try:
            self._flags = set(flagset.read_flags(self.directory / FLAGS_FILE))
        except OSError as exc:
            self._corrupt(FLAGS_FILE, exc)
            self._flags = set()
        lost_text = self._meta.get(KEY_HAS_TEXT) == "true" and self._text is None
        lost_html = self._meta.get(KEY_HAS_HTML) == "true" and self._html is None
        if lost_text or lost_html or (not self._meta and self._text is None and self._html is None):
            self._on_cache_miss()

    def _on_cache_miss(self) -> None:
        if not self.capabilities.fallback_on_miss:
            return
        remote = self.resolve_remote()
        if remote is None or remote.headers_only:
            return
        source = _Source.from_remote(remote)
        self._persist(source, source.identity(), wipe=True)
        self.logger.info("cache_write_back", folder=self.folder.path, directory=self.directory.name)

    def reload(self) -> None:
        """Forget parsed fields so the next access rereads the cache."""

        self._loaded = False

    # Remote resolution ---------------------------------------------------
    def resolve_remote(self) -> Optional[RemoteMessage]:
        """Find and bind the server copy of this message.

        What:
          Looks the message up by Message-ID; if that fails, takes the first
          server message with the same subject and sent date.

        Why:
          Cached messages loaded from disk carry no UID; flag changes and moves
          need one, and a cache miss needs the content.

        Returns:
          The bound snapshot, or ``None`` when there is no reachable match.

        Raises:
          RemoteUnavailable: When the server fails in a mode without cache
            fallback.
        """

        if self._remote is not None:
            return self._remote
        if self._remote_checked or not self.capabilities.uses_remote:
            return None
        self._load()
        if self._remote is not None or self._remote_checked:
            return self._remote
        handle = self.folder.store.connection.resolve(self.folder.path)
        if handle is None:
            return None
        identity = self._meta.get(KEY_MESSAGE_ID, "")
        subject = self._meta.get(KEY_SUBJECT, "")
        sent = parse_timestamp(self._meta.get(KEY_SENT_DATE))
        try:
            found = None
            if identity:
                found = handle.find_by_message_id(identity)
            if found is None and (subject or sent is not None):
                found = handle.find_by_subject_date(subject, sent)
                if found is not None:
                    self.logger.info("remote_heuristic_match", folder=self.folder.path, uid=found.uid)
        except RemoteUnavailable as exc:
            self.folder.store.connection.failed(exc, "resolve_message", self.folder.path)
            return None
        self._remote_checked = True
        self._remote = found
        return found

    def _prefer_remote(self) -> bool:
        return self._remote is not None and self.capabilities.prefer_remote_read

    # Metadata accessors --------------------------------------------------
    def _meta_value(self, key: str) -> str:
        self._load()
        return self._meta.get(key, "")

    @property
    def message_id(self) -> str:
        self._load()
        cached = self._meta.get(KEY_MESSAGE_ID)
        if cached:
            return cached
        if self._remote is not None:
            return remote_identity(self._remote)
        return ""

    @property
    def subject(self) -> str:
        return self._remote.subject if self._prefer_remote() else self._meta_value(KEY_SUBJECT)

    @property
    def sender(self) -> str:
        return self._remote.sender if self._prefer_remote() else self._meta_value(KEY_FROM)

    @property
    def reply_to(self) -> str:
        return self._remote.reply_to if self._prefer_remote() else self._meta_value(KEY_REPLY_TO)

    @property
    def to(self) -> str:
        return self._remote.to if self._prefer_remote() else self._meta_value(KEY_TO)

    @property
    def cc(self) -> str:
        return self._remote.cc if self._prefer_remote() else self._meta_value(KEY_CC)

    @property
    def sent_date(self) -> Optional[datetime]:
        if self._prefer_remote():
            return self._remote.sent_date
        return parse_timestamp(self._meta_value(KEY_SENT_DATE))

    @property
    def received_date(self) -> Optional[datetime]:
        if self._prefer_remote():
            return self._remote.internaldate
        return parse_timestamp(self._meta_value(KEY_RECEIVED_DATE))

    @property
    def size(self) -> int:
        if self._prefer_remote():
            return self._remote.size
        value = self._meta_value(KEY_SIZE)
        try:
            return int(value) if value else 0
        except ValueError as exc:
            self._corrupt(KEY_SIZE, exc)
            return 0

    @property
    def folder_name(self) -> str:
        return self._meta_value(KEY_FOLDER)

    @property
    def flags(self) -> FrozenSet[str]:
        if self._prefer_remote():
            return self._remote.flags
        self._load()
        return frozenset(self._flags)

    def has_flag(self, flag: str) -> bool:
        return flagset.normalize(flag) in self.flags

    # Content -------------------------------------------------------------
    def _remote_bodies(self) -> tuple[str, str]:
        text, html = self._remote.bodies()
        if text and not html and transforms.looks_like_html(text):
            text, html = "", text
        return text, html

    def _cached_bodies(self) -> tuple[str, str]:
        """Cached ``(text, html)``, repairing legacy and HTML-only entries."""

        self._load()
        text, html = self._text or "", self._html or ""
        changed = False
        if text and transforms.looks_like_html(text):
            if not html:
                html = text
                (self.directory / CONTENT_HTML_FILE).write_text(html, encoding="utf-8")
            text = transforms.html_to_text(html)
            changed = True
        elif not text and html:
            text = transforms.html_to_text(html)
            changed = bool(text)
        if changed:
            self._write_body(CONTENT_TEXT_FILE, text)
            self._text, self._html = (text or None), (html or None)
            if self.directory.exists() and self._meta:
                self._save_metadata()
        return text, html

    @property
    def text_content(self) -> str:
        if self._prefer_remote() and not self._remote.headers_only:
            text, html = self._remote_bodies()
            return text or transforms.html_to_text(html)
        return self._cached_bodies()[0]

    @property
    def html_content(self) -> str:
        if self._prefer_remote() and not self._remote.headers_only:
            return self._remote_bodies()[1]
        self._load()
        text, html = self._text or "", self._html or ""
        if not html and text and transforms.looks_like_html(text):
            return self._cached_bodies()[1]
        return html

    @property
    def content(self) -> str:
        """HTML when present, else plain text, else ``""``."""

        return self.html_content or self.text_content

    @property
    def content_type(self) -> str:
        return "text/html" if self.html_content else "text/plain"

    def as_email(self) -> EmailMessage:
        """The message as an :class:`EmailMessage` (server copy or rebuilt from cache)."""

        if self._remote is not None and not self._remote.headers_only:
            return self._remote.email
        text, html = self._cached_bodies()
        headers = {
            "Message-ID": self.message_id,
            "Subject": self._meta.get(KEY_SUBJECT, ""),
            "From": self._meta.get(KEY_FROM, ""),
            "Reply-To": self._meta.get(KEY_REPLY_TO, ""),
            "To": self._meta.get(KEY_TO, ""),
            "Cc": self._meta.get(KEY_CC, ""),
        }
        sent = parse_timestamp(self._meta.get(KEY_SENT_DATE))
        if sent is not None:
            headers["Date"] = sent.strftime("%a, %d %b %Y %H:%M:%S +0000")
        attachments = [(name, (self.directory / ATTACHMENTS_DIR / name).read_bytes()) for name in self.list_attachments()]
        return mime.compose_message(headers, text, html, attachments)

    def as_bytes(self) -> bytes:
        if self._prefer_remote() and not self._remote.headers_only:
            return self._remote.raw
        return self.as_email().as_bytes()

    # Flags ---------------------------------------------------------------
    def set_flags(self, names: Iterable[str], value: bool = True) -> FrozenSet[str]:
        """Add (``value=True``) or remove flags, server first.

        What:
          Checks the mode, applies the change to the bound server copy,
          then to memory, then to ``flags.txt``, and announces it.

        Why:
          The cache must never claim a flag state the server rejected.

        Args:
          names: Flag names (``SEEN``, ``\\Seen``, keywords...).
          value: ``True`` to set, ``False`` to clear.

        Returns:
          The resulting flag set.

        Raises:
          PolicyViolation: When the mode forbids the change.
          RemoteUnavailable: When the server copy rejects the change.
        """

        wanted = {flagset.normalize(name) for name in names}
        mode = self.folder.store.mode
        if value and flagset.DELETED in wanted:
            require_delete(mode, "set DELETED flag")
        require_write(mode, "set flags")
        self._load()
        remote = self.resolve_remote()
        if remote is not None:
            connection = self.folder.store.connection
            handle = connection.resolve(self.folder.path, writable=True)
            if handle is None:
                raise RemoteUnavailable("server copy is bound but the folder cannot be opened", operation="store")
            try:
                handle.set_flags([remote.uid], sorted(wanted), value)
            except RemoteUnavailable as exc:
                self.logger.error("flag_change_failed", folder=self.folder.path, uid=remote.uid, error=str(exc))
                connection.failed(exc, "store", self.folder.path)
                raise
            connection.commit(handle)
            remote.flags = frozenset(remote.flags | wanted) if value else frozenset(remote.flags - wanted)
        if value:
            self._flags |= wanted
        else:
            self._flags -= wanted
        flagset.write_flags(self.directory / FLAGS_FILE, self._flags)
        self.folder.invalidate_counts()
        self._announce(ChangeKind.MESSAGE_UPDATED, flags=sorted(self._flags))
        return frozenset(self._flags)

    def set_flag(self, name: str, value: bool = True) -> FrozenSet[str]:
        return self.set_flags([name], value)

    # Attachments ---------------------------------------------------------
    @property
    def attachments_dir(self) -> Path:
        return self.directory / ATTACHMENTS_DIR

    def list_attachments(self) -> List[str]:
        if not self.attachments_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.attachments_dir.iterdir()
            if entry.is_file() and not entry.name.endswith(ATTACHMENT_TEXT_SUFFIX)
        )

    def _attachment_path(self, name: str) -> Path:
        path = self.attachments_dir / sanitize_filename(name)
        if not path.is_file():
            raise NotFound(f"attachment {name!r} not cached for {self.directory.name}")
        return path

    def open_attachment(self, name: str) -> BinaryIO:
        return self._attachment_path(name).open("rb")

    def save_attachment(self, name: str, target: Union[str, Path]) -> Path:
        """Copy attachment ``name`` to ``target`` (a file or a directory)."""

        source = self._attachment_path(name)
        destination = Path(target)
        if destination.is_dir():
            destination = destination / source.name
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, destination)
        return destination

    def attachment_text(self, name: str) -> str:
        """Extracted text of an attachment, memoized beside it."""

        source = self._attachment_path(name)
        memo = source.with_name(source.name + ATTACHMENT_TEXT_SUFFIX)
        if memo.exists():
            return memo.read_text(encoding="utf-8", errors="replace")
        if not transforms.can_extract(source):
            return ""
        text = transforms.extract_text(source, logger=self.logger)
        memo.write_text(text, encoding="utf-8")
        return text

    # Extras --------------------------------------------------------------
    @property
    def extras_dir(self) -> Path:
        return self.directory / EXTRAS_DIR

    def add_extra(self, name: str, data: Union[str, bytes]) -> Path:
        """Attach a side file (notes, analysis results) to this message."""

        self.extras_dir.mkdir(parents=True, exist_ok=True)
        path = self.extras_dir / sanitize_filename(name)
        if isinstance(data, str):
            path.write_text(data, encoding="utf-8")
        else:
            path.write_bytes(data)
        self._announce(ChangeKind.MESSAGE_UPDATED, extra=path.name)
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

    # Relocation ----------------------------------------------------------
    def move_to(self, destination: "Folder") -> None:
        """Relocate the directory into ``destination``'s ``messages/``.

        Raises:
          Collision: When the destination already has a same-named entry.
        """

        target = destination.messages_dir / self.directory.name
        if target.exists():
            raise Collision(f"{destination.path}/{self.directory.name} already exists")
        self._load()
        relocate(self.directory, target)
        self.folder = destination
        self.directory = target
        self._remote = None
        self._remote_checked = False

    def archive(self) -> Path:
        """Move the directory into the folder's ``archived_messages/``."""

        self._load()
        target = relocate(self.directory, unique_path(self.folder.archived_dir / self.directory.name))
        self.directory = target
        self.archived = True
        return target
