"""Remote message snapshots and per-folder handles.

What:
  :class:`RemoteMessage` is an immutable snapshot of one fetched message
  (UID, raw bytes, flags, internal date, size) with parsed header accessors.
  :class:`RemoteFolder` is the handle the connection manager hands to the
  engines: a folder path bound to the shared
  :class:`~mailcache.imap.client.ImapSession`, opened read-only or
  read-write.

Why:
  The engines reason about "the remote copy of this folder/message", not
  about IMAP commands. The handle re-selects its folder before each command
  because other handles may have moved the session's selection in between.

How:
  Handles delegate to the session; lookups by Message-ID use ``HEADER``
  searches and the subject/sent-date fallback scans headers of every message
  in the folder.

Interfaces:
  :class:`RemoteMessage`, :class:`RemoteFolder`.

Invariants & Safety:
  - A handle opened read-only never issues a mutating command; callers upgrade
    through the connection manager first.
  - :meth:`RemoteFolder.find_by_subject_date` returns the first match only;
    two distinct messages sharing subject and timestamp are not told apart.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from functools import cached_property
from typing import TYPE_CHECKING, FrozenSet, List, Mapping, Optional, Sequence

from ..core import flags as flagset
from ..core.errors import FolderStateError
from ..utils import mime

if TYPE_CHECKING:
    from .client import ImapSession


def _aware(moment: object) -> Optional[datetime]:
    if not isinstance(moment, datetime):
        return None
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.astimezone(timezone.utc)


@dataclass
class RemoteMessage:
    """Snapshot of one message as fetched from the server."""

    folder: str
    uid: int
    raw: bytes
    flags: FrozenSet[str] = frozenset()
    internaldate: Optional[datetime] = None
    size: int = 0
    headers_only: bool = False

    @classmethod
    def from_fetch(
        cls, folder: str, uid: int, data: Mapping[bytes, object], *, headers_only: bool = False
    ) -> "RemoteMessage":
        """Build a snapshot from one ``IMAPClient.fetch`` response entry."""

        raw = b""
        for key in (b"BODY[]", b"RFC822", b"BODY[HEADER]", b"RFC822.HEADER"):
            value = data.get(key)
            if isinstance(value, (bytes, bytearray)):
                raw = bytes(value)
                break
        size = data.get(b"RFC822.SIZE")
        return cls(
            folder=folder,
            uid=int(uid),
            raw=raw,
            flags=flagset.from_imap(data.get(b"FLAGS") or ()),
            internaldate=_aware(data.get(b"INTERNALDATE")),
            size=int(size) if isinstance(size, int) else len(raw),
            headers_only=headers_only,
        )

    @cached_property
    def email(self) -> EmailMessage:
        return mime.parse_message(self.raw)

    @property
    def message_id(self) -> str:
        return mime.header_text(self.email, "Message-ID")

    @property
    def subject(self) -> str:
        return mime.header_text(self.email, "Subject")

    @property
    def sender(self) -> str:
        return mime.header_text(self.email, "From")

    @property
    def reply_to(self) -> str:
        return mime.header_text(self.email, "Reply-To")

    @property
    def to(self) -> str:
        return mime.header_text(self.email, "To")

    @property
    def cc(self) -> str:
        return mime.header_text(self.email, "Cc")

    @property
    def sent_date(self) -> Optional[datetime]:
        return mime.header_date(self.email)

    def bodies(self) -> tuple[str, str]:
        """``(text, html)`` bodies; empty for header-only snapshots."""

        if self.headers_only:
            return "", ""
        return mime.extract_bodies(self.email)


def _same_second(left: Optional[datetime], right: Optional[datetime]) -> bool:
    if left is None or right is None:
        return left is None and right is None
    return int(left.timestamp()) == int(right.timestamp())


class RemoteFolder:
    """Handle on one server folder, sharing the store's IMAP session."""

    def __init__(self, session: "ImapSession", path: str) -> None:
        self.session = session
        self.path = path
        self.readonly = True
        self.is_open = False

    def __repr__(self) -> str:
        state = "closed" if not self.is_open else ("ro" if self.readonly else "rw")
        return f"RemoteFolder({self.path!r}, {state})"

    # Lifecycle -----------------------------------------------------------
    def open(self, *, readonly: bool = True) -> "RemoteFolder":
        self.session.select(self.path, readonly=readonly)
        self.readonly = readonly
        self.is_open = True
        return self

    def reopen(self, *, readonly: bool) -> "RemoteFolder":
        """Close and reopen in the requested mode (read-write upgrade, commit)."""

        self.close()
        return self.open(readonly=readonly)

    def close(self, *, expunge: bool = False) -> None:
        if self.is_open:
            self.is_open = False
            self.session.release(self.path, expunge=expunge and not self.readonly)

    def _selected(self) -> "ImapSession":
        if not self.is_open:
            self.open(readonly=self.readonly)
        else:
            self.session.select(self.path, readonly=self.readonly)
        return self.session

    def _writable(self) -> "ImapSession":
        if self.readonly:
            raise FolderStateError(f"remote folder {self.path!r} is open read-only")
        return self._selected()

    # Structure -----------------------------------------------------------
    def exists(self) -> bool:
        if not self.path:
            return True
        return self.session.folder_exists(self.path)

    def create(self) -> None:
        self.session.create_folder(self.path)

    def delete(self) -> None:
        self.is_open = False
        self.session.delete_folder(self.path)

    def rename(self, new_path: str) -> "RemoteFolder":
        self.is_open = False
        self.session.rename_folder(self.path, new_path)
        return RemoteFolder(self.session, new_path)

    def children(self, pattern: str = "%") -> List[str]:
        return self.session.list_folders(self.path, pattern)

    # Reads ---------------------------------------------------------------
    def uids(self, criteria: Sequence[object] = ("ALL",)) -> List[int]:
        return self._selected().search(criteria)

    def fetch(self, uids: Sequence[int], *, headers_only: bool = False) -> List[RemoteMessage]:
        return self._selected().fetch(self.path, uids, headers_only=headers_only)

    def messages(self) -> List[RemoteMessage]:
        return self.fetch(self.uids())

    def search(self, criteria: Sequence[object]) -> List[RemoteMessage]:
        return self.fetch(self.uids(criteria))

    def count(self) -> int:
        return self.session.folder_status(self.path)[0]

    def unread(self) -> int:
        return self.session.folder_status(self.path)[1]

    def find_by_message_id(self, message_id: str) -> Optional[RemoteMessage]:
        if not message_id:
            return None
        uids = self.uids(["HEADER", "Message-ID", message_id])
        found = self.fetch(uids[:1])
        return found[0] if found else None

    def find_by_subject_date(self, subject: str, sent: Optional[datetime]) -> Optional[RemoteMessage]:
        """First message whose subject and sent date (to the second) match."""

        for header in self.fetch(self.uids(), headers_only=True):
            if header.subject == subject and _same_second(header.sent_date, sent):
                found = self.fetch([header.uid])
                return found[0] if found else None
        return None

    # Writes --------------------------------------------------------------
    def append(
        self, raw: bytes, flags: Sequence[str] = (), msg_time: Optional[datetime] = None
    ) -> Optional[int]:
        self._writable()
        return self.session.append(self.path, raw, flagset.to_imap(flags), msg_time)

    def copy(self, uids: Sequence[int], destination: str) -> None:
        self._selected().copy(uids, destination)

    def set_flags(self, uids: Sequence[int], names: Sequence[str], value: bool) -> None:
        session = self._writable()
        converted = flagset.to_imap(names)
        if value:
            session.add_flags(uids, converted)
        else:
            session.remove_flags(uids, converted)

    def remove_label(self, uids: Sequence[int], label: str) -> None:
        self._writable().remove_gmail_labels(uids, [label])

    def expunge(self) -> List[RemoteMessage]:
        """Expunge ``\\Deleted`` messages, returning header snapshots of them."""

        session = self._writable()
        doomed = self.fetch(session.search(["DELETED"]), headers_only=True)
        if doomed:
            session.expunge()
        return doomed
