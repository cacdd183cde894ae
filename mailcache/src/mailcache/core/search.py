"""Search queries evaluated against cached messages or the server.

What:
  :class:`SearchQuery` holds the conjunction of supported filters (subject,
  sender, body text, sent-date window or year, unseen, flagged, Message-ID).
  :meth:`SearchQuery.matches` evaluates it against a cached message;
  :func:`mailcache.imap.search.build_search` turns it into IMAP criteria.

Why:
  The same query must give the same answer whether the folder engine answers
  from disk (cache-preferring modes) or from the server (remote-preferring
  modes), so both evaluations live next to one definition.

How:
  Text filters are case-insensitive substring matches, mirroring IMAP
  ``SEARCH`` semantics. Date filters compare the sent date; ``since`` is
  inclusive and ``before`` exclusive, at day granularity.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import TYPE_CHECKING, Optional, Tuple

from . import flags as flagset

if TYPE_CHECKING:
    from .message import Message


def _contains(haystack: str, needle: Optional[str]) -> bool:
    return needle is None or needle.casefold() in (haystack or "").casefold()


@dataclass(frozen=True)
class SearchQuery:
    """Conjunction of message filters; unset fields match everything."""

    subject: Optional[str] = None
    sender: Optional[str] = None
    body: Optional[str] = None
    since: Optional[date] = None
    before: Optional[date] = None
    year: Optional[int] = None
    unseen: bool = False
    flagged: bool = False
    message_id: Optional[str] = None

    @classmethod
    def by_subject(cls, text: str) -> "SearchQuery":
        return cls(subject=text)

    @classmethod
    def by_sender(cls, text: str) -> "SearchQuery":
        return cls(sender=text)

    @classmethod
    def by_year(cls, year: int) -> "SearchQuery":
        return cls(year=year)

    @property
    def is_empty(self) -> bool:
        return self == SearchQuery()

    def date_window(self) -> Tuple[Optional[date], Optional[date]]:
        """Effective ``(since, before)`` after folding in ``year``."""

        since, before = self.since, self.before
        if self.year is not None:
            year_start, year_end = date(self.year, 1, 1), date(self.year + 1, 1, 1)
            since = max(since, year_start) if since else year_start
            before = min(before, year_end) if before else year_end
        return since, before

    def matches(self, message: "Message") -> bool:
        """Evaluate the query against a cached message."""

        if self.message_id is not None and message.message_id != self.message_id:
            return False
        if not _contains(message.subject, self.subject):
            return False
        if not _contains(message.sender, self.sender):
            return False
        if self.body is not None and not (
            _contains(message.text_content, self.body) or _contains(message.html_content, self.body)
        ):
            return False
        since, before = self.date_window()
        if since is not None or before is not None:
            sent: Optional[datetime] = message.sent_date
            if sent is None:
                return False
            day = sent.date()
            if since is not None and day < since:
                return False
            if before is not None and day >= before:
                return False
        current = message.flags
        if self.unseen and flagset.SEEN in current:
            return False
        if self.flagged and flagset.FLAGGED not in current:
            return False
        return True
