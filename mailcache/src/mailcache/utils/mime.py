"""MIME helpers shared by the message engine and the IMAP adapter.

What:
  Parse raw RFC822 payloads into :class:`email.message.EmailMessage` objects,
  pull out the plain-text and HTML bodies, enumerate attachments, read
  headers tolerantly, and rebuild a message from cached parts.

Why:
  Mail on real servers is messy: unknown charsets, malformed dates, bodies
  split across several parts. The cache must salvage whatever is readable
  rather than refuse a message because one header is broken.

How:
  Use :class:`~email.parser.BytesParser` with the default policy, walk the
  MIME tree once, and fall back to lossy decoding when the declared charset is
  unusable.

Interfaces:
  :func:`parse_message`, :func:`header_text`, :func:`header_date`,
  :func:`extract_bodies`, :func:`iter_attachments`, :func:`compose_message`.

Invariants & Safety:
  - Header and body helpers return ``""`` / ``None`` instead of raising on
    malformed input.
  - Multiple text or HTML leaves are joined with a newline in document order.
"""
from __future__ import annotations

import mimetypes
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from typing import Dict, Iterator, List, Optional, Sequence, Tuple


def parse_message(raw: bytes) -> EmailMessage:
    """Parse ``raw`` RFC822 bytes with the modern email policy."""

    return BytesParser(policy=policy.default).parsebytes(raw)


def header_text(message: EmailMessage, name: str) -> str:
    """Return the decoded value of header ``name`` or ``""``.

    Header parsing in :mod:`email` can raise on badly encoded words; such
    headers are treated as absent.
    """

    try:
        value = message.get(name)
    except (ValueError, TypeError, IndexError, AttributeError):
        return ""
    if value is None:
        return ""
    return " ".join(str(value).split())


def header_date(message: EmailMessage, name: str = "Date") -> Optional[datetime]:
    """Parse a date header into an aware UTC datetime, ``None`` when unusable."""

    raw = header_text(message, name)
    if not raw:
        return None
    try:
        parsed = parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _is_attachment(part: EmailMessage) -> bool:
    disposition = part.get_content_disposition()
    if disposition == "attachment":
        return True
    return bool(part.get_filename())


def _decode_text(part: EmailMessage) -> str:
    try:
        payload = part.get_content()
    except (LookupError, UnicodeError, KeyError):
        payload = None
    if isinstance(payload, str):
        return payload
    raw = payload if isinstance(payload, bytes) else part.get_payload(decode=True)
    if not raw:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def extract_bodies(message: EmailMessage) -> Tuple[str, str]:
    """Return ``(text, html)`` bodies found in ``message``.

    What:
      Collects every non-attachment ``text/plain`` and ``text/html`` leaf.

    Why:
      The cache stores both representations side by side; callers decide
      which one to present.

    Returns:
      Tuple of plain text and HTML, each possibly empty.
    """

    texts: List[str] = []
    htmls: List[str] = []
    for part in message.walk():
        if part.is_multipart() or _is_attachment(part):
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            texts.append(_decode_text(part))
        elif content_type == "text/html":
            htmls.append(_decode_text(part))
    return "\n".join(texts), "\n".join(htmls)


def iter_attachments(message: EmailMessage) -> Iterator[Tuple[str, str, bytes]]:
    """Yield ``(filename, content_type, data)`` for each attachment leaf."""

    counter = 0
    for part in message.walk():
        if part.is_multipart() or not _is_attachment(part):
            continue
        counter += 1
        filename = part.get_filename() or f"attachment_{counter}"
        data = part.get_payload(decode=True) or b""
        yield filename, part.get_content_type(), data


def compose_message(
    headers: Dict[str, str],
    text: str,
    html: str,
    attachments: Sequence[Tuple[str, bytes]] = (),
) -> EmailMessage:
    """Rebuild an :class:`EmailMessage` from cached parts.

    What:
      Creates a message carrying ``headers``, a text and/or HTML body
      (``multipart/alternative`` when both exist) and the given attachments.

    Why:
      Messages cached while offline have no remote copy; appending or moving
      them to a server requires a serialisable message again.

    Args:
      headers: Header name to value mapping; empty values are skipped.
      text: Plain-text body.
      html: HTML body.
      attachments: ``(filename, bytes)`` pairs.

    Returns:
      Freshly composed message.
    """

    message = EmailMessage(policy=policy.default)
    for name, value in headers.items():
        if value:
            message[name] = value
    if text and html:
        message.set_content(text)
        message.add_alternative(html, subtype="html")
    elif html:
        message.set_content(html, subtype="html")
    else:
        message.set_content(text or "")
    for filename, data in attachments:
        guessed, _ = mimetypes.guess_type(filename)
        maintype, _, subtype = (guessed or "application/octet-stream").partition("/")
        message.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return message
