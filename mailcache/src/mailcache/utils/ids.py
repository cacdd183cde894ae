"""Identity helpers: synthesized Message-IDs, digests and timestamps.

What:
  Produce the deterministic Message-ID used when a message arrives without
  one, short digests used to disambiguate directory names, and the
  millisecond timestamps used for archive suffixes.

Why:
  A cache entry is correlated with its remote counterpart through the
  Message-ID. Messages lacking that header still need an identity that is
  stable across repeated fetches, otherwise every synchronisation would
  create a fresh directory.

How:
  Synthesized identities follow ``<timestamp>.<index>@mailcache.generated>``.
  Callers choose what ``timestamp`` and ``index`` mean (sent date plus content
  digest for fetched mail, append time plus batch position for appended
  mail). Digests wrap :mod:`hashlib` with a ``sha256:`` namespace prefix.

Interfaces:
  :func:`synthesize_message_id`, :func:`content_index`, :func:`checksum`,
  :func:`short_digest`, :func:`epoch_millis`, :func:`is_synthesized`.
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Iterable, Optional


GENERATED_DOMAIN = "mailcache.generated"


def epoch_millis(moment: Optional[datetime] = None) -> int:
    """Return ``moment`` (default: now) as integer epoch milliseconds."""

    if moment is None:
        moment = datetime.now(timezone.utc)
    elif moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


def synthesize_message_id(timestamp_ms: int, index: int) -> str:
    """Build a synthetic Message-ID value.

    Args:
      timestamp_ms: Epoch milliseconds anchoring the identity.
      index: Non-negative integer disambiguating identities sharing a
        timestamp.

    Returns:
      Header value such as ``<1700000000000.3@mailcache.generated>``.
    """

    return f"<{timestamp_ms}.{index}@{GENERATED_DOMAIN}>"


def is_synthesized(message_id: Optional[str]) -> bool:
    """Tell whether ``message_id`` was produced by :func:`synthesize_message_id`."""

    return bool(message_id) and message_id.rstrip().endswith(f"@{GENERATED_DOMAIN}>")


def content_index(parts: Iterable[object]) -> int:
    """Derive a stable numeric index from message characteristics.

    What:
      Hashes the string form of every element of ``parts`` and folds the
      digest into a ten digit integer.

    Why:
      Messages fetched from the server without a Message-ID are re-observed on
      every synchronisation; the index must come out identical each time.

    Args:
      parts: Values describing the message (sender, subject, size...).

    Returns:
      Integer in ``[0, 10**10)``.
    """

    digest = hashlib.sha256()
    for part in parts:
        digest.update(str(part).encode("utf-8", errors="replace"))
        digest.update(b"\x00")
    return int(digest.hexdigest()[:12], 16) % 10**10


def checksum(data: bytes) -> str:
    """Compute a namespaced SHA-256 digest for ``data``."""

    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def short_digest(text: str, length: int = 8) -> str:
    """Return the first ``length`` hex characters of the SHA-1 of ``text``."""

    return hashlib.sha1(text.encode("utf-8", errors="replace")).hexdigest()[:length]
