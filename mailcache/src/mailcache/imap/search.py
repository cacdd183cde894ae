"""Translate :class:`~mailcache.core.search.SearchQuery` into IMAP criteria.

What:
  Provide a deterministic mapping from a search query to the flat criteria
  list consumed by ``IMAPClient.search``.

Why:
  Keeping the translation in one place keeps remote searches consistent with
  local evaluation and makes the date handling unit-testable.

How:
  Appends keyword/value pairs for every set field, using ``SENTSINCE`` and
  ``SENTBEFORE`` so the server compares the same Date header the cache
  stores. An empty query becomes ``["ALL"]``.

Interfaces:
  :func:`build_search`.

Invariants & Safety:
  - Only known fields are translated; values are passed as separate list
    items so ``imapclient`` quotes them.
"""
from __future__ import annotations

from typing import List

from ..core.search import SearchQuery


def build_search(query: SearchQuery) -> List[object]:
    """Convert ``query`` into IMAP search criteria."""

    criteria: List[object] = []
    if query.message_id is not None:
        criteria.extend(["HEADER", "Message-ID", query.message_id])
    if query.subject is not None:
        criteria.extend(["SUBJECT", query.subject])
    if query.sender is not None:
        criteria.extend(["FROM", query.sender])
    if query.body is not None:
        criteria.extend(["BODY", query.body])
    since, before = query.date_window()
    if since is not None:
        criteria.extend(["SENTSINCE", since])
    if before is not None:
        criteria.extend(["SENTBEFORE", before])
    if query.unseen:
        criteria.append("UNSEEN")
    if query.flagged:
        criteria.append("FLAGGED")
    return criteria or ["ALL"]
