"""Facade for the IMAP integration layer.

What:
  Surface :class:`~mailcache.imap.client.ImapSession` and the remote handle
  types the connection manager hands to the cache engines.

Invariants & Safety:
  - All server access goes through :class:`ImapSession` so rate limiting and
    error translation apply everywhere.
"""

from .client import ImapSession
from .remote import RemoteFolder, RemoteMessage
from .search import build_search

__all__ = ["ImapSession", "RemoteFolder", "RemoteMessage", "build_search"]
