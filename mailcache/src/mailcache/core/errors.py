"""Error taxonomy surfaced by the cache engine.

What:
  Typed exceptions for every failure kind a caller may want to branch on:
  policy refusals, remote unavailability, missing entities, cache corruption,
  naming collisions and folder state misuse.

Why:
  Calling layers (the CLI, synchronisation jobs) must distinguish "the mode
  forbids this" from "the server is down" without parsing messages.

How:
  All errors derive from :class:`MailCacheError`; each also inherits the
  closest builtin so generic handlers (``except PermissionError``) keep
  working.

Invariants & Safety:
  - :class:`PolicyViolation` is never retried by the engine.
  - :class:`CacheCorruption` is recorded and recovered per field; loads do
    not let it escape.
"""
from __future__ import annotations

from typing import Optional


class MailCacheError(Exception):
    """Base class for every error raised by mailcache."""


class PolicyViolation(MailCacheError, PermissionError):
    """Raised when the active operation mode forbids an operation.

    Attributes:
      mode: Value of the mode that refused the operation.
      operation: Short name of the refused operation.
    """

    def __init__(self, mode: str, operation: str, reason: str = "") -> None:
        self.mode = mode
        self.operation = operation
        detail = f": {reason}" if reason else ""
        super().__init__(f"{operation} is not allowed in {mode} mode{detail}")


class RemoteUnavailable(MailCacheError, ConnectionError):
    """Raised when the server cannot be reached or a remote call fails."""

    def __init__(self, message: str, *, operation: Optional[str] = None) -> None:
        self.operation = operation
        super().__init__(message)


class NotFound(MailCacheError, LookupError):
    """Raised when a folder or message is absent from the resolved source."""


class CacheCorruption(MailCacheError, ValueError):
    """Describes unreadable cache metadata; logged, recovered field by field."""


class Collision(MailCacheError, FileExistsError):
    """Raised when a destination already holds a same-named message directory."""


class FolderStateError(MailCacheError, RuntimeError):
    """Raised when an operation needs the folder open (or closed) and it is not."""
