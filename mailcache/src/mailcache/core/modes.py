"""Operation modes and the capability table every engine consults.

What:
  Define the five operation modes and map each one to an immutable set of
  capability flags: whether reads prefer the server, whether a cache miss may
  fall back to the server, whether searches may run remotely, whether writes
  and deletes are allowed, whether fetched mail overwrites the cache, and
  whether the mode tolerates remote failures by continuing cache-only.

Why:
  Scattering ``if mode == ...`` checks across the folder and message engines
  is how a write slips through in the wrong mode. A single lookup keeps the
  policy auditable in one screenful.

How:
  :class:`OperationMode` is a string enum so configuration files can name it
  directly; :data:`POLICY` maps it to a frozen :class:`Capabilities`
  dataclass; :func:`require_write` and :func:`require_delete` raise
  :class:`~mailcache.core.errors.PolicyViolation`.

Interfaces:
  :class:`OperationMode`, :class:`Capabilities`, :data:`POLICY`,
  :data:`DEFAULT_MODE`, :func:`capabilities_for`, :func:`require_write`,
  :func:`require_delete`.

Invariants & Safety:
  - ``destructive`` is the only mode with ``delete_allowed``.
  - ``offline`` has every capability disabled and never touches the network.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Union

from .errors import PolicyViolation


class OperationMode(str, Enum):
    """Policy value governing remote/local precedence and permissions."""

    OFFLINE = "offline"
    ONLINE = "online"
    ACCELERATED = "accelerated"
    DESTRUCTIVE = "destructive"
    REFRESH = "refresh"

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]

    @classmethod
    def parse(cls, value: Union[str, "OperationMode"]) -> "OperationMode":
        """Return the mode named by ``value`` (case-insensitive).

        Raises:
          ValueError: If ``value`` names no mode.
        """

        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            names = ", ".join(mode.value for mode in cls)
            raise ValueError(f"Unknown operation mode {value!r} (expected one of {names})") from None


_DESCRIPTIONS = {
    OperationMode.OFFLINE: "Cache only; no server access, no modifications",
    OperationMode.ONLINE: "Server first for reads, writes go to both, no deletes",
    OperationMode.ACCELERATED: "Cache first, server on miss, best-effort dual writes",
    OperationMode.DESTRUCTIVE: "Like accelerated but expunge and DELETED flags are allowed",
    OperationMode.REFRESH: "Server first and every fetched message overwrites the cache",
}

DEFAULT_MODE = OperationMode.ACCELERATED


@dataclass(frozen=True)
class Capabilities:
    """What one operation mode permits."""

    prefer_remote_read: bool
    fallback_on_miss: bool
    search_remote: bool
    write_allowed: bool
    delete_allowed: bool
    overwrite_cache: bool = False
    tolerate_remote_failure: bool = False

    @property
    def uses_remote(self) -> bool:
        return self.prefer_remote_read or self.fallback_on_miss or self.search_remote


POLICY: Dict[OperationMode, Capabilities] = {
    OperationMode.OFFLINE: Capabilities(
        prefer_remote_read=False,
        fallback_on_miss=False,
        search_remote=False,
        write_allowed=False,
        delete_allowed=False,
    ),
    OperationMode.ONLINE: Capabilities(
        prefer_remote_read=True,
        fallback_on_miss=True,
        search_remote=True,
        write_allowed=True,
        delete_allowed=False,
    ),
    OperationMode.ACCELERATED: Capabilities(
        prefer_remote_read=False,
        fallback_on_miss=True,
        search_remote=True,
        write_allowed=True,
        delete_allowed=False,
        tolerate_remote_failure=True,
    ),
    OperationMode.DESTRUCTIVE: Capabilities(
        prefer_remote_read=False,
        fallback_on_miss=True,
        search_remote=True,
        write_allowed=True,
        delete_allowed=True,
        tolerate_remote_failure=True,
    ),
    OperationMode.REFRESH: Capabilities(
        prefer_remote_read=True,
        fallback_on_miss=True,
        search_remote=True,
        write_allowed=True,
        delete_allowed=False,
        overwrite_cache=True,
    ),
}


def capabilities_for(mode: Union[str, OperationMode]) -> Capabilities:
    """Look up the capability row for ``mode``."""

    return POLICY[OperationMode.parse(mode)]


def require_write(mode: Union[str, OperationMode], operation: str) -> None:
    """Raise :class:`PolicyViolation` unless ``mode`` allows writes."""

    parsed = OperationMode.parse(mode)
    if not POLICY[parsed].write_allowed:
        raise PolicyViolation(parsed.value, operation, "writes are disabled")


def require_delete(mode: Union[str, OperationMode], operation: str) -> None:
    """Raise :class:`PolicyViolation` unless ``mode`` allows deletes."""

    parsed = OperationMode.parse(mode)
    if not POLICY[parsed].delete_allowed:
        raise PolicyViolation(parsed.value, operation, "deletes require destructive mode")
