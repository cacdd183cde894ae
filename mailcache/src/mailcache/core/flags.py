"""Message flag vocabulary shared by the cache files and the IMAP adapter.

System flags are kept under their upper-case cache names (``SEEN``,
``ANSWERED``...). Keywords (user flags) keep their original spelling and are
written to ``flags.txt`` with a ``USER:`` prefix.
"""
from __future__ import annotations

from pathlib import Path
from typing import FrozenSet, Iterable, List, Union

SEEN = "SEEN"
ANSWERED = "ANSWERED"
DELETED = "DELETED"
FLAGGED = "FLAGGED"
DRAFT = "DRAFT"
RECENT = "RECENT"

SYSTEM_FLAGS = (SEEN, ANSWERED, DELETED, FLAGGED, DRAFT, RECENT)
USER_PREFIX = "USER:"

_IMAP_NAMES = {
    SEEN: b"\\Seen",
    ANSWERED: b"\\Answered",
    DELETED: b"\\Deleted",
    FLAGGED: b"\\Flagged",
    DRAFT: b"\\Draft",
    RECENT: b"\\Recent",
}
_FROM_IMAP = {value.lower(): key for key, value in _IMAP_NAMES.items()}

FlagLike = Union[str, bytes]


def normalize(flag: FlagLike) -> str:
    """Map ``\\Seen``, ``seen``, ``b"\\\\Seen"`` or ``SEEN`` to the cache name."""

    text = flag.decode("ascii", errors="replace") if isinstance(flag, bytes) else str(flag)
    text = text.strip()
    if text.startswith(USER_PREFIX):
        return text[len(USER_PREFIX):]
    system = _FROM_IMAP.get(text.lower().encode("ascii", errors="replace"))
    if system is not None:
        return system
    if text.upper() in SYSTEM_FLAGS:
        return text.upper()
    return text


def from_imap(flags: Iterable[FlagLike]) -> FrozenSet[str]:
    """Convert a server flag tuple into cache flag names."""

    return frozenset(normalize(flag) for flag in flags if flag)


def to_imap(flags: Iterable[str]) -> List[bytes]:
    """Convert cache flag names into server flags (keywords pass through)."""

    result: List[bytes] = []
    for flag in flags:
        name = normalize(flag)
        result.append(_IMAP_NAMES.get(name, name.encode("utf-8")))
    return result


def read_flags(path: Path) -> FrozenSet[str]:
    """Read ``flags.txt``; a missing file means no flags."""

    if not path.exists():
        return frozenset()
    names = set()
    for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith(USER_PREFIX):
            names.add(line[len(USER_PREFIX):])
        elif line.upper() in SYSTEM_FLAGS:
            names.add(line.upper())
    return frozenset(names)


def write_flags(path: Path, flags: Iterable[str]) -> None:
    """Write ``flags`` one per line, system flags first in canonical order."""

    names = {normalize(flag) for flag in flags}
    lines = [flag for flag in SYSTEM_FLAGS if flag in names]
    lines.extend(USER_PREFIX + flag for flag in sorted(names - set(SYSTEM_FLAGS)))
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")
