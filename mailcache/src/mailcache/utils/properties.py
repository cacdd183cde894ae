"""Reader and writer for ``key=value`` properties files.

What:
  Serialise the per-message metadata record (``message.properties``) in the
  classic properties syntax and read it back, including files written by
  older tools in ISO-8859-1 with ``\\uXXXX`` escapes.

Why:
  The cache layout is shared with existing installations; the metadata file
  format must stay readable by both sides.

How:
  Writing escapes separators, line breaks and leading comment markers, and
  emits keys in sorted order so files diff cleanly. Reading decodes UTF-8
  with an ISO-8859-1 fallback, skips comments, joins continuation lines and
  splits on the first unescaped ``=``, ``:`` or whitespace.

Interfaces:
  :func:`dumps`, :func:`loads`, :func:`write_properties`,
  :func:`read_properties`.
"""
from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Mapping, Optional


_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


def _escape(text: str, *, is_key: bool) -> str:
    out: List[str] = []
    for index, char in enumerate(text):
        if char == "\\":
            out.append("\\\\")
        elif char == "\n":
            out.append("\\n")
        elif char == "\r":
            out.append("\\r")
        elif char == "\t":
            out.append("\\t")
        elif char == "\f":
            out.append("\\f")
        elif char in "=:":
            out.append("\\" + char)
        elif char in "#!" and index == 0:
            out.append("\\" + char)
        elif char == " " and (is_key or index == 0):
            out.append("\\ ")
        else:
            out.append(char)
    return "".join(out)


def _unescape(text: str) -> str:
    out: List[str] = []
    index = 0
    while index < len(text):
        char = text[index]
        if char != "\\" or index + 1 >= len(text):
            out.append(char)
            index += 1
            continue
        nxt = text[index + 1]
        if nxt == "u" and index + 6 <= len(text):
            try:
                out.append(chr(int(text[index + 2 : index + 6], 16)))
                index += 6
                continue
            except ValueError:
                pass
        out.append(_ESCAPES.get(nxt, nxt))
        index += 2
    return "".join(out)


def _logical_lines(text: str) -> List[str]:
    lines: List[str] = []
    pending = ""
    for physical in text.splitlines():
        stripped = physical.lstrip()
        if not pending and (not stripped or stripped[0] in "#!"):
            continue
        trailing = len(stripped) - len(stripped.rstrip("\\"))
        if trailing % 2 == 1:
            pending += stripped[:-1]
            continue
        lines.append(pending + stripped)
        pending = ""
    if pending:
        lines.append(pending)
    return lines


def _split(line: str) -> tuple[str, str]:
    index = 0
    while index < len(line):
        char = line[index]
        if char == "\\":
            index += 2
            continue
        if char in "=: \t":
            break
        index += 1
    key = line[:index]
    rest = line[index:].lstrip(" \t")
    if rest[:1] in ("=", ":"):
        rest = rest[1:].lstrip(" \t")
    return key, rest


def loads(text: str) -> Dict[str, str]:
    """Parse properties ``text`` into a dictionary (later keys win)."""

    result: Dict[str, str] = {}
    for line in _logical_lines(text):
        key, value = _split(line)
        if key:
            result[_unescape(key)] = _unescape(value)
    return result


def dumps(values: Mapping[str, Optional[str]], *, comment: Optional[str] = None) -> str:
    """Render ``values`` as properties text; ``None`` values are omitted."""

    lines: List[str] = []
    if comment:
        lines.append(f"#{comment}")
    lines.append("#" + datetime.now(timezone.utc).strftime("%a %b %d %H:%M:%S UTC %Y"))
    for key in sorted(values):
        value = values[key]
        if value is None:
            continue
        lines.append(f"{_escape(key, is_key=True)}={_escape(str(value), is_key=False)}")
    return "\n".join(lines) + "\n"


def read_properties(path: Path) -> Dict[str, str]:
    """Read a properties file; raises :class:`OSError` when unreadable."""

    data = path.read_bytes()
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        text = data.decode("iso-8859-1")
    return loads(text)


def write_properties(
    path: Path, values: Mapping[str, Optional[str]], *, comment: Optional[str] = None
) -> None:
    """Write ``values`` to ``path`` through a temporary file and rename."""

    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(dumps(values, comment=comment), encoding="utf-8")
    tmp.replace(path)
