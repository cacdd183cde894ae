"""Deterministic on-disk layout of the local cache.

What:
  Map folder paths and message identities to directories, sanitize names,
  build the ``<date>_<subject>`` message directory names, and relocate
  directories into the archive areas.

Why:
  Existing caches must stay readable by every release, so the layout is a
  compatibility contract. Keeping all path arithmetic here means the engines
  never concatenate paths by hand.

How:
  Pure functions over :class:`pathlib.Path`. Sanitisation replaces the
  characters ``\\ / : * ? " < > |`` with ``_`` and truncates subject-derived
  components to :data:`MAX_SUBJECT_LENGTH`. Directory names are
  ``YYYY-MM-DD_HH-MM_<subject>`` in UTC so sorting approximates delivery order.

Layout::

    <root>/<folder path>/
        messages/<date>_<subject>/{message.properties, content.txt,
                                   content.html, flags.txt,
                                   attachments/, extras/}
        archived_messages/<same shape>
        extras/
    <root>/archived_folders/<sanitized path>_<timestamp>/

Invariants & Safety:
  - Folder paths never escape the root: empty, ``.`` and ``..`` segments are
    rejected.
  - Relocation never overwrites: archive targets get a numeric suffix when the
    timestamped name is already taken.
"""
from __future__ import annotations

import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from ..utils.ids import epoch_millis, short_digest
from ..utils.properties import read_properties

MESSAGES_DIR = "messages"
ARCHIVED_MESSAGES_DIR = "archived_messages"
EXTRAS_DIR = "extras"
ARCHIVED_FOLDERS_DIR = "archived_folders"
ATTACHMENTS_DIR = "attachments"
RESERVED_NAMES = frozenset({MESSAGES_DIR, ARCHIVED_MESSAGES_DIR, EXTRAS_DIR})
ROOT_RESERVED_NAMES = RESERVED_NAMES | {ARCHIVED_FOLDERS_DIR}

PROPERTIES_FILE = "message.properties"
CONTENT_TEXT_FILE = "content.txt"
CONTENT_HTML_FILE = "content.html"
FLAGS_FILE = "flags.txt"

MAX_SUBJECT_LENGTH = 100
NO_SUBJECT = "NoSubject"
PROPERTY_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DIRECTORY_DATE_FORMAT = "%Y-%m-%d_%H-%M"

_UNSAFE = re.compile(r'[\\/:*?"<>|]')
_WHITESPACE = re.compile(r"[\r\n\t]+")


def sanitize_filename(name: str, max_length: Optional[int] = None) -> str:
    """Return ``name`` safe to use as a single path component."""

    cleaned = _UNSAFE.sub("_", _WHITESPACE.sub(" ", name or "")).strip()
    if max_length is not None and len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip()
    if cleaned in ("", ".", ".."):
        cleaned = "_"
    return cleaned


def normalize_folder_path(path: str) -> str:
    """Collapse duplicate separators and strip leading/trailing ``/``.

    Raises:
      ValueError: If a segment is ``.`` or ``..``.
    """

    segments = [segment for segment in (path or "").replace("\\", "/").split("/") if segment]
    for segment in segments:
        if segment in (".", ".."):
            raise ValueError(f"Invalid folder path segment in {path!r}")
    return "/".join(segments)


def folder_directory(root: Path, path: str) -> Path:
    """Directory holding the folder ``path`` under ``root``."""

    normalized = normalize_folder_path(path)
    return root.joinpath(*normalized.split("/")) if normalized else root


def user_directory(cache_dir: Path, username: Optional[str]) -> Path:
    """Per-account cache root: ``cache_dir/<username>`` unless already there."""

    if not username:
        return cache_dir
    component = sanitize_filename(username)
    if cache_dir.name == component:
        return cache_dir
    return cache_dir / component


def format_timestamp(moment: Optional[datetime]) -> Optional[str]:
    """Render ``moment`` in the metadata date format (UTC)."""

    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(PROPERTY_DATE_FORMAT)


def parse_timestamp(text: Optional[str]) -> Optional[datetime]:
    """Parse a metadata date; ``None`` when absent or unreadable."""

    if not text:
        return None
    try:
        return datetime.strptime(text.strip(), PROPERTY_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(text.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def message_directory_name(
    sent: Optional[datetime],
    subject: Optional[str],
    *,
    fallback: Optional[datetime] = None,
) -> str:
    """Build the ``YYYY-MM-DD_HH-MM_<subject>`` directory name.

    What:
      Prefixes the sanitized, truncated subject with the sent date.

    Why:
      Date-first names sort in delivery order and stay readable for people
      browsing the cache by hand.

    How:
      Uses ``sent``, else ``fallback`` (the server's internal date), else the
      current time. An empty subject becomes ``NoSubject``.

    Args:
      sent: Sent date of the message.
      subject: Subject line.
      fallback: Date used when ``sent`` is missing.

    Returns:
      Directory name (a single path component).
    """

    moment = sent or fallback or datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    prefix = moment.astimezone(timezone.utc).strftime(DIRECTORY_DATE_FORMAT)
    title = (subject or "").strip()
    label = sanitize_filename(title, MAX_SUBJECT_LENGTH) if title else NO_SUBJECT
    return f"{prefix}_{label}"


def stored_identity(directory: Path) -> Optional[str]:
    """Message-ID recorded in ``directory``; ``None`` if absent or unreadable."""

    path = directory / PROPERTIES_FILE
    if not path.exists():
        return None
    try:
        return read_properties(path).get("message.id") or None
    except OSError:
        return None


def resolve_message_directory(messages_dir: Path, base_name: str, identity: Optional[str]) -> Path:
    """Pick the directory for a message called ``base_name`` with ``identity``.

    The plain name is used when free or already owned by the same identity
    (or by an entry without one). A different identity gets a short digest
    suffix so two distinct messages never share a directory.
    """

    candidate = messages_dir / base_name
    if not candidate.exists() or identity is None:
        return candidate
    existing = stored_identity(candidate)
    if existing is None or existing == identity:
        return candidate
    return messages_dir / f"{base_name}_{short_digest(identity)}"


def list_message_directories(messages_dir: Path) -> List[Path]:
    """Message directories under ``messages_dir`` in name order."""

    if not messages_dir.is_dir():
        return []
    return sorted(
        (entry for entry in messages_dir.iterdir() if entry.is_dir() and not entry.name.startswith(".")),
        key=lambda entry: entry.name,
    )


def unique_path(target: Path) -> Path:
    """``target`` itself, or ``target_<n>`` for the first free ``n``."""

    if not target.exists():
        return target
    counter = 1
    while True:
        candidate = target.with_name(f"{target.name}_{counter}")
        if not candidate.exists():
            return candidate
        counter += 1


def archived_folder_path(root: Path, folder_path: str, *, moment: Optional[datetime] = None) -> Path:
    """Archive destination for folder ``folder_path``: ``<sanitized>_<millis>``."""

    flattened = sanitize_filename(normalize_folder_path(folder_path).replace("/", "_") or "root")
    return unique_path(root / ARCHIVED_FOLDERS_DIR / f"{flattened}_{epoch_millis(moment)}")


def relocate(source: Path, target: Path) -> Path:
    """Move ``source`` to ``target`` (parents created), returning ``target``."""

    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(target))
    return target


def archive_directory(source: Path, archive_dir: Path) -> Path:
    """Move ``source`` into ``archive_dir`` without overwriting anything."""

    return relocate(source, unique_path(archive_dir / source.name))


def directory_size(path: Path) -> int:
    """Total size in bytes of the regular files below ``path``."""

    if not path.exists():
        return 0
    return sum(entry.stat().st_size for entry in path.rglob("*") if entry.is_file())
