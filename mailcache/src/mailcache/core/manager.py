"""Cache maintenance: synchronisation history, statistics, archives and backups.

What:
  Operator-level housekeeping on top of a :class:`~mailcache.core.store.Store`:
  synchronise a folder and remember how it went, report cache statistics,
  list and restore archived messages, archive old messages, and back up or
  restore folder trees.

Why:
  These jobs run from cron or the CLI and must leave a record (sync history,
  log lines) while respecting the same mode policy and the same
  never-delete rule as the engines.

How:
  Every operation works through the store's folders or directly on the cache
  layout; purges and restores relocate directories, backups copy them with
  :func:`shutil.copytree`.

Interfaces:
  :class:`CacheManager`, :class:`SyncStatus`, :class:`CacheStatistics`.

Invariants & Safety:
  - Purging archives messages into ``archived_messages/``; nothing is removed.
  - Restoring a folder from backup first archives the current tree under
    ``archived_folders/``.
"""
from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..utils.ids import epoch_millis
from ..utils.properties import read_properties
from . import flags as flagset
from .errors import Collision, FolderStateError, MailCacheError, NotFound
from .events import ChangeKind
from .folder import READ_ONLY, Folder
from .layout import (
    ARCHIVED_FOLDERS_DIR,
    FLAGS_FILE,
    PROPERTIES_FILE,
    archived_folder_path,
    directory_size,
    folder_directory,
    list_message_directories,
    normalize_folder_path,
    parse_timestamp,
    relocate,
    stored_identity,
)
from .message import KEY_SENT_DATE, Message
from .modes import require_delete, require_write
from .results import BatchResult, ItemResult
from .store import Store

BACKUP_PREFIX = "cache_backup_"


def _human_size(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} GB"


@dataclass
class SyncStatus:
    """Outcome of one folder synchronisation."""

    folder: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    fetched: int = 0
    ok: bool = False
    error: Optional[str] = None

    @property
    def duration(self) -> timedelta:
        return (self.ended_at or self.started_at) - self.started_at


@dataclass
class CacheStatistics:
    folder_count: int = 0
    message_count: int = 0
    archived_message_count: int = 0
    total_size: int = 0

    @property
    def total_message_count(self) -> int:
        return self.message_count + self.archived_message_count

    @property
    def average_message_size(self) -> float:
        total = self.total_message_count
        return self.total_size / total if total else 0.0

    @property
    def formatted_total_size(self) -> str:
        return _human_size(self.total_size)

    def as_dict(self) -> Dict[str, object]:
        return {
            "folders": self.folder_count,
            "messages": self.message_count,
            "archived_messages": self.archived_message_count,
            "total_size": self.formatted_total_size,
        }


@dataclass
class CacheManager:
    """Maintenance operations for one store."""

    store: Store
    history: Dict[str, SyncStatus] = field(default_factory=dict)

    @property
    def logger(self):
        return self.store.logger

    def _folder(self, path: str) -> Folder:
        return self.store.get_folder(path)

    # Synchronisation -----------------------------------------------------
    def synchronize(self, path: str) -> SyncStatus:
        """Fetch folder ``path`` from the server into the cache.

        Failures (offline mode, unknown folder, unreachable server) are
        recorded in the returned status and logged rather than raised.
        """

        status = SyncStatus(folder=normalize_folder_path(path), started_at=datetime.now(timezone.utc))
        folder = self._folder(path)
        opened_here = not folder.is_open
        try:
            if opened_here:
                folder.open(READ_ONLY)
            status.fetched = folder.synchronize()
            status.ok = True
        except MailCacheError as exc:
            status.error = str(exc)
            self.logger.error("sync_failed", folder=status.folder, error=status.error)
        finally:
            if opened_here and folder.is_open:
                folder.close()
            status.ended_at = datetime.now(timezone.utc)
        self.history[status.folder] = status
        if status.ok:
            self.logger.info("sync_complete", folder=status.folder, fetched=status.fetched)
        return status

    def sync_status(self, path: str) -> Optional[SyncStatus]:
        return self.history.get(normalize_folder_path(path))

    # Statistics ----------------------------------------------------------
    def statistics(self) -> CacheStatistics:
        """Count cached folders and messages and measure the cache on disk."""

        stats = CacheStatistics()
        root = self.store.default_folder()
        paths = [""] + root.cached_subfolders()
        for path in paths:
            folder = self._folder(path)
            if path:
                stats.folder_count += 1
            stats.message_count += len(list_message_directories(folder.messages_dir))
            stats.archived_message_count += len(list_message_directories(folder.archived_dir))
        stats.total_size = sum(
            directory_size(entry)
            for entry in (self.store.root.iterdir() if self.store.root.is_dir() else [])
            if entry.name != ARCHIVED_FOLDERS_DIR
        )
        return stats

    # Archived messages ---------------------------------------------------
    def list_archived_messages(self, path: str) -> List[str]:
        return [directory.name for directory in list_message_directories(self._folder(path).archived_dir)]

    def restore_archived_messages(self, path: str, names: Optional[List[str]] = None) -> BatchResult:
        """Move archived messages back into ``messages/``.

        Args:
          path: Folder path.
          names: Archived directory names; all of them when omitted.

        Raises:
          PolicyViolation: When the mode does not write.
        """

        require_write(self.store.mode, "restore archived messages")
        folder = self._folder(path)
        wanted = names if names is not None else self.list_archived_messages(path)
        result = BatchResult("restore")
        for name in wanted:
            source = folder.archived_dir / name
            outcome = result.add(ItemResult(stored_identity(source) or name))
            target = folder.messages_dir / name
            if not source.is_dir():
                outcome.error = str(NotFound(f"{name!r} is not archived in {folder.path!r}"))
                continue
            if target.exists():
                outcome.error = str(Collision(f"{folder.path}/{name} already exists"))
                continue
            relocate(source, target)
            outcome.local_ok = True
            outcome.message = Message.from_directory(folder, target)
            folder.bus.emit(outcome.message, ChangeKind.MESSAGE_ADDED, folder=folder.path, directory=name)
        folder.invalidate_counts()
        self.logger.info("archive_restored", folder=folder.path, **result.summary())
        return result

    def purge_older_than(self, path: str, days: int, *, preserve_flagged: bool = True) -> int:
        """Archive cached messages sent more than ``days`` days ago.

        Raises:
          PolicyViolation: Outside destructive mode.
        """

        require_delete(self.store.mode, "purge messages")
        if days <= 0:
            return 0
        folder = self._folder(path)
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        archived = 0
        for directory in list_message_directories(folder.messages_dir):
            if preserve_flagged and flagset.FLAGGED in flagset.read_flags(directory / FLAGS_FILE):
                continue
            properties = directory / PROPERTIES_FILE
            sent = parse_timestamp(read_properties(properties).get(KEY_SENT_DATE)) if properties.exists() else None
            if sent is None or sent >= cutoff:
                continue
            message = Message.from_directory(folder, directory)
            location = message.archive()
            archived += 1
            folder.bus.emit(message, ChangeKind.MESSAGE_REMOVED, folder=folder.path, archive=str(location))
        folder.invalidate_counts()
        self.logger.info("purge_complete", folder=folder.path, days=days, archived=archived)
        return archived

    # Backups -------------------------------------------------------------
    def backup(self, target_dir: Union[str, Path]) -> Path:
        """Copy the whole cache into ``<target_dir>/cache_backup_<millis>``."""

        destination = Path(target_dir) / f"{BACKUP_PREFIX}{epoch_millis()}"
        destination.mkdir(parents=True)
        if self.store.root.is_dir():
            for entry in self.store.root.iterdir():
                if entry.is_dir():
                    shutil.copytree(entry, destination / entry.name)
        self.logger.info("cache_backed_up", backup=str(destination))
        return destination

    def restore_from_backup(self, backup_dir: Union[str, Path], path: str) -> Path:
        """Replace folder ``path`` with its copy from the latest backup.

        Raises:
          NotFound: When no backup holds the folder.
          FolderStateError: When the folder is open.
          PolicyViolation: When the mode does not write.
        """

        require_write(self.store.mode, "restore from backup")
        backups = sorted(
            (entry for entry in Path(backup_dir).iterdir() if entry.is_dir() and entry.name.startswith(BACKUP_PREFIX)),
            key=lambda entry: entry.name,
            reverse=True,
        ) if Path(backup_dir).is_dir() else []
        if not backups:
            raise NotFound(f"no {BACKUP_PREFIX}* directory in {backup_dir}")
        normalized = normalize_folder_path(path)
        source = folder_directory(backups[0], normalized)
        if not source.is_dir():
            raise NotFound(f"folder {normalized!r} is not in backup {backups[0].name}")
        folder = self._folder(normalized)
        if folder.is_open:
            raise FolderStateError(f"restore requires folder {normalized!r} to be closed")
        destination = folder_directory(self.store.root, normalized)
        if destination.exists():
            archived = relocate(destination, archived_folder_path(self.store.root, normalized))
            self.logger.info("folder_archived", folder=normalized, archive=str(archived))
        shutil.copytree(source, destination)
        self.store._forget_folder(normalized)
        self.logger.info("folder_restored", folder=normalized, backup=backups[0].name)
        self.store.emit(self, ChangeKind.FOLDER_UPDATED, folder=normalized, restored_from=backups[0].name)
        return destination
