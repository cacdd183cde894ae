"""
Module: tests/unit/test_manager.py

What:
    Cover the maintenance layer: synchronisation history, cache statistics,
    archived message listing and restore, purging old messages, and backup
    and restore of folder trees.

Why:
    These operations run unattended from cron. They must respect the mode
    policy, never remove data outright, and leave a usable record when
    something fails.

How:
    Populate caches through the public engines (local copies or fetches from
    the fake backend), run the manager operation, and inspect the resulting
    directory tree.
"""

from datetime import datetime, timedelta, timezone

import pytest

from fakes import build_message
from mailcache.core.errors import FolderStateError, NotFound, PolicyViolation
from mailcache.core.events import ChangeKind
from mailcache.core.layout import ARCHIVED_FOLDERS_DIR
from mailcache.core.manager import BACKUP_PREFIX, CacheManager
from mailcache.core.message import Message


def _cache(folder, subject, *, sent=None, flags=()):
    email = build_message(subject, message_id=f"<{subject.replace(' ', '-')}@example.com>", sent=sent)
    return Message.from_email(folder, email, flags=flags)


def test_synchronize_records_history(make_store, backend):
    backend.add_message(subject="One")
    backend.add_message(subject="Two")
    store = make_store("accelerated")
    manager = CacheManager(store)

    status = manager.synchronize("INBOX")

    assert status.ok
    assert status.fetched == 2
    assert status.error is None
    assert status.duration >= timedelta(0)
    assert manager.sync_status("/INBOX/") is status
    assert not store.get_folder("INBOX").is_open


def test_synchronize_failure_is_recorded_not_raised(make_store, backend, log_stream):
    backend.fail_on = {"login"}
    manager = CacheManager(make_store("accelerated"))

    status = manager.synchronize("INBOX")

    assert not status.ok
    assert "does not exist" in status.error
    assert "sync_failed" in log_stream.getvalue()


def test_synchronize_in_offline_mode_fails(make_store):
    store = make_store("offline")
    store.get_folder("INBOX").create()

    status = CacheManager(store).synchronize("INBOX")

    assert not status.ok
    assert "not allowed in offline mode" in status.error


def test_statistics_count_folders_messages_and_archive(make_store):
    store = make_store("offline")
    notes = store.get_folder("Notes").create()
    sub = store.get_folder("Notes/Sub").create()
    _cache(notes, "Keep")
    _cache(notes, "Old").archive()
    _cache(sub, "Nested")

    stats = CacheManager(store).statistics()

    assert stats.folder_count == 2
    assert stats.message_count == 2
    assert stats.archived_message_count == 1
    assert stats.total_message_count == 3
    assert stats.total_size > 0
    assert stats.average_message_size == stats.total_size / 3
    assert set(stats.as_dict()) == {"folders", "messages", "archived_messages", "total_size"}
    assert stats.formatted_total_size.endswith("B")


def test_purge_archives_old_unflagged_messages(make_store):
    store = make_store("destructive")
    folder = store.get_folder("Old").create()
    ancient = datetime(2000, 1, 1, tzinfo=timezone.utc)
    old = _cache(folder, "Ancient", sent=ancient)
    starred = _cache(folder, "Starred", sent=ancient, flags=["\\Flagged"])
    recent = _cache(folder, "Recent", sent=datetime.now(timezone.utc) - timedelta(days=1))
    manager = CacheManager(store)

    assert manager.purge_older_than("Old", 30) == 1
    assert not old.directory.exists()
    assert recent.directory.exists() and starred.directory.exists()
    assert manager.list_archived_messages("Old") == [old.directory.name]

    assert manager.purge_older_than("Old", 30, preserve_flagged=False) == 1
    assert not starred.directory.exists()
    assert manager.purge_older_than("Old", 0) == 0


def test_purge_requires_destructive_mode(make_store):
    store = make_store("accelerated")
    store.get_folder("Old").create()
    with pytest.raises(PolicyViolation):
        CacheManager(store).purge_older_than("Old", 30)


def test_restore_archived_messages_reports_collisions(make_store):
    store = make_store("accelerated")
    folder = store.get_folder("Notes").create()
    first = _cache(folder, "First")
    second = _cache(folder, "Second")
    first_name, second_name = first.directory.name, second.directory.name
    first.archive()
    second.archive()
    (folder.messages_dir / second_name).mkdir()
    manager = CacheManager(store)

    result = manager.restore_archived_messages("Notes")

    assert len(result) == 2
    assert [item.identity for item in result.succeeded] == ["<First@example.com>"]
    assert "already exists" in result.failed[0].error
    assert (folder.messages_dir / first_name).is_dir()
    assert manager.list_archived_messages("Notes") == [second_name]
    missing = manager.restore_archived_messages("Notes", ["nope"])
    assert "not archived" in missing.failed[0].error


def test_restore_archived_messages_needs_write_mode(make_store):
    store = make_store("offline")
    store.get_folder("Notes").create()
    with pytest.raises(PolicyViolation):
        CacheManager(store).restore_archived_messages("Notes")


def test_backup_and_restore_folder(make_store, backend, tmp_path):
    """
    What:
        Restoring a folder from the latest backup archives the current tree
        under ``archived_folders/`` before copying the backup in.
    """

    store = make_store("offline")
    folder = store.get_folder("Notes").create()
    kept = _cache(folder, "Before backup")
    manager = CacheManager(store)
    backup = manager.backup(tmp_path / "backups")
    assert backup.name.startswith(BACKUP_PREFIX)
    later = _cache(folder, "After backup")
    store.set_mode("accelerated")
    events = []
    store.add_listener(events.append)

    restored = manager.restore_from_backup(tmp_path / "backups", "Notes")

    assert restored == folder.directory
    assert (restored / "messages" / kept.directory.name).is_dir()
    assert not (restored / "messages" / later.directory.name).exists()
    [archived_tree] = list((store.root / ARCHIVED_FOLDERS_DIR).iterdir())
    assert (archived_tree / "messages" / later.directory.name).is_dir()
    assert [event.kind for event in events] == [ChangeKind.FOLDER_UPDATED]


def test_restore_from_backup_errors(make_store, backend, tmp_path):
    store = make_store("offline")
    folder = store.get_folder("Notes").create()
    manager = CacheManager(store)
    manager.backup(tmp_path / "backups")
    with pytest.raises(PolicyViolation):
        manager.restore_from_backup(tmp_path / "backups", "Notes")
    store.set_mode("accelerated")

    with pytest.raises(NotFound):
        manager.restore_from_backup(tmp_path / "none", "Notes")
    with pytest.raises(NotFound):
        manager.restore_from_backup(tmp_path / "backups", "Elsewhere")
    folder.open()
    with pytest.raises(FolderStateError):
        manager.restore_from_backup(tmp_path / "backups", "Notes")
