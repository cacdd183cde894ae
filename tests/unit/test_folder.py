"""
Module: tests/unit/test_folder.py

What:
    Drive the folder engine through the behaviours each operation mode
    promises: fetch on miss, cache-first reads, refresh overwrites, dual
    writes with per-item results, expunge into the archive, moves (including
    Gmail label removal), folder listing, structure changes and counts.

Why:
    Folders are where the mode policy turns into traffic. A regression here
    either hammers the server in accelerated mode or silently drops data in
    destructive mode.

How:
    Every test uses the in-memory IMAP backend from ``fakes`` and inspects
    both the cache directory tree and the backend's recorded calls.
"""

import re
from datetime import datetime, timezone

import pytest

from fakes import build_message
from mailcache.core import flags as flagset
from mailcache.core.errors import Collision, FolderStateError, NotFound, PolicyViolation, RemoteUnavailable
from mailcache.core.folder import READ_ONLY
from mailcache.core.layout import ARCHIVED_FOLDERS_DIR, CONTENT_TEXT_FILE, FLAGS_FILE
from mailcache.core.message import Message
from mailcache.core.search import SearchQuery
from mailcache.utils.ids import is_synthesized

RECEIVED = datetime(2024, 5, 6, 7, 8, tzinfo=timezone.utc)


def _seed(make_store, backend, count=1, **kwargs):
    """Cache ``count`` server messages through an accelerated store."""

    for index in range(count):
        backend.add_message(
            subject=kwargs.get("subject", f"Message {index}"),
            message_id=f"<seed-{index}@example.com>",
            sent=datetime(2024, 1, 1 + index, 9, 0, tzinfo=timezone.utc),
        )
    folder = make_store("accelerated").get_folder("INBOX").open()
    return folder.get_messages()


def test_fetch_on_miss_synthesizes_identity_and_layout(make_store, backend, tmp_path):
    """
    What:
        An accelerated store with an empty cache fetches a message without a
        Message-ID and caches it under ``<date>_<subject>``.

    Why:
        This is the first thing every new installation does; the directory
        name and identity must be deterministic from the first fetch on.
    """

    backend.add_message(subject="Hello", internaldate=RECEIVED)
    store = make_store("accelerated")
    folder = store.get_folder("INBOX").open()

    [message] = folder.get_messages()

    assert re.match(r"^<\d+\.\d+@mailcache\.generated>$", message.message_id)
    expected = tmp_path / "cache" / "alice" / "INBOX" / "messages" / "2024-05-06_07-08_Hello"
    assert message.directory == expected
    assert (expected / CONTENT_TEXT_FILE).read_text(encoding="utf-8").strip() == "Hi there"
    assert message.subject == "Hello"


def test_accelerated_reads_cache_without_contacting_server(make_store, backend):
    _seed(make_store, backend, count=2)
    backend.calls.clear()
    backend.fail_on = {"login"}

    store = make_store("accelerated")
    folder = store.get_folder("INBOX").open()
    messages = folder.get_messages()

    assert [message.subject for message in messages] == ["Message 0", "Message 1"]
    assert folder.message_count == 2
    assert folder.unread_count == 2
    assert backend.calls == []


def test_refresh_overwrites_cached_entry_but_keeps_extras(make_store, backend):
    uid = backend.add_message(subject="Report", message_id="<report@example.com>", body="draft one", sent=RECEIVED)
    [cached] = make_store("accelerated").get_folder("INBOX").open().get_messages()
    cached.add_extra("notes.md", "keep me")
    backend.replace_message(
        "INBOX", uid, build_message("Report", message_id="<report@example.com>", body="final version", sent=RECEIVED)
    )

    store = make_store("refresh")
    folder = store.get_folder("INBOX").open()
    [refreshed] = folder.get_messages()

    assert refreshed.directory == cached.directory
    assert (refreshed.directory / CONTENT_TEXT_FILE).read_text(encoding="utf-8").strip() == "final version"
    assert refreshed.read_extra("notes.md") == "keep me"


def test_online_keeps_existing_entry(make_store, backend):
    uid = backend.add_message(subject="Report", message_id="<report@example.com>", body="draft one", sent=RECEIVED)
    [cached] = make_store("accelerated").get_folder("INBOX").open().get_messages()
    backend.replace_message(
        "INBOX", uid, build_message("Report", message_id="<report@example.com>", body="final version", sent=RECEIVED)
    )

    store = make_store("online")
    folder = store.get_folder("INBOX").open()
    folder.get_messages()
    assert (cached.directory / CONTENT_TEXT_FILE).read_text(encoding="utf-8").strip() == "draft one"


def test_message_ranges_are_one_based(make_store, backend):
    messages = _seed(make_store, backend, count=3)
    folder = messages[0].folder

    assert [m.subject for m in folder.get_messages(2, 3)] == ["Message 1", "Message 2"]
    assert folder.get_message(1).subject == "Message 0"
    with pytest.raises(NotFound):
        folder.get_messages(0, 2)
    with pytest.raises(NotFound):
        folder.get_message(4)


def test_destructive_expunge_archives_deleted_messages(make_store, backend, tmp_path):
    for index in range(2):
        backend.add_message(subject=f"Junk {index}", message_id=f"<junk-{index}@example.com>", flags={b"\\Deleted"})
    backend.add_message(subject="Keep", message_id="<keep@example.com>")

    store = make_store("destructive")
    folder = store.get_folder("INBOX").open()
    folder.get_messages()
    archived = folder.expunge()

    assert sorted(message.directory.name.split("_", 2)[2] for message in archived) == ["Junk 0", "Junk 1"]
    assert all(message.archived for message in archived)
    assert [entry.name.split("_", 2)[2] for entry in folder.messages_dir.iterdir()] == ["Keep"]
    assert len(list(folder.archived_dir.iterdir())) == 2
    assert [str(m["Subject"]) for m in backend.messages("INBOX")] == ["Keep"]


def test_expunge_outside_destructive_mode_is_refused(make_store, backend):
    messages = _seed(make_store, backend)
    with pytest.raises(PolicyViolation):
        messages[0].folder.expunge()


def test_close_with_expunge_is_skipped_when_mode_cannot_delete(make_store, backend, log_stream):
    messages = _seed(make_store, backend)
    folder = messages[0].folder
    folder.close(expunge=True)
    assert not folder.is_open
    assert len(list(folder.messages_dir.iterdir())) == 1
    assert "expunge_skipped" in log_stream.getvalue()


def test_folder_delete_archives_cached_tree(make_store, backend, tmp_path):
    backend.folders["Old"] = {}
    backend.add_message("Old", subject="Ancient", message_id="<ancient@example.com>")
    store = make_store("destructive")
    old = store.get_folder("Old").open()
    [message] = old.get_messages()
    old.close()

    archive = old.delete()

    assert "Old" not in backend.folders
    assert not old.directory.exists()
    assert archive.parent == store.root / ARCHIVED_FOLDERS_DIR
    assert (archive / "messages" / message.directory.name / CONTENT_TEXT_FILE).exists()


def test_folder_delete_requires_destructive_mode_and_closed_folder(make_store, backend):
    backend.folders["Old"] = {}
    store = make_store("accelerated")
    old = store.get_folder("Old").create()
    with pytest.raises(PolicyViolation):
        old.delete()
    assert old.directory.exists()
    assert "Old" in backend.folders

    store.set_mode("destructive")
    old.open()
    with pytest.raises(FolderStateError):
        old.delete()


def test_rename_moves_server_folder_and_cache(make_store, backend):
    backend.folders["Drafts"] = {}
    store = make_store("accelerated")
    drafts = store.get_folder("Drafts").create()
    drafts.add_extra("index.json", "{}")

    renamed = drafts.rename_to("Outbox")

    assert "Outbox" in backend.folders and "Drafts" not in backend.folders
    assert renamed.path == "Outbox"
    assert renamed.read_extra("index.json") == "{}"
    assert not drafts.directory.exists()
    with pytest.raises(Collision):
        store.get_folder("Other").create().rename_to("Outbox")


def _unreachable_after_create(make_store, backend, path):
    backend.folders[path] = {}
    store = make_store("destructive")
    folder = store.get_folder(path).create()
    store.connection.drop()
    backend.fail_on = {"login"}
    return store, folder


def test_folder_delete_keeps_cache_when_server_is_unreachable(make_store, backend):
    """
    What:
        A destructive store that cannot log in refuses to archive the folder.

    Why:
        The server still has the folder; archiving only the cached tree would
        let the next listing heal it back as an empty folder.
    """

    store, projects = _unreachable_after_create(make_store, backend, "Projects")

    with pytest.raises(RemoteUnavailable):
        projects.delete()

    assert projects.directory.is_dir()
    assert "Projects" in backend.folders
    assert not (store.root / ARCHIVED_FOLDERS_DIR).exists()


def test_rename_keeps_cache_when_server_is_unreachable(make_store, backend):
    store, drafts = _unreachable_after_create(make_store, backend, "Drafts")

    with pytest.raises(RemoteUnavailable):
        drafts.rename_to("Outbox")

    assert drafts.directory.is_dir()
    assert not store.get_folder("Outbox").directory.exists()
    assert "Drafts" in backend.folders and "Outbox" not in backend.folders


def test_create_needs_the_server_in_writing_modes(make_store, backend):
    backend.fail_on = {"login"}
    store = make_store("accelerated")

    with pytest.raises(RemoteUnavailable):
        store.get_folder("Fresh").create()

    assert not store.get_folder("Fresh").directory.exists()
    assert make_store("offline").get_folder("Fresh").create().directory.is_dir()


def test_move_isolates_name_collisions(make_store, backend):
    backend.folders["Archive"] = {}
    messages = _seed(make_store, backend, count=2)
    inbox = messages[0].folder
    archive = inbox.store.get_folder("Archive")
    (archive.messages_dir / messages[0].directory.name).mkdir(parents=True)
    first_dir = messages[0].directory

    result = inbox.move_messages(messages, archive)

    assert len(result) == 2
    assert result.partial
    [failed] = result.failed
    assert failed.identity == "<seed-0@example.com>"
    assert "already exists" in failed.error
    assert first_dir.exists()
    assert (archive.messages_dir / messages[1].directory.name / CONTENT_TEXT_FILE).exists()
    assert messages[1].folder is archive
    assert len(backend.folders["Archive"]) == 2
    assert all(b"\\Deleted" in record.flags for record in backend.folders["INBOX"].values())


def test_move_on_gmail_removes_the_inbox_label(make_store, backend):
    backend.folders["Archive"] = {}
    backend.add_message(subject="Label", message_id="<label@example.com>")
    store = make_store("accelerated", host="imap.gmail.com")
    inbox = store.get_folder("INBOX").open()
    [message] = inbox.get_messages()

    result = inbox.move_messages([message], "Archive")

    assert result.ok
    assert "remove_gmail_labels" in backend.calls
    assert backend.folders["INBOX"] == {}
    assert len(backend.folders["Archive"]) == 1


def test_move_rejects_messages_from_other_folders(make_store, backend):
    backend.folders["Archive"] = {}
    backend.folders["Other"] = {}
    [message] = _seed(make_store, backend)
    other = message.folder.store.get_folder("Other").open()

    result = other.move_messages([message], "Archive")

    assert not result.ok
    assert "not 'Other'" in result.failed[0].error
    assert message.directory.exists()
    with pytest.raises(ValueError):
        message.folder.move_messages([message], "INBOX")


def test_move_of_cache_loaded_messages_reaches_the_server(make_store, backend):
    """
    What:
        Messages read back from the cache by a fresh store carry no UID; the
        move still copies them on the server before relocating the cache.
    """

    backend.folders["Archive"] = {}
    _seed(make_store, backend)
    inbox = make_store("accelerated").get_folder("INBOX").open()
    [message] = inbox.get_messages()
    assert message.remote is None

    result = inbox.move_messages([message], "Archive")

    [item] = result
    assert result.ok
    assert item.remote_ok is True and item.local_ok
    assert len(backend.folders["Archive"]) == 1
    assert all(b"\\Deleted" in record.flags for record in backend.folders["INBOX"].values())


def test_online_move_without_server_copy_leaves_message_in_place(make_store, backend, log_stream):
    backend.folders["Archive"] = {}
    [seeded] = _seed(make_store, backend)
    backend.folders["INBOX"].clear()
    inbox = make_store("online").get_folder("INBOX").open()
    message = Message.from_directory(inbox, seeded.directory)

    result = inbox.move_messages([message], "Archive")

    [item] = result
    assert not result.ok
    assert item.remote_ok is False and not item.local_ok
    assert "not on the server" in item.error
    assert message.directory.parent == inbox.messages_dir
    assert backend.folders["Archive"] == {}
    assert "move_remote_missing" in log_stream.getvalue()


def test_accelerated_move_without_server_copy_is_partial(make_store, backend):
    backend.folders["Archive"] = {}
    _seed(make_store, backend)
    backend.folders["INBOX"].clear()
    store = make_store("accelerated")
    inbox = store.get_folder("INBOX").open()
    [message] = inbox.get_messages()
    name = message.directory.name

    result = inbox.move_messages([message], "Archive")

    [item] = result
    assert result.partial
    assert item.local_ok and item.remote_ok is False
    assert "no server copy" in item.error
    assert (store.get_folder("Archive").messages_dir / name).is_dir()


def test_online_append_caches_locally_when_read_back_fails(make_store, backend, log_stream):
    """
    What:
        Once the server accepted an append, a failing read-back still leaves
        the message in the cache and records the error on the item.
    """

    store = make_store("online")
    folder = store.get_folder("INBOX").open()
    backend.fail_on = {"search"}

    [item] = folder.append_messages([build_message("Kept", message_id="<kept@example.com>")])

    assert item.remote_ok is True and item.local_ok
    assert "read-back failed" in item.error
    assert len(backend.messages("INBOX")) == 1
    assert (item.message.directory / CONTENT_TEXT_FILE).exists()
    assert "append_read_back_failed" in log_stream.getvalue()


def test_appended_messages_without_identity_keep_their_server_copy(make_store, backend):
    """
    What:
        Two appended messages sharing subject and date get distinct
        synthesized identities that survive a reopen, and a flag change on the
        second one lands on its own server copy.

    Why:
        Falling back to the subject and date would bind both cache entries to
        the first server message.
    """

    sent = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    folder = make_store("accelerated").get_folder("INBOX").open()
    result = folder.append_messages([build_message("Same", sent=sent, body=f"copy {n}") for n in range(2)])
    identities = [item.identity for item in result]
    directories = {item.message.directory for item in result}
    assert all(is_synthesized(identity) for identity in identities)

    inbox = make_store("accelerated").get_folder("INBOX").open()
    cached = {message.message_id: message for message in inbox.get_messages()}
    assert sorted(cached) == sorted(identities)
    assert {message.directory for message in cached.values()} == directories

    cached[identities[1]].set_flag("FLAGGED")

    uid_by_identity = {record.header("Message-ID"): uid for uid, record in backend.folders["INBOX"].items()}
    assert b"\\Flagged" in backend.flags_of("INBOX", uid_by_identity[identities[1]])
    assert b"\\Flagged" not in backend.flags_of("INBOX", uid_by_identity[identities[0]])


def test_list_merges_cache_and_server(make_store, backend):
    backend.folders["Projects"] = {}
    store = make_store("accelerated")
    store.get_folder("Local/Sub").create()

    top = [folder.path for folder in store.default_folder().list("%")]
    everything = [folder.path for folder in store.list_folders("*")]

    assert top == ["INBOX", "Local", "Projects"]
    assert "Local/Sub" in everything
    assert store.get_folder("Projects").directory.is_dir()
    assert ARCHIVED_FOLDERS_DIR not in everything


def test_offline_list_only_sees_cache(make_store, backend):
    backend.folders["Projects"] = {}
    store = make_store("offline")
    store.get_folder("Local").create()
    assert [folder.path for folder in store.list_folders("*")] == ["Local"]
    assert backend.calls == []


def test_exists_self_heals_from_server(make_store, backend):
    events = []
    backend.folders["Remote"] = {}
    store = make_store("accelerated")
    store.add_listener(events.append)
    folder = store.get_folder("Remote")

    assert folder.exists()
    assert folder.messages_dir.is_dir()
    assert [event.payload.get("origin") for event in events] == ["remote"]
    assert not store.get_folder("Nowhere").exists()
    with pytest.raises(NotFound):
        store.get_folder("Nowhere").open()


def test_offline_exists_never_asks_server(make_store, backend):
    backend.folders["Remote"] = {}
    store = make_store("offline")
    assert not store.get_folder("Remote").exists()
    assert backend.calls == []


def test_counts_follow_flags_and_appends(make_store, backend):
    messages = _seed(make_store, backend, count=2)
    folder = messages[0].folder
    messages[0].set_flag("SEEN")

    assert folder.message_count == 2
    assert folder.unread_count == 1
    folder.append_messages([build_message("Third", message_id="<third@example.com>")])
    assert folder.message_count == 3
    assert folder.unread_count == 2


def test_online_counts_come_from_server(make_store, backend):
    backend.add_message(subject="One", flags={b"\\Seen"})
    backend.add_message(subject="Two")
    store = make_store("online")
    folder = store.get_folder("INBOX").open(READ_ONLY)

    assert folder.message_count == 2
    assert folder.unread_count == 1
    assert "folder_status" in backend.calls


def test_online_append_reads_back_server_copy(make_store, backend):
    store = make_store("online")
    folder = store.get_folder("INBOX").open()

    result = folder.append_messages([build_message("Fresh")])

    assert result.ok
    [item] = result
    assert item.remote_ok and item.local_ok
    assert re.match(r"^<\d+\.0@mailcache\.generated>$", item.identity)
    [stored] = backend.messages("INBOX")
    assert stored["Message-ID"] == item.identity
    assert item.message.uid is not None
    assert item.message.message_id == item.identity


def test_online_append_failure_raises(make_store, backend):
    store = make_store("online")
    folder = store.get_folder("INBOX").open()
    backend.fail_on = {"append"}

    with pytest.raises(RemoteUnavailable):
        folder.append_messages([build_message("Lost", message_id="<lost@example.com>")])
    assert list(folder.messages_dir.iterdir()) == []


def test_accelerated_append_failure_is_reported_per_item(make_store, backend):
    store = make_store("accelerated")
    folder = store.get_folder("INBOX").open()
    backend.fail_on = {"append"}

    result = folder.append_messages(
        [build_message("First", message_id="<a@example.com>"), build_message("Second", message_id="<b@example.com>")]
    )

    assert not result.ok
    assert result.partial
    assert result.summary() == {"operation": "append", "total": 2, "succeeded": 0, "failed": 2}
    assert all(item.remote_ok is False and item.local_ok for item in result)
    assert len(list(folder.messages_dir.iterdir())) == 2
    assert backend.messages("INBOX") == []


def test_accelerated_append_without_server_caches_locally(make_store, backend):
    store = make_store("accelerated")
    folder = store.get_folder("Local").create().open()
    store.connection.drop()
    backend.fail_on = {"login"}

    result = folder.append_messages([build_message("Offline draft", message_id="<draft@example.com>")])

    [item] = result
    assert item.local_ok and item.remote_ok is False
    assert "connect failed" in item.error
    assert item.message.subject == "Offline draft"


def test_search_prefers_cache_then_server(make_store, backend):
    [cached] = _seed(make_store, backend, subject="Invoice March")
    folder = cached.folder
    backend.add_message(subject="Invoice April", message_id="<april@example.com>")
    backend.calls.clear()

    assert [m.subject for m in folder.search("march")] == ["Invoice March"]
    assert backend.calls == []

    found = folder.search(SearchQuery(subject="April"))
    assert [m.subject for m in found] == ["Invoice April"]
    assert found[0].directory.exists()


def test_online_search_falls_back_to_cache(make_store, backend):
    _seed(make_store, backend, subject="Invoice March")
    store = make_store("online")
    folder = store.get_folder("INBOX").open()
    backend.fail_on = {"search"}

    assert [m.subject for m in folder.search(SearchQuery.by_subject("invoice"))] == ["Invoice March"]


def test_search_filters_by_flags_and_year(make_store, backend):
    messages = _seed(make_store, backend, count=2)
    folder = messages[0].folder
    messages[1].set_flag("SEEN")
    backend.calls.clear()

    assert [m.subject for m in folder.search(SearchQuery(unseen=True, year=2024))] == ["Message 0"]
    assert folder.search(SearchQuery(year=1999)) == []
    assert "search" in backend.calls


def test_synchronize_counts_fetched_messages(make_store, backend):
    backend.add_message(subject="One")
    backend.add_message(subject="Two")
    folder = make_store("accelerated").get_folder("INBOX").open()
    assert folder.synchronize() == 2

    offline = make_store("offline").get_folder("INBOX").open()
    with pytest.raises(PolicyViolation):
        offline.synchronize()


def test_operations_require_open_folder(make_store, backend):
    store = make_store("offline")
    folder = store.get_folder("Local").create()
    with pytest.raises(FolderStateError):
        folder.get_messages()
    with folder:
        assert folder.is_open
        with pytest.raises(FolderStateError):
            folder.open()
    assert not folder.is_open


def test_local_deleted_flag_is_archived_even_without_server(make_store, backend):
    store = make_store("destructive")
    folder = store.get_folder("Local").create().open()
    store.connection.drop()
    backend.fail_on = {"login"}
    folder.append_messages([build_message("Gone", message_id="<gone@example.com>")])
    [message] = folder.get_messages()
    message.set_flag("DELETED")
    assert flagset.DELETED in flagset.read_flags(message.directory / FLAGS_FILE)

    [archived] = folder.expunge()
    assert archived.directory.parent == folder.archived_dir
