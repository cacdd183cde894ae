"""Change bus dispatch semantics: snapshots, error isolation and forwarding."""

import json

from fakes import build_message
from mailcache.core.events import ChangeBus, ChangeKind
from mailcache.core.message import Message
from mailcache.utils.logging import JsonLogger


def test_dispatch_uses_snapshot_taken_at_fire_time():
    bus = ChangeBus()
    seen = []

    def second(event):
        seen.append(("second", event.kind))

    def first(event):
        seen.append(("first", event.kind))
        bus.unsubscribe(second)

    bus.subscribe(first)
    bus.subscribe(second)
    bus.emit(None, ChangeKind.FOLDER_ADDED)
    bus.emit(None, ChangeKind.FOLDER_REMOVED)

    assert seen == [
        ("first", ChangeKind.FOLDER_ADDED),
        ("second", ChangeKind.FOLDER_ADDED),
        ("first", ChangeKind.FOLDER_REMOVED),
    ]


def test_subscribe_is_idempotent():
    bus = ChangeBus()
    seen = []
    bus.subscribe(seen.append)
    bus.subscribe(seen.append)
    bus.emit(None, ChangeKind.MODE_CHANGED)
    assert len(seen) == 1


def test_failing_listener_is_logged_and_others_still_run(log_stream):
    bus = ChangeBus(logger=JsonLogger(stream=log_stream, component="test"))
    seen = []

    def broken(event):
        raise RuntimeError("listener exploded")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.emit("source", ChangeKind.MESSAGE_ADDED, folder="INBOX")

    assert [event.payload for event in seen] == [{"folder": "INBOX"}]
    [record] = [json.loads(line) for line in log_stream.getvalue().splitlines()]
    assert record["msg"] == "listener_failed"
    assert record["kind"] == "MessageAdded"
    assert "listener exploded" in record["error"]


def test_folder_and_message_events_reach_store_listeners(make_store):
    store = make_store("offline")
    events = []
    store.add_listener(events.append)

    folder = store.get_folder("Notes").create()
    message = Message.from_email(folder, build_message("Heads up", message_id="<heads@example.com>"))
    message.add_extra("note.txt", "hi")
    store.set_mode("accelerated")
    store.remove_listener(events.append)
    store.set_mode("offline")

    kinds = [event.kind for event in events]
    assert kinds == [
        ChangeKind.FOLDER_ADDED,
        ChangeKind.MESSAGE_ADDED,
        ChangeKind.MESSAGE_UPDATED,
        ChangeKind.MODE_CHANGED,
    ]
    assert events[1].source is message
    assert events[3].payload == {"previous": "offline", "mode": "accelerated"}
