"""Change notification bus.

What:
  Describe cache changes as :class:`ChangeEvent` values and fan them out to
  registered listeners. Messages publish to their folder, folders forward to
  their store, the store fans out to user listeners.

Why:
  User interfaces and synchronisation jobs need to react to appended,
  moved, or archived mail without polling the directory tree.

How:
  :class:`ChangeBus` keeps listeners in a tuple that is replaced under a lock
  on every registration change (copy on write). :meth:`ChangeBus.publish`
  iterates the tuple captured at fire time, so dispatch never sees a
  half-updated list and never blocks registration. A failing listener is
  logged and the remaining listeners still run.

Interfaces:
  :class:`ChangeKind`, :class:`ChangeEvent`, :class:`ChangeBus`.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from ..utils.logging import JsonLogger, get_logger


class ChangeKind(str, Enum):
    FOLDER_ADDED = "FolderAdded"
    FOLDER_UPDATED = "FolderUpdated"
    FOLDER_REMOVED = "FolderRemoved"
    MESSAGE_ADDED = "MessageAdded"
    MESSAGE_UPDATED = "MessageUpdated"
    MESSAGE_REMOVED = "MessageRemoved"
    MODE_CHANGED = "ModeChanged"
    STORE_OPENED = "StoreOpened"
    STORE_CLOSED = "StoreClosed"


@dataclass(frozen=True)
class ChangeEvent:
    """One change notification; ``payload`` carries kind-specific details."""

    source: Any
    kind: ChangeKind
    payload: Dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ChangeEvent], None]


class ChangeBus:
    """Copy-on-write listener registry with snapshot dispatch."""

    def __init__(self, *, logger: Optional[JsonLogger] = None) -> None:
        self._listeners: Tuple[Listener, ...] = ()
        self._lock = threading.Lock()
        self._logger = logger or get_logger("mailcache.events")

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners = self._listeners + (listener,)

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = tuple(item for item in self._listeners if item != listener)

    def clear(self) -> None:
        with self._lock:
            self._listeners = ()

    @property
    def listeners(self) -> Tuple[Listener, ...]:
        return self._listeners

    def publish(self, event: ChangeEvent) -> None:
        """Deliver ``event`` to the listeners registered at call time."""

        snapshot = self._listeners
        for listener in snapshot:
            try:
                listener(event)
            except Exception as exc:  # logged, never propagated to the publisher
                self._logger.error(
                    "listener_failed",
                    kind=event.kind.value,
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=repr(exc),
                )

    def emit(self, source: Any, kind: ChangeKind, **payload: Any) -> ChangeEvent:
        """Build and publish an event; returns it for convenience."""

        event = ChangeEvent(source=source, kind=kind, payload=dict(payload))
        self.publish(event)
        return event
