"""Per-item outcome reporting for multi-message writes.

Append and move run a remote leg and a local leg for every message. In the
modes that tolerate remote failures the local leg still runs, so a single
success flag would hide which messages never reached the server.
:class:`BatchResult` keeps one :class:`ItemResult` per input instead.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, List, Optional

if TYPE_CHECKING:
    from .message import Message


@dataclass
class ItemResult:
    """Outcome for one message of a batch.

    ``remote_ok`` is ``None`` when no remote leg ran (offline store, message
    without a server copy).
    """

    identity: str
    remote_ok: Optional[bool] = None
    local_ok: bool = False
    error: Optional[str] = None
    message: Optional["Message"] = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.local_ok and self.remote_ok is not False and self.error is None


@dataclass
class BatchResult:
    operation: str
    items: List[ItemResult] = field(default_factory=list)

    def add(self, item: ItemResult) -> ItemResult:
        self.items.append(item)
        return item

    def __iter__(self) -> Iterator[ItemResult]:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> List[ItemResult]:
        return [item for item in self.items if item.ok]

    @property
    def failed(self) -> List[ItemResult]:
        return [item for item in self.items if not item.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        """Some work happened but not every item completed both legs."""

        return bool(self.failed) and any(item.local_ok or item.remote_ok for item in self.items)

    @property
    def messages(self) -> List["Message"]:
        return [item.message for item in self.items if item.message is not None]

    def summary(self) -> dict:
        return {
            "operation": self.operation,
            "total": len(self.items),
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
        }
