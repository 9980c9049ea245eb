"""Prioritized, de-duplicated delivery queue."""

import itertools
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared_types import NoticeKind, PackType

from .channels import Notice

DATE_PRIORITY = 3
ZEN_PRIORITY = 2
DEFAULT_PRIORITY = 1
# Subtracted per delivery for the same pack within the recent window
RECENT_PENALTY = 0.5


@dataclass
class QueuedDelivery:
    notice: Notice
    pack_type: PackType
    zen_mode: bool
    seq: int
    enqueued_at: datetime = field(default_factory=datetime.now)

    @property
    def key(self) -> tuple[str, str]:
        return delivery_key(self.notice)


def delivery_key(notice: Notice) -> tuple[str, str]:
    """(pack, prompt) identity; missed notices dedupe per pack."""
    if notice.kind == NoticeKind.MISSED:
        return (notice.pack_id, "missed")
    return (notice.pack_id, notice.prompt.id if notice.prompt else "")


def base_priority(pack_type: PackType, zen_mode: bool) -> int:
    if pack_type == PackType.DATE:
        return DATE_PRIORITY
    if zen_mode:
        return ZEN_PRIORITY
    return DEFAULT_PRIORITY


class DeliveryQueue:
    """Pending deliveries, popped highest priority first (FIFO on ties)."""

    def __init__(self, recent_window_minutes: float = 60.0, clock: Optional[Callable[[], datetime]] = None):
        self.recent_window = timedelta(minutes=recent_window_minutes)
        self._clock = clock or datetime.now
        self._items: dict[tuple[str, str], QueuedDelivery] = {}
        self._recent: dict[str, deque[datetime]] = {}
        self._seq = itertools.count()

    def enqueue(self, notice: Notice, pack_type: PackType, zen_mode: bool = False) -> bool:
        """Add a delivery. False if the same (pack, prompt) is already queued."""
        key = delivery_key(notice)
        if key in self._items:
            return False
        self._items[key] = QueuedDelivery(
            notice=notice,
            pack_type=pack_type,
            zen_mode=zen_mode,
            seq=next(self._seq),
            enqueued_at=self._clock(),
        )
        return True

    def recent_deliveries(self, pack_id: str) -> int:
        history = self._recent.get(pack_id)
        if not history:
            return 0
        cutoff = self._clock() - self.recent_window
        while history and history[0] < cutoff:
            history.popleft()
        return len(history)

    def priority(self, item: QueuedDelivery) -> float:
        return base_priority(item.pack_type, item.zen_mode) - RECENT_PENALTY * self.recent_deliveries(
            item.notice.pack_id
        )

    def pop_next(self) -> Optional[QueuedDelivery]:
        if not self._items:
            return None
        best = max(self._items.values(), key=lambda item: (self.priority(item), -item.seq))
        del self._items[best.key]
        return best

    def record_delivery(self, pack_id: str) -> None:
        self._recent.setdefault(pack_id, deque()).append(self._clock())

    def discard_pack(self, pack_id: str) -> int:
        stale = [key for key in self._items if key[0] == pack_id]
        for key in stale:
            del self._items[key]
        return len(stale)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
