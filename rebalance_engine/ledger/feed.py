"""
Ledger change feed.

Fans ledger events out to subscribers and lets a consumer resume from the
last offset it acknowledged. A bounded window of events is retained; resuming
from before that window is an unrecoverable gap and the consumer must fall
back to a full re-read.
"""

import asyncio
from collections import deque
from collections.abc import AsyncIterator, Iterable

from rebalance_engine.ledger.models import LedgerEvent
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class FeedGapError(Exception):
    """The requested resume point is no longer retained."""

    def __init__(self, after_offset: int, oldest_retained: int | None):
        super().__init__(
            f"Cannot resume after offset {after_offset}: "
            f"oldest retained offset is {oldest_retained}"
        )
        self.after_offset = after_offset
        self.oldest_retained = oldest_retained


class _Subscription:
    def __init__(self, maxsize: int) -> None:
        self.queue: asyncio.Queue[LedgerEvent] = asyncio.Queue(maxsize=maxsize)
        self.lagged = False

    def reset(self) -> None:
        self.queue = asyncio.Queue(maxsize=self.queue.maxsize)
        self.lagged = False


class ChangeFeed:
    """Ordered, resumable stream of ledger events."""

    def __init__(self, retention: int = 10000, subscriber_queue_size: int = 1000) -> None:
        self._events: deque[LedgerEvent] = deque(maxlen=retention)
        self._head_offset = 0
        self._subscriber_queue_size = subscriber_queue_size
        self._subscribers: set[_Subscription] = set()

    @property
    def head_offset(self) -> int:
        """Offset of the most recent event (0 if none)."""
        return self._head_offset

    @property
    def oldest_offset(self) -> int | None:
        return self._events[0].offset if self._events else None

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def seed(self, events: Iterable[LedgerEvent]) -> None:
        """Load retained history (on ledger startup)."""
        for event in events:
            self._events.append(event)
            self._head_offset = max(self._head_offset, event.offset)

    def publish(self, event: LedgerEvent) -> None:
        """Retain an event and deliver it to every live subscriber."""
        self._events.append(event)
        self._head_offset = event.offset
        for sub in self._subscribers:
            if sub.lagged:
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.lagged = True
                logger.warning("Feed subscriber lagged at offset %d", event.offset)

    def replay(self, after_offset: int) -> list[LedgerEvent]:
        """
        Retained events with offset > after_offset.

        Raises:
            FeedGapError: Events after after_offset were already discarded
        """
        if after_offset >= self._head_offset:
            return []
        oldest = self.oldest_offset
        if oldest is None or oldest > after_offset + 1:
            raise FeedGapError(after_offset, oldest)
        return [e for e in self._events if e.offset > after_offset]

    async def stream(self, after_offset: int = 0) -> AsyncIterator[LedgerEvent]:
        """
        Yield every event after after_offset, then live events, in offset order.

        A subscriber that overflows its queue resumes from its last delivered
        offset out of the retained window; if that is gone FeedGapError is raised.
        """
        sub = _Subscription(self._subscriber_queue_size)
        self._subscribers.add(sub)
        last = after_offset
        try:
            for event in self.replay(last):
                yield event
                last = event.offset

            while True:
                if sub.lagged:
                    sub.reset()
                    for event in self.replay(last):
                        yield event
                        last = event.offset
                    continue

                event = await sub.queue.get()
                if event.offset <= last:
                    continue
                yield event
                last = event.offset
        finally:
            self._subscribers.discard(sub)
