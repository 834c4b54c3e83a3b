"""
Operator event bus.

In-process pub/sub for notifications an operator cares about: cycle
progress, rebalance outcomes, permission drift and circuit breaker changes.
The most recent events are kept for the /events endpoint.

Ledger state changes do not travel here; they have their own sequenced
change feed (rebalance_engine.ledger.feed).
"""

import asyncio
from collections import deque
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class EventType(str, Enum):
    """Operator-facing event types."""

    # Engine
    ENGINE_STARTED = "engine.started"
    ENGINE_STOPPED = "engine.stopped"

    # Orchestrator cycles
    CYCLE_STARTED = "cycle.started"
    CYCLE_COMPLETED = "cycle.completed"
    CYCLE_SKIPPED = "cycle.skipped"

    # Per-account outcomes
    REBALANCE_PROPOSED = "rebalance.proposed"
    REBALANCE_CONFIRMED = "rebalance.confirmed"
    REBALANCE_FAILED = "rebalance.failed"

    # Mirror
    PERMISSION_DRIFT = "permission.drift"
    MIRROR_RESYNCED = "mirror.resynced"
    MIRROR_DRIFT = "mirror.drift"

    # Circuit breaker
    CIRCUIT_BREAKER_TRIPPED = "safety.circuit_breaker_tripped"
    CIRCUIT_BREAKER_CLEARED = "safety.circuit_breaker_cleared"
    CIRCUIT_BREAKER_ALERT = "safety.circuit_breaker_alert"

    @property
    def is_safety(self) -> bool:
        """Events an operator must see even when nothing else is watching."""
        return self in _SAFETY_EVENTS


_SAFETY_EVENTS = frozenset({
    EventType.PERMISSION_DRIFT,
    EventType.CIRCUIT_BREAKER_TRIPPED,
    EventType.CIRCUIT_BREAKER_CLEARED,
    EventType.CIRCUIT_BREAKER_ALERT,
})


@dataclass
class Event:
    """One notification with its payload and the cycle that produced it."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    cycle_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "cycle_id": self.cycle_id,
            "data": self.data,
        }


EventHandler = Callable[[Event], Coroutine[Any, Any, None]]


class EventBus:
    """
    Async fan-out of events to handlers.

    A handler subscribes to one type, several types, or everything (None).
    A failing handler is logged and does not affect the publisher or other
    handlers.
    """

    def __init__(self, history_size: int = 500) -> None:
        self._handlers: dict[EventType, list[EventHandler]] = {}
        self._wildcard_handlers: list[EventHandler] = []
        self._history: deque[Event] = deque(maxlen=history_size)
        self._published = 0
        self._handler_errors = 0

    async def subscribe(
        self,
        event_types: EventType | Iterable[EventType] | None,
        handler: EventHandler,
    ) -> None:
        if event_types is None:
            self._wildcard_handlers = [*self._wildcard_handlers, handler]
            return
        if isinstance(event_types, EventType):
            event_types = [event_types]
        for event_type in event_types:
            self._handlers[event_type] = [*self._handlers.get(event_type, []), handler]

    async def unsubscribe(
        self,
        event_types: EventType | Iterable[EventType] | None,
        handler: EventHandler,
    ) -> None:
        if event_types is None:
            self._wildcard_handlers = [h for h in self._wildcard_handlers if h is not handler]
            return
        if isinstance(event_types, EventType):
            event_types = [event_types]
        for event_type in event_types:
            self._handlers[event_type] = [
                h for h in self._handlers.get(event_type, []) if h is not handler
            ]

    async def publish(self, event: Event) -> None:
        self._history.append(event)
        self._published += 1

        handlers = [*self._handlers.get(event.type, []), *self._wildcard_handlers]
        if not handlers:
            return
        results = await asyncio.gather(
            *(handler(event) for handler in handlers),
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results, strict=True):
            if isinstance(result, Exception):
                self._handler_errors += 1
                logger.error(
                    "Event handler %s failed on %s: %r",
                    getattr(handler, "__qualname__", handler),
                    event.type.value,
                    result,
                )

    def recent(
        self,
        limit: int = 50,
        event_type: EventType | None = None,
        safety_only: bool = False,
    ) -> list[Event]:
        """Most recent events, oldest first."""
        selected = [
            e
            for e in self._history
            if (event_type is None or e.type == event_type)
            and (not safety_only or e.type.is_safety)
        ]
        return selected[-limit:]

    def get_stats(self) -> dict[str, int]:
        return {
            "published": self._published,
            "handler_errors": self._handler_errors,
            "subscriptions": sum(len(h) for h in self._handlers.values())
            + len(self._wildcard_handlers),
        }

    async def clear(self) -> None:
        self._handlers.clear()
        self._wildcard_handlers = []
        self._history.clear()


# Global event bus instance
_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global event bus (for testing)."""
    global _event_bus
    _event_bus = None
