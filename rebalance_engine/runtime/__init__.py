"""
Runtime utilities shared across engine components.
"""

from rebalance_engine.runtime.event_bus import (
    Event,
    EventBus,
    EventType,
    get_event_bus,
    reset_event_bus,
)

__all__ = [
    "Event",
    "EventBus",
    "EventType",
    "get_event_bus",
    "reset_event_bus",
]
