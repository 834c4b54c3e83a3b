"""
Destination adapters.

Typed adapter interface with one implementation per destination, selected by
registry lookup.
"""

from rebalance_engine.adapters.base import AdapterError, DestinationAdapter
from rebalance_engine.adapters.http import HttpDestination
from rebalance_engine.adapters.registry import AdapterRegistry
from rebalance_engine.adapters.simulated import SimulatedDestination

__all__ = [
    "AdapterError",
    "AdapterRegistry",
    "DestinationAdapter",
    "HttpDestination",
    "SimulatedDestination",
]
