"""
Adapter registry: destination id -> DestinationAdapter.
"""

from rebalance_engine.adapters.base import DestinationAdapter
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class AdapterRegistry:
    """Lookup of destination adapters by destination id."""

    def __init__(self, adapters: list[DestinationAdapter] | None = None) -> None:
        self._adapters: dict[str, DestinationAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: DestinationAdapter) -> None:
        if adapter.destination in self._adapters:
            logger.warning("Replacing adapter for destination %s", adapter.destination)
        self._adapters[adapter.destination] = adapter

    def get(self, destination: str) -> DestinationAdapter | None:
        return self._adapters.get(destination)

    def __contains__(self, destination: object) -> bool:
        return destination in self._adapters

    @property
    def destinations(self) -> list[str]:
        return sorted(self._adapters)
