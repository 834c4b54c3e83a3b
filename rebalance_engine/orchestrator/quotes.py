"""
Parallel yield quote fetching.

A destination that errors or does not answer within the timeout simply
produces no quote for this cycle.
"""

import asyncio
from collections.abc import Iterable

from rebalance_engine.adapters import AdapterError, AdapterRegistry
from rebalance_engine.domain import YieldQuote
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class QuoteFetcher:
    def __init__(self, adapters: AdapterRegistry, timeout_s: float):
        self._adapters = adapters
        self._timeout_s = timeout_s

    async def fetch(self, destinations: Iterable[str]) -> list[YieldQuote]:
        """Fetch quotes for all destinations concurrently."""
        ordered = sorted(set(destinations))
        results = await asyncio.gather(*(self._fetch_one(d) for d in ordered))
        return [q for q in results if q is not None]

    async def _fetch_one(self, destination: str) -> YieldQuote | None:
        adapter = self._adapters.get(destination)
        if adapter is None:
            logger.debug("No adapter for %s; no quote", destination)
            return None
        try:
            return await asyncio.wait_for(adapter.quote(), timeout=self._timeout_s)
        except TimeoutError:
            logger.warning("Quote for %s timed out after %ss", destination, self._timeout_s)
        except AdapterError as e:
            logger.warning("Quote for %s failed: %s", destination, e)
        except ValueError as e:
            # Adapter returned values a YieldQuote rejects
            logger.warning("Quote for %s is invalid: %s", destination, e)
        return None
