"""
Simulated destination for DEMO mode and tests.

Holds an in-memory pool of funds with a configurable rate and market metrics.
Failures can be injected to exercise the ledger's rollback path and the
orchestrator's retry path.
"""

import asyncio
from decimal import Decimal

from rebalance_engine.adapters.base import AdapterError, DestinationAdapter
from rebalance_engine.domain import MarketMetrics


class SimulatedDestination(DestinationAdapter):
    """In-memory yield venue."""

    def __init__(
        self,
        destination: str,
        rate: Decimal | str = "0",
        liquidity: Decimal | str = "10000000",
        utilization: Decimal | str = "0.5",
        latency_s: float = 0.0,
    ) -> None:
        super().__init__(destination)
        self.rate = Decimal(rate)
        self.liquidity = Decimal(liquidity)
        self.utilization = Decimal(utilization)
        self.latency_s = latency_s
        self.pooled = Decimal("0")

        # Failure injection: number of upcoming calls to fail
        self.fail_deposits = 0
        self.fail_withdrawals = 0
        self.fail_rate_reads = 0

        self.deposit_calls = 0
        self.withdraw_calls = 0

    async def _delay(self) -> None:
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)

    async def deposit(self, amount: Decimal) -> None:
        await self._delay()
        self.deposit_calls += 1
        if self.fail_deposits > 0:
            self.fail_deposits -= 1
            raise AdapterError(self.destination, "simulated deposit failure")
        self.pooled += amount

    async def withdraw(self, amount: Decimal) -> None:
        await self._delay()
        self.withdraw_calls += 1
        if self.fail_withdrawals > 0:
            self.fail_withdrawals -= 1
            raise AdapterError(self.destination, "simulated withdrawal failure")
        if amount > self.pooled:
            raise AdapterError(
                self.destination,
                f"insufficient pooled funds ({self.pooled} < {amount})",
            )
        self.pooled -= amount

    async def current_rate(self) -> Decimal:
        await self._delay()
        if self.fail_rate_reads > 0:
            self.fail_rate_reads -= 1
            raise AdapterError(self.destination, "simulated rate read failure")
        return self.rate

    async def market_metrics(self) -> MarketMetrics:
        return MarketMetrics(liquidity=self.liquidity, utilization=self.utilization)
