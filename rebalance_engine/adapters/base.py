"""
DestinationAdapter interface.

Defines the contract for yield-bearing destinations. The engine depends only
on deposit / withdraw / current_rate; market metrics are optional.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from rebalance_engine.domain import MarketMetrics, YieldQuote


class AdapterError(Exception):
    """Raised when a destination cannot complete a deposit, withdrawal or read."""

    def __init__(self, destination: str, message: str):
        super().__init__(f"{destination}: {message}")
        self.destination = destination


class DestinationAdapter(ABC):
    """
    Abstract base class for a yield-bearing destination.

    One implementation per destination, selected through AdapterRegistry.
    """

    def __init__(self, destination: str) -> None:
        self.destination = destination

    @abstractmethod
    async def deposit(self, amount: Decimal) -> None:
        """
        Deposit funds into the destination.

        Raises:
            AdapterError: The destination rejected or failed the deposit.
        """

    @abstractmethod
    async def withdraw(self, amount: Decimal) -> None:
        """
        Withdraw funds from the destination.

        Raises:
            AdapterError: The destination rejected or failed the withdrawal.
        """

    @abstractmethod
    async def current_rate(self) -> Decimal:
        """Current annualized rate in percent."""

    async def market_metrics(self) -> MarketMetrics | None:
        """Liquidity and utilization, if the destination reports them."""
        return None

    async def quote(self) -> YieldQuote:
        """
        Build a YieldQuote from the rate and optional market metrics.

        Destinations without metrics report zero liquidity, which the decision
        engine's liquidity floor treats as unsafe.
        """
        rate = await self.current_rate()
        metrics = await self.market_metrics()
        if metrics is None:
            metrics = MarketMetrics(liquidity=Decimal("0"), utilization=Decimal("0"))
        return YieldQuote(
            destination=self.destination,
            rate=rate,
            liquidity=metrics.liquidity,
            utilization=metrics.utilization,
        )
