"""
Domain models for the rebalance engine.

These models represent the core concepts used throughout the system:
- Holdings: An account's idle balance plus its per-destination positions
- YieldQuote: A destination's observed rate and market conditions
- RebalanceProposal: A single candidate fund move
"""

from rebalance_engine.domain.holdings import IDLE_POOL, Holdings
from rebalance_engine.domain.proposal import RebalanceProposal
from rebalance_engine.domain.quote import MarketMetrics, YieldQuote

__all__ = [
    "IDLE_POOL",
    "Holdings",
    "MarketMetrics",
    "RebalanceProposal",
    "YieldQuote",
]
