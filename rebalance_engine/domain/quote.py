"""
Yield quote domain model.

Quotes are fetched fresh every cycle and never persisted as authoritative.
"""

from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class MarketMetrics(BaseModel):
    """Liquidity and utilization reported by a destination."""

    liquidity: Decimal = Field(..., description="Withdrawable liquidity", ge=0)
    utilization: Decimal = Field(..., description="Borrowed / supplied, 0..1", ge=0)


class YieldQuote(BaseModel):
    """A destination's rate and market conditions at one point in time."""

    model_config = ConfigDict(frozen=True)

    destination: str = Field(..., description="Destination identifier")
    rate: Decimal = Field(..., description="Annualized rate in percent (5.0 = 5%)")
    liquidity: Decimal = Field(..., description="Withdrawable liquidity", ge=0)
    utilization: Decimal = Field(..., description="Utilization ratio 0..1", ge=0)
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
