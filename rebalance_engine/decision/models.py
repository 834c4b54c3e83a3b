"""
Decision engine inputs: account preferences, safety limits and the move cost model.
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from rebalance_engine.config import Settings

PERCENT = Decimal("100")
DAYS_PER_YEAR = Decimal("365")
COST_PRECISION = Decimal("0.000001")


class RiskTier(str, Enum):
    """How high a quoted rate an account is willing to chase."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class Preferences(BaseModel):
    """Per-account rebalancing preferences."""

    model_config = ConfigDict(frozen=True)

    risk_tier: RiskTier = RiskTier.MODERATE
    min_net_improvement: Decimal = Field(
        default=Decimal("0.5"),
        description="Net annualized gain in % a move must exceed",
        ge=0,
    )
    min_position_size: Decimal = Field(
        default=Decimal("0"),
        description="Positions at or below this amount are never moved",
        ge=0,
    )


class DecisionLimits(BaseModel):
    """Fixed safety filters applied to every quote."""

    model_config = ConfigDict(frozen=True)

    min_liquidity: Decimal = Decimal("100000")
    max_utilization: Decimal = Decimal("0.95")
    rate_ceilings: dict[RiskTier, Decimal] = Field(
        default_factory=lambda: {
            RiskTier.CONSERVATIVE: Decimal("12"),
            RiskTier.MODERATE: Decimal("25"),
            RiskTier.AGGRESSIVE: Decimal("60"),
        }
    )

    def ceiling_for(self, tier: RiskTier) -> Decimal:
        return self.rate_ceilings[tier]

    @classmethod
    def from_settings(cls, settings: Settings) -> "DecisionLimits":
        return cls(
            min_liquidity=settings.min_liquidity,
            max_utilization=settings.max_utilization,
            rate_ceilings={
                RiskTier.CONSERVATIVE: settings.conservative_rate_ceiling,
                RiskTier.MODERATE: settings.moderate_rate_ceiling,
                RiskTier.AGGRESSIVE: settings.aggressive_rate_ceiling,
            },
        )


class CostModel(BaseModel):
    """
    Cost of one move, expressed as an annualized percentage of the amount.

    A flat cost plus a proportional fee, amortized over amortization_days.
    """

    model_config = ConfigDict(frozen=True)

    fixed_cost: Decimal = Field(default=Decimal("0"), ge=0)
    proportional_bps: Decimal = Field(default=Decimal("0"), ge=0)
    amortization_days: int = Field(default=365, ge=1)

    def annualized_pct(self, amount: Decimal) -> Decimal:
        one_off_pct = self.fixed_cost / amount * PERCENT + self.proportional_bps / PERCENT
        annualized = one_off_pct * DAYS_PER_YEAR / Decimal(self.amortization_days)
        return annualized.quantize(COST_PRECISION)

    @classmethod
    def from_settings(cls, settings: Settings) -> "CostModel":
        return cls(
            fixed_cost=settings.move_fixed_cost,
            proportional_bps=settings.move_proportional_bps,
            amortization_days=settings.cost_amortization_days,
        )
