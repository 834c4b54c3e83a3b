"""
Rebalance proposal domain model.

Produced by the decision engine and consumed exactly once by the orchestrator.
"""

import hashlib
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class RebalanceProposal(BaseModel):
    """
    A single candidate move of funds for one account.

    Immutable once created. Contains no timestamps or random identifiers, so
    identical decision inputs always serialize to identical bytes.
    """

    model_config = ConfigDict(frozen=True)

    account: str = Field(..., description="Account whose funds move")
    from_destination: str | None = Field(
        default=None,
        description="Source destination (None = ledger idle pool)",
    )
    to_destination: str = Field(..., description="Target destination")
    amount: Decimal = Field(..., description="Amount to move", gt=0)
    gross_delta: Decimal = Field(..., description="Best rate minus current rate, in %")
    estimated_cost: Decimal = Field(..., description="Annualized move cost, in %")
    net_delta: Decimal = Field(..., description="gross_delta - estimated_cost, in %")
    justification: str = Field(default="", description="Human-readable reasoning")

    @property
    def fingerprint(self) -> str:
        """Stable content hash of the proposal."""
        return hashlib.sha256(self.model_dump_json().encode()).hexdigest()[:16]
