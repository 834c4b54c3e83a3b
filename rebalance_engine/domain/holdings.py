"""
Holdings domain model.

An account's funds are either idle in the ledger's own pool or deployed to
destinations. The idle pool is addressed as ``None`` wherever a destination
is expected.
"""

from collections.abc import Iterator
from decimal import Decimal

from pydantic import BaseModel, Field

IDLE_POOL = None

ZERO = Decimal("0")


class Holdings(BaseModel):
    """Idle balance and per-destination positions of one account."""

    balance: Decimal = Field(
        default=ZERO,
        description="Idle amount held in the ledger pool",
        ge=0,
    )
    positions: dict[str, Decimal] = Field(
        default_factory=dict,
        description="Destination id -> deployed amount",
    )

    def amount_at(self, destination: str | None) -> Decimal:
        """Amount held at a destination (None = idle pool)."""
        if destination is None:
            return self.balance
        return self.positions.get(destination, ZERO)

    def holds(self, destination: str) -> bool:
        """True if the account has a nonzero position at the destination."""
        return self.positions.get(destination, ZERO) > 0

    @property
    def total(self) -> Decimal:
        return self.balance + sum(self.positions.values(), ZERO)

    def iter_stable(self) -> Iterator[tuple[str | None, Decimal]]:
        """
        Iterate holdings in a fixed order: idle pool first, then
        destinations sorted by id. Zero positions are skipped.
        """
        if self.balance > 0:
            yield IDLE_POOL, self.balance
        for destination in sorted(self.positions):
            amount = self.positions[destination]
            if amount > 0:
                yield destination, amount
