"""
Ledger models.

LedgerEvent is the structured change notification emitted by every mutating
ledger call. Funds-moving events carry the account's post-state holdings so a
consumer can apply them without a round trip.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from rebalance_engine.domain import Holdings
from rebalance_engine.ledger.allowlist import IndexedSet

# Stream name used for protocol registry events (not an account)
REGISTRY_STREAM = "__registry__"

# Rebalance events kept per account for replayed move proofs and recovery
DEFAULT_PROOF_RETENTION = 256


class LedgerEventType(str, Enum):
    """Kinds of ledger change notifications."""

    DEPOSITED = "deposited"
    WITHDRAWN = "withdrawn"
    AGENT_SET = "agent_set"
    ALLOWLIST_CHANGED = "allowlist_changed"
    REBALANCED = "rebalanced"
    REGISTRY_CHANGED = "registry_changed"


class LedgerEvent(BaseModel):
    """
    Structured change notification.

    sequence is per account (gap-free from 1); offset is the global position
    in the ledger's event log and is what feed consumers resume from.
    """

    type: LedgerEventType
    account: str
    payload: dict[str, Any] = Field(default_factory=dict)
    sequence: int = Field(..., ge=1)
    offset: int = Field(..., ge=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def holdings(self) -> Holdings | None:
        """Post-state holdings carried by funds-moving events."""
        if "balance" not in self.payload:
            return None
        return Holdings(
            balance=Decimal(self.payload["balance"]),
            positions={k: Decimal(v) for k, v in self.payload.get("positions", {}).items()},
        )


class AllowlistChange(BaseModel):
    """One entry of a batch allowlist update."""

    destination: str
    enabled: bool


class AccountView(BaseModel):
    """Consistent read of everything the ledger knows about an account."""

    account: str
    agent: str | None = None
    allowlist: list[str] = Field(default_factory=list)
    holdings: Holdings = Field(default_factory=Holdings)
    sequence: int = 0


@dataclass
class AccountState:
    """Mutable in-ledger state of one account. Never handed out directly."""

    account: str
    balance: Decimal = Decimal("0")
    positions: dict[str, Decimal] = field(default_factory=dict)
    agent: str | None = None
    allowlist: IndexedSet = field(default_factory=IndexedSet)
    sequence: int = 0
    applied_proofs: dict[str, dict[str, Any]] = field(default_factory=dict)
    proof_retention: int = DEFAULT_PROOF_RETENTION

    def holdings(self) -> Holdings:
        return Holdings(
            balance=self.balance,
            positions={k: v for k, v in self.positions.items() if v > 0},
        )

    def holdings_payload(
        self,
        balance: Decimal,
        positions: dict[str, Decimal],
    ) -> dict[str, Any]:
        return {
            "balance": str(balance),
            "positions": {k: str(v) for k, v in sorted(positions.items()) if v > 0},
        }

    def view(self) -> AccountView:
        return AccountView(
            account=self.account,
            agent=self.agent,
            allowlist=self.allowlist.members(),
            holdings=self.holdings(),
            sequence=self.sequence,
        )

    def apply(self, event: LedgerEvent) -> None:
        """Apply an event's post-state to this account."""
        holdings = event.holdings()
        if holdings is not None:
            self.balance = holdings.balance
            self.positions = dict(holdings.positions)
        if event.type == LedgerEventType.AGENT_SET:
            self.agent = event.payload.get("agent")
        elif event.type == LedgerEventType.ALLOWLIST_CHANGED:
            self.allowlist = IndexedSet(event.payload.get("allowlist", []))
        elif event.type == LedgerEventType.REBALANCED:
            self.applied_proofs[event.payload["move_proof"]] = event.model_dump(mode="json")
            self._trim_proofs()
        self.sequence = event.sequence

    def _trim_proofs(self) -> None:
        # Oldest first: dicts keep insertion order, including through JSON
        while len(self.applied_proofs) > self.proof_retention:
            del self.applied_proofs[next(iter(self.applied_proofs))]

    def to_dict(self) -> dict[str, Any]:
        return {
            "balance": str(self.balance),
            "positions": {k: str(v) for k, v in self.positions.items()},
            "agent": self.agent,
            "allowlist": self.allowlist.members(),
            "sequence": self.sequence,
            "applied_proofs": self.applied_proofs,
        }

    @classmethod
    def from_dict(
        cls,
        account: str,
        d: dict[str, Any],
        proof_retention: int = DEFAULT_PROOF_RETENTION,
    ) -> "AccountState":
        state = cls(
            account=account,
            balance=Decimal(d.get("balance", "0")),
            positions={k: Decimal(v) for k, v in d.get("positions", {}).items()},
            agent=d.get("agent"),
            allowlist=IndexedSet(d.get("allowlist", [])),
            sequence=d.get("sequence", 0),
            applied_proofs=d.get("applied_proofs", {}),
            proof_retention=proof_retention,
        )
        state._trim_proofs()
        return state
