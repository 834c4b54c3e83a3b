"""
Orchestrator models.

All models are Pydantic-based for validation and serialization.
"""

from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from rebalance_engine.domain import RebalanceProposal
from rebalance_engine.ledger import ErrorCode


class RecordOutcome(str, Enum):
    """
    Outcome of one account's turn in a cycle.

    A proposal moves SUBMITTED -> CONFIRMED or SUBMITTED -> FAILED.
    SKIPPED is recorded when there was nothing to submit.
    """

    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (RecordOutcome.CONFIRMED, RecordOutcome.FAILED)


class RebalanceRecord(BaseModel):
    """Single append-only entry in the rebalance record log."""

    record_id: str = Field(default_factory=lambda: uuid4().hex)
    account: str
    sequence: int = Field(..., ge=1)
    outcome: RecordOutcome
    proposal: RebalanceProposal | None = None
    move_proof: str | None = None
    external_reference: str | None = None
    reason: str | None = None
    error_code: ErrorCode | None = None
    attempts: int = 0
    cycle_id: str | None = None
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AccountOutcome(BaseModel):
    """What happened to one account during a cycle."""

    account: str
    outcome: RecordOutcome | None = None
    reason: str | None = None
    record_id: str | None = None


class CycleReport(BaseModel):
    """Summary of one orchestrator cycle."""

    cycle_id: str
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    halted: bool = False
    halt_reason: str | None = None
    outcomes: list[AccountOutcome] = Field(default_factory=list)

    def count(self, outcome: RecordOutcome) -> int:
        return sum(1 for o in self.outcomes if o.outcome == outcome)
