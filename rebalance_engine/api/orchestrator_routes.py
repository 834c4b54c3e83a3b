"""
Orchestrator API routes.

Endpoints for cycle control, rebalance records and the circuit breaker.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from rebalance_engine.api import get_runtime_dep
from rebalance_engine.orchestrator import CycleReport, RebalanceRecord, RecordOutcome
from rebalance_engine.runtime.engine import EngineRuntime

router = APIRouter(prefix="/orchestrator", tags=["Orchestrator"])


class ClearBreakerRequest(BaseModel):
    cleared_by: str = Field(default="operator", min_length=1)


class ClearBreakerResponse(BaseModel):
    ok: bool
    was_tripped: bool
    previous_reason: str | None = None
    cleared_at: str


class RecordsResponse(BaseModel):
    records: list[RebalanceRecord]
    total: int


@router.get("/status", response_model=dict[str, Any])
async def get_status(runtime: EngineRuntime = Depends(get_runtime_dep)) -> dict[str, Any]:
    """Scheduler, lock, record and circuit breaker status."""
    return runtime.orchestrator.status()


@router.post("/run-once", response_model=CycleReport)
async def run_once(runtime: EngineRuntime = Depends(get_runtime_dep)) -> CycleReport:
    """Run a single cycle now and return its report."""
    return await runtime.orchestrator.run_cycle()


@router.post("/circuit-breaker/clear", response_model=ClearBreakerResponse)
async def clear_circuit_breaker(
    request: ClearBreakerRequest | None = None,
    runtime: EngineRuntime = Depends(get_runtime_dep),
) -> ClearBreakerResponse:
    """Manually clear a tripped circuit breaker."""
    cleared_by = request.cleared_by if request else "operator"
    result = await runtime.orchestrator.clear_circuit_breaker(cleared_by)
    return ClearBreakerResponse(
        ok=True,
        was_tripped=result["was_tripped"],
        previous_reason=result["previous_reason"],
        cleared_at=result["cleared_at"],
    )


@router.get("/records", response_model=RecordsResponse)
async def get_records(
    account: str | None = Query(default=None, description="Filter by account"),
    outcome: RecordOutcome | None = Query(default=None, description="Filter by outcome"),
    limit: int = Query(default=100, ge=1, le=1000),
    runtime: EngineRuntime = Depends(get_runtime_dep),
) -> RecordsResponse:
    """Most recent rebalance records, oldest first."""
    selected = runtime.orchestrator.records.records(account=account, outcome=outcome)
    return RecordsResponse(records=selected[-limit:], total=len(selected))
