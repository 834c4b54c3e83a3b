"""
Ledger API routes.

Read-only views of authoritative account state. Mutations are made by
principals through the ledger itself, never through the operator API.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from rebalance_engine.api import get_runtime_dep
from rebalance_engine.runtime.engine import EngineRuntime

router = APIRouter(prefix="/ledger", tags=["Ledger"])


class AccountResponse(BaseModel):
    account: str
    agent: str | None
    allowlist: list[str]
    balance: str
    positions: dict[str, str]
    sequence: int


class RegistryResponse(BaseModel):
    destinations: list[str]
    head_offset: int


@router.get("/accounts/{account}", response_model=AccountResponse)
async def get_account(
    account: str,
    runtime: EngineRuntime = Depends(get_runtime_dep),
) -> AccountResponse:
    """Allowlist, agent and balances of one account."""
    view = await runtime.ledger.get_account(account)
    return AccountResponse(
        account=view.account,
        agent=view.agent,
        allowlist=list(view.allowlist),
        balance=str(view.holdings.balance),
        positions={d: str(a) for d, a in sorted(view.holdings.positions.items())},
        sequence=view.sequence,
    )


@router.get("/registry", response_model=RegistryResponse)
async def get_registry(runtime: EngineRuntime = Depends(get_runtime_dep)) -> RegistryResponse:
    return RegistryResponse(
        destinations=sorted(runtime.ledger.registry()),
        head_offset=runtime.ledger.head_offset,
    )
