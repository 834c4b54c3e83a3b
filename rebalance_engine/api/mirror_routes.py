"""
Permission mirror API routes.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from rebalance_engine.api import get_runtime_dep
from rebalance_engine.mirror import AccountSnapshot
from rebalance_engine.runtime.engine import EngineRuntime

router = APIRouter(prefix="/mirror", tags=["Mirror"])


@router.get("/stats", response_model=dict[str, Any])
async def get_mirror_stats(runtime: EngineRuntime = Depends(get_runtime_dep)) -> dict[str, Any]:
    return runtime.reconciler.get_stats()


@router.get("/{account}", response_model=AccountSnapshot)
async def get_snapshot(
    account: str,
    runtime: EngineRuntime = Depends(get_runtime_dep),
) -> AccountSnapshot:
    """Mirrored view of one account (advisory, may lag the ledger)."""
    snapshot = runtime.mirror.get(account)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"Account {account} not in mirror")
    return snapshot


@router.post("/{account}/resync", response_model=AccountSnapshot)
async def resync_account(
    account: str,
    runtime: EngineRuntime = Depends(get_runtime_dep),
) -> AccountSnapshot:
    """Re-read one account directly from the ledger."""
    return await runtime.mirror.resync(account, reason="operator")
