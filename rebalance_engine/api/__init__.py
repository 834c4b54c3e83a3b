"""
Operator API routes.
"""

from fastapi import HTTPException

from rebalance_engine.runtime.engine import EngineRuntime, get_runtime


def get_runtime_dep() -> EngineRuntime:
    """FastAPI dependency for the running engine."""
    runtime = get_runtime()
    if runtime is None or not runtime.started:
        raise HTTPException(status_code=503, detail="Engine not started")
    return runtime
