"""
Rebalance Engine - FastAPI Application

Main entry point. Runs the ledger, permission mirror and orchestrator in
process and exposes the operator API.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Query
from pydantic import BaseModel

from rebalance_engine import __version__
from rebalance_engine.api.ledger_routes import router as ledger_router
from rebalance_engine.api.mirror_routes import router as mirror_router
from rebalance_engine.api.orchestrator_routes import router as orchestrator_router
from rebalance_engine.config import Settings, get_settings, get_settings_dep
from rebalance_engine.logging import get_in_memory_logs, get_logger, setup_logging
from rebalance_engine.runtime.engine import EngineRuntime, get_runtime, set_runtime
from rebalance_engine.runtime.event_bus import Event, EventType, get_event_bus

# Setup logging
setup_logging(level=get_settings().log_level, json_output=get_settings().log_json)
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str  # "healthy", "degraded", "starting"
    version: str
    time: str
    uptime_seconds: float
    checks: dict[str, Any] = {}


class AppState:
    """Application state container."""

    def __init__(self) -> None:
        self.start_time: datetime = datetime.now(UTC)


state = AppState()


# =============================================================================
# Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    logger.info("Starting Rebalance Engine v%s in %s mode", __version__, settings.mode.value)
    logger.info("Data directory: %s", settings.data_dir)
    logger.info("Server: http://%s:%d", settings.host, settings.port)

    runtime = EngineRuntime(settings)
    set_runtime(runtime)
    await runtime.start()

    # Surface safety events in the log even when nobody is subscribed
    async def log_safety_events(event: Event) -> None:
        logger.warning("Safety event %s: %s", event.type.value, event.data)

    safety_events = [t for t in EventType if t.is_safety]
    await get_event_bus().subscribe(safety_events, log_safety_events)

    yield

    logger.info("Shutting down Rebalance Engine")
    await get_event_bus().unsubscribe(safety_events, log_safety_events)
    await runtime.stop()
    set_runtime(None)


# =============================================================================
# FastAPI Application
# =============================================================================


app = FastAPI(
    title="Rebalance Engine",
    description="Delegated yield rebalancing with a permission-enforcing ledger",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(ledger_router)
app.include_router(orchestrator_router)
app.include_router(mirror_router)


# =============================================================================
# REST Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """
    Health check endpoint.

    Degraded while the circuit breaker is tripped or the mirror reconciler
    is down.
    """
    now = datetime.now(UTC)
    uptime = (now - state.start_time).total_seconds()
    runtime = get_runtime()

    if runtime is None or not runtime.started:
        return HealthResponse(
            status="starting",
            version=__version__,
            time=now.isoformat(),
            uptime_seconds=round(uptime, 2),
        )

    breaker_tripped = runtime.orchestrator.circuit_breaker.is_tripped
    checks = {
        "circuit_breaker_tripped": breaker_tripped,
        "mirror_reconciler_running": runtime.reconciler.is_running,
        "scheduler_running": runtime.orchestrator.is_running,
        "ledger_head_offset": runtime.ledger.head_offset,
    }
    healthy = not breaker_tripped and runtime.reconciler.is_running
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=__version__,
        time=now.isoformat(),
        uptime_seconds=round(uptime, 2),
        checks=checks,
    )


@app.get("/config")
async def get_config(settings: Settings = Depends(get_settings_dep)) -> dict[str, Any]:
    """Redacted configuration."""
    return settings.get_redacted_config()


@app.get("/logs")
async def get_logs(
    level: str = Query(default="INFO"),
    limit: int = Query(default=50, ge=1, le=1000),
    cycle_id: str | None = Query(default=None, description="Only lines from this cycle"),
) -> dict[str, Any]:
    """Recent in-memory log lines."""
    logs = get_in_memory_logs(level=level, limit=limit, cycle_id=cycle_id)
    return {"logs": logs, "count": len(logs)}


@app.get("/events")
async def get_events(
    event_type: EventType | None = Query(default=None, alias="type"),
    safety_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    """Recent operator events, oldest first."""
    event_bus = get_event_bus()
    events = event_bus.recent(limit=limit, event_type=event_type, safety_only=safety_only)
    return {
        "events": [e.to_dict() for e in events],
        "count": len(events),
        "stats": event_bus.get_stats(),
    }


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "rebalance_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.env.value == "development",
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
