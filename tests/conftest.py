"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import Generator
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio

# Set test environment variables before importing app modules
os.environ.setdefault("REBAL_MODE", "DEMO")
os.environ.setdefault("REBAL_ENV", "development")

from rebalance_engine.adapters import AdapterRegistry, SimulatedDestination  # noqa: E402
from rebalance_engine.config import Settings  # noqa: E402
from rebalance_engine.ledger import Ledger  # noqa: E402
from tests.ledger_fixtures import ADMIN, AGENT  # noqa: E402


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure no real credentials leak into tests from local .env."""
    monkeypatch.delenv("REBAL_VENUE_API_KEY", raising=False)
    monkeypatch.delenv("REBAL_VENUE_BASE_URL", raising=False)


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset module-level singletons between tests."""
    yield

    from rebalance_engine.config import get_settings
    from rebalance_engine.orchestrator import set_orchestrator
    from rebalance_engine.runtime.engine import set_runtime
    from rebalance_engine.runtime.event_bus import reset_event_bus

    set_orchestrator(None)
    set_runtime(None)
    reset_event_bus()
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with fast timeouts and no backoff, rooted in a temp dir."""
    return Settings(
        data_dir=tmp_path,
        admin_address=ADMIN,
        agent_address=AGENT,
        registered_destinations=["A", "B", "C"],
        quote_timeout_s=0.5,
        submit_timeout_s=1.0,
        max_submit_attempts=3,
        backoff_base_s=0,
        backoff_max_s=0,
        failure_rate_threshold=0.5,
        failure_window_s=3600,
        failure_min_samples=2,
        min_liquidity=Decimal("100000"),
        move_fixed_cost=Decimal("30"),
        record_timeout_s=900,
    )


@pytest.fixture
def venues() -> dict[str, SimulatedDestination]:
    return {
        "A": SimulatedDestination("A", rate="5.0"),
        "B": SimulatedDestination("B", rate="5.3"),
        "C": SimulatedDestination("C", rate="4.0"),
    }


@pytest.fixture
def adapters(venues: dict[str, SimulatedDestination]) -> AdapterRegistry:
    return AdapterRegistry(list(venues.values()))


@pytest_asyncio.fixture
async def ledger(adapters: AdapterRegistry) -> Ledger:
    """In-memory ledger with A, B and C registered."""
    ledger = Ledger(adapters, admin=ADMIN)
    for destination in ("A", "B", "C"):
        (await ledger.register_destination(destination, caller=ADMIN)).unwrap()
    return ledger

