"""
Tests for the operator API.

Runs the full application lifespan in DEMO mode against a temp data dir.
"""

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from rebalance_engine.config import get_settings
from rebalance_engine.main import app
from rebalance_engine.runtime.engine import EngineRuntime, get_runtime
from rebalance_engine.runtime.event_bus import get_event_bus
from tests.ledger_fixtures import ALICE, delegate_account

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def demo_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REBAL_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("REBAL_REGISTERED_DESTINATIONS", '["A", "B", "C"]')
    monkeypatch.setenv("REBAL_DEMO_RATES", '{"A": "5.0", "B": "6.8", "C": "4.0"}')
    monkeypatch.setenv("REBAL_MOVE_FIXED_COST", "30")
    get_settings.cache_clear()


@pytest.fixture
def client(demo_env: None) -> Generator[TestClient, None, None]:
    """Client with the engine started (scheduler idle for hours)."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def runtime(client: TestClient) -> EngineRuntime:
    runtime = get_runtime()
    assert runtime is not None
    return runtime


@pytest.fixture
def delegated(client: TestClient, runtime: EngineRuntime) -> str:
    """Alice delegated to the agent with A and B allowlisted, mirror in sync."""
    client.portal.call(delegate_account, runtime.ledger)
    client.portal.call(runtime.mirror.resync_all)
    return ALICE


# =============================================================================
# Health and config
# =============================================================================


class TestHealth:
    """Tests for /health, /config, /logs and /events."""

    def test_starting_before_lifespan(self) -> None:
        response = TestClient(app).get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "starting"

    def test_healthy_when_started(self, client: TestClient) -> None:
        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["checks"]["circuit_breaker_tripped"] is False
        assert data["checks"]["mirror_reconciler_running"] is True
        assert data["checks"]["scheduler_running"] is True

    def test_degraded_while_breaker_tripped(self, client: TestClient, runtime: EngineRuntime) -> None:
        runtime.orchestrator.circuit_breaker.trip("test trip")

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["checks"]["circuit_breaker_tripped"] is True

    def test_config_redacted(self, client: TestClient, tmp_path: Path) -> None:
        data = client.get("/config").json()

        assert data["mode"] == "DEMO"
        assert data["data_dir"] == str(tmp_path.resolve())
        assert data["venue_configured"] is False
        assert "venue_api_key" not in data

    def test_logs(self, client: TestClient) -> None:
        data = client.get("/logs", params={"level": "INFO", "limit": 10}).json()
        assert data["count"] == len(data["logs"])

    def test_events_include_engine_start(self, client: TestClient) -> None:
        data = client.get("/events").json()

        assert "engine.started" in [e["type"] for e in data["events"]]
        assert data["stats"]["published"] >= 1

    def test_safety_events_filter(self, client: TestClient, runtime: EngineRuntime) -> None:
        runtime.orchestrator.circuit_breaker.trip("test trip")
        client.post("/orchestrator/run-once")
        client.post("/orchestrator/circuit-breaker/clear")

        data = client.get("/events", params={"safety_only": True}).json()

        assert [e["type"] for e in data["events"]] == [
            "safety.circuit_breaker_alert",
            "safety.circuit_breaker_cleared",
        ]


class TestLifespan:
    """Tests for repeated application start and stop."""

    def test_restart_does_not_accumulate_safety_handlers(self, demo_env: None) -> None:
        counts = []
        for _ in range(3):
            with TestClient(app) as client:
                counts.append(client.get("/events").json()["stats"]["subscriptions"])

        assert counts[0] > 0
        assert counts == [counts[0]] * 3
        assert get_event_bus().get_stats()["subscriptions"] == 0


class TestNotStarted:
    """Routes depending on the engine answer 503 until it starts."""

    @pytest.mark.parametrize(
        "path",
        ["/orchestrator/status", "/ledger/registry", "/mirror/stats", "/ledger/accounts/alice"],
    )
    def test_service_unavailable(self, path: str) -> None:
        response = TestClient(app).get(path)

        assert response.status_code == 503
        assert response.json()["detail"] == "Engine not started"


# =============================================================================
# Ledger
# =============================================================================


class TestLedgerRoutes:
    """Tests for /ledger endpoints."""

    def test_registry(self, client: TestClient) -> None:
        data = client.get("/ledger/registry").json()

        assert data["destinations"] == ["A", "B", "C"]
        assert data["head_offset"] >= 3

    def test_account(self, client: TestClient, delegated: str) -> None:
        data = client.get(f"/ledger/accounts/{delegated}").json()

        assert data["agent"] == "agent"
        assert data["allowlist"] == ["A", "B"]
        assert data["balance"] == "10000"
        assert data["positions"] == {}
        assert data["sequence"] == 3


# =============================================================================
# Orchestrator
# =============================================================================


class TestOrchestratorRoutes:
    """Tests for /orchestrator endpoints."""

    def test_status(self, client: TestClient) -> None:
        data = client.get("/orchestrator/status").json()

        assert data["initialized"] is True
        assert data["running"] is True
        assert data["agent"] == "agent"
        assert data["circuit_breaker"]["is_tripped"] is False

    def test_run_once_moves_funds(self, client: TestClient, delegated: str) -> None:
        report = client.post("/orchestrator/run-once").json()

        assert report["halted"] is False
        assert [o["outcome"] for o in report["outcomes"]] == ["confirmed"]

        account = client.get(f"/ledger/accounts/{delegated}").json()
        assert account["balance"] == "0"
        assert account["positions"] == {"B": "10000"}

        records = client.get("/orchestrator/records", params={"account": delegated}).json()
        assert [r["outcome"] for r in records["records"]] == ["submitted", "confirmed"]

        confirmed = client.get("/orchestrator/records", params={"outcome": "confirmed"}).json()
        assert confirmed["total"] == 1

    def test_records_limit(self, client: TestClient, delegated: str) -> None:
        for _ in range(3):
            client.post("/orchestrator/run-once")

        data = client.get("/orchestrator/records", params={"limit": 2}).json()

        assert len(data["records"]) == 2
        assert data["total"] == 4

    def test_clear_circuit_breaker(
        self, client: TestClient, runtime: EngineRuntime, delegated: str
    ) -> None:
        runtime.orchestrator.circuit_breaker.trip("test trip")

        halted = client.post("/orchestrator/run-once").json()
        assert halted["halted"] is True
        assert halted["outcomes"] == []

        response = client.post("/orchestrator/circuit-breaker/clear", json={"cleared_by": "ops"})
        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["was_tripped"] is True
        assert data["previous_reason"] == "test trip"

        report = client.post("/orchestrator/run-once").json()
        assert report["halted"] is False

    def test_clear_without_body(self, client: TestClient) -> None:
        data = client.post("/orchestrator/circuit-breaker/clear").json()
        assert data["was_tripped"] is False


# =============================================================================
# Mirror
# =============================================================================


class TestMirrorRoutes:
    """Tests for /mirror endpoints."""

    def test_snapshot(self, client: TestClient, delegated: str) -> None:
        data = client.get(f"/mirror/{delegated}").json()

        assert data["agent"] == "agent"
        assert data["allowlist"] == ["A", "B"]

    def test_unknown_account(self, client: TestClient) -> None:
        assert client.get("/mirror/nobody").status_code == 404

    def test_resync(self, client: TestClient, delegated: str) -> None:
        response = client.post(f"/mirror/{delegated}/resync")

        assert response.status_code == 200
        assert response.json()["source"] == "ledger"

    def test_stats(self, client: TestClient) -> None:
        data = client.get("/mirror/stats").json()
        assert data["running"] is True
