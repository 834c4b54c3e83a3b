"""
Tests for the failure-rate circuit breaker.
"""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from rebalance_engine.orchestrator import CircuitBreaker, CircuitBreakerConfig


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_breaker(
    threshold: float = 0.5,
    window_s: float = 60,
    min_samples: int = 4,
    state_file: Path | None = None,
    clock: FakeClock | None = None,
) -> CircuitBreaker:
    config = CircuitBreakerConfig(
        failure_rate_threshold=threshold,
        window_s=window_s,
        min_samples=min_samples,
    )
    return CircuitBreaker(config, state_file=state_file, clock=clock or FakeClock())


class TestFailureRate:
    """Tests for tripping on failure fraction."""

    def test_no_trip_below_min_samples(self) -> None:
        breaker = make_breaker(min_samples=4)

        for _ in range(3):
            assert breaker.record_failure("boom") is False

        assert breaker.is_tripped is False
        assert breaker.failure_rate() is None

    def test_trips_when_rate_exceeds_threshold(self) -> None:
        breaker = make_breaker(threshold=0.5, min_samples=4)
        breaker.record_success()
        breaker.record_failure("boom")
        breaker.record_failure("boom")

        tripped = breaker.record_failure("adapter down")

        assert tripped is True
        assert breaker.is_tripped is True
        assert "adapter down" in (breaker.trip_reason or "")
        can_proceed, error = breaker.check()
        assert can_proceed is False
        assert "Circuit breaker tripped" in (error or "")

    def test_rate_at_threshold_does_not_trip(self) -> None:
        breaker = make_breaker(threshold=0.5, min_samples=4)
        breaker.record_success()
        breaker.record_success()
        breaker.record_failure("boom")

        assert breaker.record_failure("boom") is False
        assert breaker.failure_rate() == 0.5

    def test_old_outcomes_leave_window(self) -> None:
        clock = FakeClock()
        breaker = make_breaker(window_s=60, min_samples=2, clock=clock)
        breaker.record_failure("boom")
        clock.advance(61)
        breaker.record_success()
        breaker.record_success()

        assert breaker.record_failure("boom") is False
        assert breaker.failure_rate() == 1 / 3

    def test_no_auto_reset(self) -> None:
        clock = FakeClock()
        breaker = make_breaker(min_samples=1, clock=clock)
        breaker.record_failure("boom")
        clock.advance(10 * 24 * 3600)

        assert breaker.is_tripped is True


class TestAlertAndClear:
    """Tests for alert-once and manual clear."""

    def test_alert_once_per_trip(self) -> None:
        breaker = make_breaker(min_samples=1)
        assert breaker.should_alert() is False

        breaker.record_failure("boom")

        assert breaker.should_alert() is True
        assert breaker.should_alert() is False

    def test_clear_resets_and_rearms_alert(self) -> None:
        breaker = make_breaker(min_samples=1)
        breaker.record_failure("first")
        breaker.should_alert()

        result = breaker.clear("ops")

        assert result["was_tripped"] is True
        assert result["cleared_by"] == "ops"
        assert breaker.is_tripped is False
        assert breaker.failure_rate() is None

        breaker.record_failure("second")
        assert breaker.should_alert() is True

    def test_clear_when_not_tripped(self) -> None:
        breaker = make_breaker()
        assert breaker.clear()["was_tripped"] is False


class TestPersistence:
    """Tests for state save/restore."""

    def test_trip_survives_restart(self, tmp_path: Path) -> None:
        state_file = tmp_path / "circuit_breaker.json"
        breaker = make_breaker(min_samples=1, state_file=state_file)
        breaker.record_failure("boom")
        breaker.should_alert()

        restored = make_breaker(state_file=state_file)
        restored.restore_state()

        assert restored.is_tripped is True
        assert "boom" in (restored.trip_reason or "")
        # Already alerted before the restart
        assert restored.should_alert() is False

    def test_clear_persisted(self, tmp_path: Path) -> None:
        state_file = tmp_path / "circuit_breaker.json"
        breaker = make_breaker(min_samples=1, state_file=state_file)
        breaker.record_failure("boom")
        breaker.clear()

        assert json.loads(state_file.read_text())["tripped"] is False
        restored = make_breaker(state_file=state_file)
        restored.restore_state()
        assert restored.is_tripped is False

    def test_unreadable_state_fails_closed(self, tmp_path: Path) -> None:
        state_file = tmp_path / "circuit_breaker.json"
        state_file.write_text("{not json")

        breaker = make_breaker(state_file=state_file)
        breaker.restore_state()

        assert breaker.is_tripped is True

    def test_missing_state_file(self, tmp_path: Path) -> None:
        breaker = make_breaker(state_file=tmp_path / "missing.json")
        breaker.restore_state()
        assert breaker.is_tripped is False
