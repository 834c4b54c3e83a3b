"""
Rebalance circuit breaker.

Trips when the fraction of failed submissions within a sliding window
exceeds a threshold. Once tripped it stays tripped (survives restarts via
its state file) until an operator clears it.
"""

import json
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_rate_threshold: float = 0.5
    window_s: float = 3600
    min_samples: int = 4


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CircuitBreaker:
    """
    Failure-rate circuit breaker.

    Only submissions that exhausted their transient retries count as
    failures; confirmed submissions count as successes. No auto-reset.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        state_file: Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._config = config
        self._state_file = state_file
        self._clock = clock

        self._outcomes: deque[tuple[datetime, bool]] = deque()
        self._tripped_at: datetime | None = None
        self._trip_reason: str | None = None
        self._alerted = False
        self._total_failures = 0
        self._total_successes = 0
        self._total_trips = 0

    @property
    def is_tripped(self) -> bool:
        return self._tripped_at is not None

    @property
    def trip_reason(self) -> str | None:
        return self._trip_reason

    def _prune(self, now: datetime) -> None:
        cutoff = now.timestamp() - self._config.window_s
        while self._outcomes and self._outcomes[0][0].timestamp() <= cutoff:
            self._outcomes.popleft()

    def failure_rate(self) -> float | None:
        """Failure fraction in the window, or None below the minimum sample count."""
        self._prune(self._clock())
        if len(self._outcomes) < self._config.min_samples:
            return None
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures / len(self._outcomes)

    def record_success(self) -> None:
        now = self._clock()
        self._outcomes.append((now, True))
        self._total_successes += 1
        self._prune(now)

    def record_failure(self, error: str) -> bool:
        """
        Record an exhausted submission failure.

        Args:
            error: Error message

        Returns:
            True if the circuit breaker just tripped
        """
        now = self._clock()
        self._outcomes.append((now, False))
        self._total_failures += 1

        if self.is_tripped:
            return False

        rate = self.failure_rate()
        if rate is not None and rate > self._config.failure_rate_threshold:
            self.trip(
                f"failure rate {rate:.0%} over {len(self._outcomes)} submissions "
                f"(last error: {error})"
            )
            return True
        return False

    def trip(self, reason: str) -> None:
        """Trip the circuit breaker."""
        self._tripped_at = self._clock()
        self._trip_reason = reason
        self._alerted = False
        self._total_trips += 1
        logger.error("Circuit breaker TRIPPED: %s", reason)
        self._persist()

    def should_alert(self) -> bool:
        """True exactly once per trip."""
        if not self.is_tripped or self._alerted:
            return False
        self._alerted = True
        self._persist()
        return True

    def clear(self, cleared_by: str = "operator") -> dict[str, Any]:
        """Manually clear the circuit breaker."""
        was_tripped = self.is_tripped
        previous_reason = self._trip_reason
        self._tripped_at = None
        self._trip_reason = None
        self._alerted = False
        self._outcomes.clear()
        if was_tripped:
            logger.warning("Circuit breaker cleared by %s (was: %s)", cleared_by, previous_reason)
        self._persist()
        return {
            "was_tripped": was_tripped,
            "previous_reason": previous_reason,
            "cleared_by": cleared_by,
            "cleared_at": self._clock().isoformat(),
        }

    def check(self) -> tuple[bool, str | None]:
        """
        Check if submissions can proceed.

        Returns:
            Tuple of (can_proceed, error_message)
        """
        if self.is_tripped:
            return False, f"Circuit breaker tripped: {self._trip_reason}"
        return True, None

    def _persist(self) -> None:
        if self._state_file is not None:
            self.save_state(self._state_file)

    def save_state(self, state_file: Path) -> None:
        """
        Persist breaker state to disk.

        Args:
            state_file: Path to state file (JSON)
        """
        state_file.parent.mkdir(parents=True, exist_ok=True)
        state = {
            "tripped": self.is_tripped,
            "reason": self._trip_reason,
            "tripped_at": self._tripped_at.isoformat() if self._tripped_at else None,
            "alerted": self._alerted,
            "total_trips": self._total_trips,
        }
        with open(state_file, "w") as f:
            json.dump(state, f, indent=2)
        logger.debug("Circuit breaker state saved to %s", state_file)

    def restore_state(self, state_file: Path | None = None) -> None:
        """
        Restore breaker state from disk.

        Args:
            state_file: Path to state file (defaults to the configured one)
        """
        state_file = state_file or self._state_file
        if state_file is None or not state_file.exists():
            logger.debug("No circuit breaker state file found")
            return

        try:
            with open(state_file) as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            # Unreadable state fails closed
            logger.error("Failed to restore circuit breaker state from %s: %s", state_file, e)
            self.trip(f"unreadable state file: {e}")
            return

        self._total_trips = int(state.get("total_trips", 0))
        if state.get("tripped"):
            self._trip_reason = state.get("reason") or "unknown"
            self._alerted = bool(state.get("alerted", False))
            tripped_at_str = state.get("tripped_at")
            parsed = self._clock()
            if tripped_at_str:
                parsed = datetime.fromisoformat(tripped_at_str.replace("Z", "+00:00"))
                if parsed.tzinfo is None:
                    parsed = parsed.replace(tzinfo=UTC)
            self._tripped_at = parsed
            logger.warning(
                "Restored tripped circuit breaker from %s: %s (tripped at %s)",
                state_file,
                self._trip_reason,
                self._tripped_at.isoformat(),
            )

    def get_stats(self) -> dict[str, Any]:
        rate = self.failure_rate()
        return {
            "is_tripped": self.is_tripped,
            "tripped_at": self._tripped_at.isoformat() if self._tripped_at else None,
            "trip_reason": self._trip_reason,
            "alerted": self._alerted,
            "failure_rate": rate,
            "samples_in_window": len(self._outcomes),
            "failure_rate_threshold": self._config.failure_rate_threshold,
            "min_samples": self._config.min_samples,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
            "total_trips": self._total_trips,
        }
