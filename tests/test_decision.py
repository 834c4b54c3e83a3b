"""
Tests for the decision engine.

Tests:
- Reference examples (below threshold, above threshold)
- Safety filters and risk-tier ceilings
- Ordering, tie-breaking and determinism
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from rebalance_engine.decision import (
    CostModel,
    DecisionLimits,
    Preferences,
    RiskTier,
    decide,
    latest_quotes,
)
from rebalance_engine.domain import Holdings, YieldQuote

# =============================================================================
# Fixtures
# =============================================================================


def quote(destination: str, rate: str, liquidity: str = "1000000", utilization: str = "0.5") -> YieldQuote:
    return YieldQuote(
        destination=destination,
        rate=Decimal(rate),
        liquidity=Decimal(liquidity),
        utilization=Decimal(utilization),
        observed_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


@pytest.fixture
def limits() -> DecisionLimits:
    return DecisionLimits()


@pytest.fixture
def costs() -> CostModel:
    """Flat 30 per move: 0.3% annualized on 10,000."""
    return CostModel(fixed_cost=Decimal("30"), amortization_days=365)


@pytest.fixture
def prefs() -> Preferences:
    return Preferences(min_net_improvement=Decimal("0.5"))


def position_in_a() -> Holdings:
    return Holdings(positions={"A": Decimal("10000")})


# =============================================================================
# Reference examples
# =============================================================================


class TestReferenceExamples:
    """The two canonical scenarios."""

    def test_improvement_below_threshold_no_proposal(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        result = decide(
            "alice",
            position_in_a(),
            [quote("A", "5.0"), quote("B", "5.3")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )
        assert result is None

    def test_improvement_above_threshold_proposes_move(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        result = decide(
            "alice",
            position_in_a(),
            [quote("A", "5.0"), quote("B", "6.8")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )

        assert result is not None
        assert result.from_destination == "A"
        assert result.to_destination == "B"
        assert result.amount == Decimal("10000")
        assert result.gross_delta == Decimal("1.8")
        assert result.estimated_cost == Decimal("0.3")
        assert result.net_delta == Decimal("1.5")
        assert "B" in result.justification


# =============================================================================
# Filters
# =============================================================================


class TestFilters:
    """Allowlist and safety filters."""

    def test_destination_outside_allowlist_ignored(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        result = decide(
            "alice",
            position_in_a(),
            [quote("A", "5.0"), quote("Z", "20.0")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )
        assert result is None

    @pytest.mark.parametrize(
        "unsafe",
        [
            quote("B", "9.0", liquidity="99999"),
            quote("B", "9.0", utilization="0.96"),
            quote("B", "26.0"),
            quote("B", "0"),
            quote("B", "-1"),
        ],
        ids=["low-liquidity", "high-utilization", "above-moderate-ceiling", "zero-rate", "negative"],
    )
    def test_unsafe_quote_discarded(
        self,
        unsafe: YieldQuote,
        prefs: Preferences,
        limits: DecisionLimits,
        costs: CostModel,
    ) -> None:
        result = decide(
            "alice", position_in_a(), [quote("A", "5.0"), unsafe], ["A", "B"], prefs, limits, costs
        )
        assert result is None

    def test_aggressive_tier_accepts_higher_rates(
        self, limits: DecisionLimits, costs: CostModel
    ) -> None:
        prefs = Preferences(risk_tier=RiskTier.AGGRESSIVE)
        result = decide(
            "alice",
            position_in_a(),
            [quote("A", "5.0"), quote("B", "26.0")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )
        assert result is not None
        assert result.to_destination == "B"

    def test_conservative_tier_rejects_moderate_rates(
        self, limits: DecisionLimits, costs: CostModel
    ) -> None:
        prefs = Preferences(risk_tier=RiskTier.CONSERVATIVE)
        result = decide(
            "alice",
            position_in_a(),
            [quote("A", "5.0"), quote("B", "13.0")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )
        assert result is None

    def test_position_at_or_below_min_size_not_moved(
        self, limits: DecisionLimits, costs: CostModel
    ) -> None:
        prefs = Preferences(min_position_size=Decimal("10000"))
        result = decide(
            "alice",
            position_in_a(),
            [quote("A", "5.0"), quote("B", "9.0")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )
        assert result is None

    def test_position_without_quote_skipped(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        """A position whose destination produced no quote is never moved."""
        result = decide(
            "alice", position_in_a(), [quote("B", "9.0")], ["A", "B"], prefs, limits, costs
        )
        assert result is None

    def test_no_safe_quotes_no_proposal(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        assert decide("alice", position_in_a(), [], ["A", "B"], prefs, limits, costs) is None


# =============================================================================
# Ordering and determinism
# =============================================================================


class TestOrdering:
    """Iteration order, ties and determinism."""

    def test_idle_pool_considered_first(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        holdings = Holdings(balance=Decimal("10000"), positions={"A": Decimal("10000")})
        result = decide(
            "alice",
            holdings,
            [quote("A", "5.0"), quote("B", "9.0")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )

        assert result is not None
        assert result.from_destination is None
        assert result.gross_delta == Decimal("9.0")

    def test_destinations_iterated_by_id(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        holdings = Holdings(positions={"C": Decimal("10000"), "A": Decimal("10000")})
        result = decide(
            "alice",
            holdings,
            [quote("A", "2.0"), quote("B", "9.0"), quote("C", "1.0")],
            ["A", "B", "C"],
            prefs,
            limits,
            costs,
        )

        assert result is not None
        assert result.from_destination == "A"

    def test_rate_tie_picks_lowest_id(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        holdings = Holdings(balance=Decimal("10000"))
        result = decide(
            "alice",
            holdings,
            [quote("C", "7.0"), quote("B", "7.0")],
            ["B", "C"],
            prefs,
            limits,
            costs,
        )

        assert result is not None
        assert result.to_destination == "B"

    def test_already_at_best_destination(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        holdings = Holdings(positions={"B": Decimal("10000")})
        result = decide(
            "alice",
            holdings,
            [quote("A", "5.0"), quote("B", "6.8")],
            ["A", "B"],
            prefs,
            limits,
            costs,
        )
        assert result is None

    def test_identical_inputs_identical_bytes(
        self, prefs: Preferences, limits: DecisionLimits, costs: CostModel
    ) -> None:
        quotes = [quote("B", "6.8"), quote("A", "5.0"), quote("C", "6.1")]
        args = ("alice", position_in_a())

        first = decide(*args, quotes, ["A", "B", "C"], prefs, limits, costs)
        second = decide(*args, list(reversed(quotes)), ["C", "B", "A"], prefs, limits, costs)

        assert first is not None
        assert first.model_dump_json() == second.model_dump_json()
        assert first.fingerprint == second.fingerprint

    def test_latest_quote_per_destination_wins(self) -> None:
        older = quote("A", "5.0")
        newer = YieldQuote(
            destination="A",
            rate=Decimal("4.0"),
            liquidity=Decimal("1000000"),
            utilization=Decimal("0.5"),
            observed_at=older.observed_at + timedelta(minutes=5),
        )

        assert latest_quotes([newer, older])["A"].rate == Decimal("4.0")


class TestCostModel:
    """Tests for move cost annualization."""

    def test_flat_cost_annualized(self) -> None:
        model = CostModel(fixed_cost=Decimal("30"), amortization_days=365)
        assert model.annualized_pct(Decimal("10000")) == Decimal("0.3")

    def test_shorter_horizon_costs_more(self) -> None:
        model = CostModel(fixed_cost=Decimal("30"), amortization_days=73)
        assert model.annualized_pct(Decimal("10000")) == Decimal("1.5")

    def test_proportional_fee(self) -> None:
        model = CostModel(proportional_bps=Decimal("10"), amortization_days=365)
        assert model.annualized_pct(Decimal("123456")) == Decimal("0.1")
