"""
Decision engine.

Pure, deterministic mapping from (holdings, quotes, allowlist, preferences)
to at most one RebalanceProposal. No I/O, no clock, no randomness; identical
inputs always produce an identical proposal or None. Missing data excludes a
destination rather than raising.
"""

from collections.abc import Iterable
from decimal import Decimal

from rebalance_engine.decision.models import CostModel, DecisionLimits, Preferences
from rebalance_engine.domain import Holdings, RebalanceProposal, YieldQuote

IDLE_RATE = Decimal("0")


def latest_quotes(quotes: Iterable[YieldQuote]) -> dict[str, YieldQuote]:
    """One quote per destination; the most recently observed wins."""
    by_destination: dict[str, YieldQuote] = {}
    for quote in sorted(quotes, key=lambda q: (q.destination, q.observed_at, q.rate)):
        by_destination[quote.destination] = quote
    return by_destination


def passes_safety(quote: YieldQuote, preferences: Preferences, limits: DecisionLimits) -> bool:
    """Liquidity floor, utilization ceiling, tier rate ceiling, positive rate."""
    return (
        quote.rate > 0
        and quote.liquidity >= limits.min_liquidity
        and quote.utilization <= limits.max_utilization
        and quote.rate <= limits.ceiling_for(preferences.risk_tier)
    )


def select_best(
    quotes: dict[str, YieldQuote],
    allowlist: Iterable[str],
    preferences: Preferences,
    limits: DecisionLimits,
) -> YieldQuote | None:
    """Highest-rate safe quote among allowlisted destinations; ties -> lowest id."""
    allowed = set(allowlist)
    candidates = [
        q
        for d, q in quotes.items()
        if d in allowed and passes_safety(q, preferences, limits)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda q: (-q.rate, q.destination))


def decide(
    account: str,
    holdings: Holdings,
    quotes: Iterable[YieldQuote],
    allowlist: Iterable[str],
    preferences: Preferences,
    limits: DecisionLimits,
    costs: CostModel,
) -> RebalanceProposal | None:
    """
    Propose at most one move for an account.

    Holdings are examined idle pool first, then destinations by id. The first
    position above the minimum size whose net improvement exceeds the
    threshold is moved, in full, to the best destination.
    """
    by_destination = latest_quotes(quotes)
    best = select_best(by_destination, allowlist, preferences, limits)
    if best is None:
        return None

    for current, amount in holdings.iter_stable():
        if amount <= preferences.min_position_size:
            continue
        if current == best.destination:
            continue

        if current is None:
            current_rate = IDLE_RATE
        else:
            current_quote = by_destination.get(current)
            if current_quote is None:
                continue
            current_rate = current_quote.rate

        gross_delta = best.rate - current_rate
        estimated_cost = costs.annualized_pct(amount)
        net_delta = gross_delta - estimated_cost

        if net_delta > preferences.min_net_improvement:
            return RebalanceProposal(
                account=account,
                from_destination=current,
                to_destination=best.destination,
                amount=amount,
                gross_delta=gross_delta,
                estimated_cost=estimated_cost,
                net_delta=net_delta,
                justification=(
                    f"{best.destination} pays {best.rate}% vs {current_rate}% at "
                    f"{current or 'idle pool'}; net +{net_delta}% after "
                    f"{estimated_cost}% cost exceeds {preferences.min_net_improvement}%"
                ),
            )

    return None
