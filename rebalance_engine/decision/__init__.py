"""
Decision engine: pure proposal logic.
"""

from rebalance_engine.decision.engine import decide, latest_quotes, passes_safety, select_best
from rebalance_engine.decision.models import CostModel, DecisionLimits, Preferences, RiskTier

__all__ = [
    "CostModel",
    "DecisionLimits",
    "Preferences",
    "RiskTier",
    "decide",
    "latest_quotes",
    "passes_safety",
    "select_best",
]
