"""
Rebalance Engine

Delegated yield rebalancing with a permission-enforcing ledger:
- Authoritative ledger of balances, agent grants and destination allowlists
- Deterministic decision engine proposing at most one move per account
- Scheduled orchestrator with retries, per-account locking and a circuit breaker
- Permission mirror kept current from the ledger change feed
"""

__version__ = "1.0.0"
__author__ = "Rebalance Engine Team"

from rebalance_engine.config import Settings, get_settings

__all__ = ["__version__", "Settings", "get_settings"]
