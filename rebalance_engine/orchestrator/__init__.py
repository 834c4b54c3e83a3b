"""
Execution orchestrator: scheduled rebalance cycles, retries and the circuit breaker.
"""

from rebalance_engine.orchestrator.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from rebalance_engine.orchestrator.locks import AccountLockManager, Lease
from rebalance_engine.orchestrator.models import (
    AccountOutcome,
    CycleReport,
    RebalanceRecord,
    RecordOutcome,
)
from rebalance_engine.orchestrator.orchestrator import (
    RebalanceOrchestrator,
    get_orchestrator,
    set_orchestrator,
)
from rebalance_engine.orchestrator.preferences import PreferenceBook
from rebalance_engine.orchestrator.quotes import QuoteFetcher
from rebalance_engine.orchestrator.records import RebalanceRecordLog
from rebalance_engine.orchestrator.retry import RetryPolicy

__all__ = [
    "AccountLockManager",
    "AccountOutcome",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CycleReport",
    "Lease",
    "PreferenceBook",
    "QuoteFetcher",
    "RebalanceOrchestrator",
    "RebalanceRecord",
    "RebalanceRecordLog",
    "RecordOutcome",
    "RetryPolicy",
    "get_orchestrator",
    "set_orchestrator",
]
