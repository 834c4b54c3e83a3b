"""
Ledger module.

Authoritative account state, permission enforcement, fund movement and the
sequenced change feed consumed by the permission mirror.
"""

from rebalance_engine.ledger.allowlist import IndexedSet
from rebalance_engine.ledger.errors import (
    ErrorCategory,
    ErrorCode,
    LedgerError,
    LedgerOperationError,
    LedgerResult,
)
from rebalance_engine.ledger.feed import ChangeFeed, FeedGapError
from rebalance_engine.ledger.ledger import Ledger
from rebalance_engine.ledger.models import (
    REGISTRY_STREAM,
    AccountView,
    AllowlistChange,
    LedgerEvent,
    LedgerEventType,
)

__all__ = [
    "REGISTRY_STREAM",
    "AccountView",
    "AllowlistChange",
    "ChangeFeed",
    "ErrorCategory",
    "ErrorCode",
    "FeedGapError",
    "IndexedSet",
    "Ledger",
    "LedgerError",
    "LedgerEvent",
    "LedgerEventType",
    "LedgerOperationError",
    "LedgerResult",
]
