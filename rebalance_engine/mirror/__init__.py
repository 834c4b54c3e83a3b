"""
Permission mirror and reconciler.
"""

from rebalance_engine.mirror.mirror import AccountSnapshot, PermissionMirror, SnapshotSource
from rebalance_engine.mirror.reconciler import MirrorReconciler, MirrorReconciliationResult

__all__ = [
    "AccountSnapshot",
    "MirrorReconciler",
    "MirrorReconciliationResult",
    "PermissionMirror",
    "SnapshotSource",
]
