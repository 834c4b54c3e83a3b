"""
Per-account submission leases.

At most one rebalance may be in flight per account. Acquisition is a
synchronous check-and-set on the event loop thread, so concurrent cycles
cannot both win the same account.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Lease:
    account: str
    holder: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def age_s(self, now: datetime | None = None) -> float:
        return ((now or datetime.now(UTC)) - self.acquired_at).total_seconds()


class AccountLockManager:
    """Non-blocking per-account leases with stale-lease detection."""

    def __init__(self, stale_after_s: float):
        self._stale_after_s = stale_after_s
        self._leases: dict[str, Lease] = {}

    def try_acquire(self, account: str, holder: str) -> bool:
        existing = self._leases.get(account)
        if existing is not None:
            logger.debug(
                "Lease for %s held by %s (%.1fs); %s skipped",
                account,
                existing.holder,
                existing.age_s(),
                holder,
            )
            return False
        self._leases[account] = Lease(account=account, holder=holder)
        return True

    def release(self, account: str, holder: str) -> None:
        existing = self._leases.get(account)
        if existing is None:
            return
        if existing.holder != holder:
            logger.warning(
                "Lease release for %s by %s ignored; held by %s", account, holder, existing.holder
            )
            return
        del self._leases[account]

    def is_held(self, account: str) -> bool:
        return account in self._leases

    def holder_of(self, account: str) -> str | None:
        lease = self._leases.get(account)
        return lease.holder if lease else None

    def stale_leases(self) -> list[Lease]:
        """Leases held longer than the stale threshold (a stuck submission)."""
        now = datetime.now(UTC)
        return [l for l in self._leases.values() if l.age_s(now) > self._stale_after_s]

    def __len__(self) -> int:
        return len(self._leases)
