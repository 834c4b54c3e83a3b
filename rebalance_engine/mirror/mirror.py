"""
Permission mirror.

Read-optimized, non-authoritative copy of ledger permissions and holdings.
Kept current from the ledger change feed; any gap in an account's sequence
numbers triggers a full re-read of that account from the ledger.
"""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from rebalance_engine.domain import Holdings
from rebalance_engine.ledger import REGISTRY_STREAM, AccountView, Ledger, LedgerEvent, LedgerEventType
from rebalance_engine.logging import get_logger

logger = get_logger(__name__)


class SnapshotSource(str, Enum):
    FEED = "feed"
    LEDGER = "ledger"


class AccountSnapshot(BaseModel):
    """Last-known ledger state of one account."""

    account: str
    agent: str | None = None
    allowlist: list[str] = Field(default_factory=list)
    holdings: Holdings = Field(default_factory=Holdings)
    sequence: int = 0
    refreshed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source: SnapshotSource = SnapshotSource.LEDGER

    @classmethod
    def from_view(cls, view: AccountView) -> "AccountSnapshot":
        return cls(
            account=view.account,
            agent=view.agent,
            allowlist=list(view.allowlist),
            holdings=view.holdings,
            sequence=view.sequence,
            source=SnapshotSource.LEDGER,
        )

    def differs_from(self, view: AccountView) -> bool:
        return (
            self.agent != view.agent
            or set(self.allowlist) != set(view.allowlist)
            or self.holdings != view.holdings
        )


class PermissionMirror:
    """
    In-memory mirror of per-account ledger state.

    Advisory only: the ledger re-validates every move against its own state.
    """

    def __init__(self, ledger: Ledger) -> None:
        self._ledger = ledger
        self._snapshots: dict[str, AccountSnapshot] = {}
        self._applied_count = 0
        self._gap_count = 0
        self._resync_count = 0

    def get(self, account: str) -> AccountSnapshot | None:
        return self._snapshots.get(account)

    def accounts(self) -> list[str]:
        return sorted(self._snapshots)

    def accounts_delegated_to(self, agent: str) -> list[str]:
        return sorted(a for a, s in self._snapshots.items() if s.agent == agent)

    def sequence_of(self, account: str) -> int:
        snapshot = self._snapshots.get(account)
        return snapshot.sequence if snapshot else 0

    def install(self, view: AccountView) -> AccountSnapshot:
        """
        Replace an account's snapshot with a direct ledger read.

        A read older than what the mirror already holds is ignored.
        """
        current = self._snapshots.get(view.account)
        if current is not None and view.sequence < current.sequence:
            return current
        snapshot = AccountSnapshot.from_view(view)
        self._snapshots[view.account] = snapshot
        return snapshot

    async def resync(self, account: str, reason: str = "manual") -> AccountSnapshot:
        """Re-read one account from the ledger."""
        view = await self._ledger.get_account(account)
        self._resync_count += 1
        logger.info("Mirror resync for %s (%s) at sequence %d", account, reason, view.sequence)
        return self.install(view)

    async def resync_all(self, reason: str = "full") -> int:
        """Re-read every ledger account. Returns the number of accounts read."""
        accounts = await self._ledger.list_accounts()
        for account in accounts:
            await self.resync(account, reason)
        return len(accounts)

    async def apply(self, event: LedgerEvent) -> bool:
        """
        Apply a change notification.

        Returns True if the event was applied directly, False if it was a
        duplicate or triggered a resync.
        """
        if event.account == REGISTRY_STREAM:
            return False

        expected = self.sequence_of(event.account) + 1
        if event.sequence < expected:
            return False
        if event.sequence > expected:
            self._gap_count += 1
            logger.warning(
                "Sequence gap for %s: expected %d, got %d; re-reading from ledger",
                event.account,
                expected,
                event.sequence,
            )
            await self.resync(event.account, reason="sequence gap")
            return False

        current = self._snapshots.get(event.account) or AccountSnapshot(account=event.account)
        update: dict[str, object] = {
            "sequence": event.sequence,
            "refreshed_at": datetime.now(UTC),
            "source": SnapshotSource.FEED,
        }
        holdings = event.holdings()
        if holdings is not None:
            update["holdings"] = holdings
        if event.type == LedgerEventType.AGENT_SET:
            update["agent"] = event.payload.get("agent")
        elif event.type == LedgerEventType.ALLOWLIST_CHANGED:
            update["allowlist"] = list(event.payload.get("allowlist", []))

        self._snapshots[event.account] = current.model_copy(update=update)
        self._applied_count += 1
        return True

    def clear(self) -> None:
        self._snapshots.clear()

    def get_stats(self) -> dict[str, int]:
        return {
            "accounts": len(self._snapshots),
            "events_applied": self._applied_count,
            "sequence_gaps": self._gap_count,
            "resyncs": self._resync_count,
        }
