"""
Mirror Reconciler.

Two background loops keep the permission mirror close to the ledger:
- a change-feed consumer that resumes from the last acknowledged offset and
  falls back to a full re-read on an unrecoverable gap
- a periodic full re-read that bounds staleness regardless of feed traffic
The ledger is always the source of truth.
"""

import asyncio
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from rebalance_engine.ledger import FeedGapError, Ledger
from rebalance_engine.logging import get_logger
from rebalance_engine.mirror.mirror import PermissionMirror
from rebalance_engine.runtime.event_bus import Event, EventBus, EventType

logger = get_logger(__name__)


class MirrorReconciliationResult(BaseModel):
    """Result of one full mirror re-read."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    accounts_checked: int = 0
    drifted_accounts: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def has_drift(self) -> bool:
        return bool(self.drifted_accounts)


class MirrorReconciler:
    """Background synchronization of the permission mirror."""

    def __init__(
        self,
        mirror: PermissionMirror,
        ledger: Ledger,
        resync_interval_s: float,
        event_bus: EventBus | None = None,
        reconnect_delay_s: float = 1.0,
    ):
        self._mirror = mirror
        self._ledger = ledger
        self._resync_interval_s = resync_interval_s
        self._event_bus = event_bus
        self._reconnect_delay_s = reconnect_delay_s

        self._running = False
        self._consumer_task: asyncio.Task[None] | None = None
        self._resync_task: asyncio.Task[None] | None = None
        self._last_acked_offset = 0
        self._last_result: MirrorReconciliationResult | None = None
        self._feed_fallbacks = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_acked_offset(self) -> int:
        return self._last_acked_offset

    @property
    def last_result(self) -> MirrorReconciliationResult | None:
        return self._last_result

    async def start(self) -> None:
        """Bootstrap the mirror from the ledger and start both loops."""
        if self._running:
            logger.warning("Mirror reconciler already running")
            return

        await self._full_reread("bootstrap")
        self._running = True
        self._consumer_task = asyncio.create_task(self._consume_loop())
        self._resync_task = asyncio.create_task(self._resync_loop())
        logger.info(
            "Mirror reconciler started (resync interval: %ss, resume offset: %d)",
            self._resync_interval_s,
            self._last_acked_offset,
        )

    async def stop(self) -> None:
        self._running = False
        for task in (self._consumer_task, self._resync_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._consumer_task = None
        self._resync_task = None
        logger.info("Mirror reconciler stopped")

    async def _full_reread(self, reason: str) -> None:
        # Capture the head first: anything after it arrives through the feed
        head = self._ledger.feed.head_offset
        await self._mirror.resync_all(reason)
        self._last_acked_offset = head

    async def _consume_loop(self) -> None:
        while self._running:
            try:
                async for event in self._ledger.feed.stream(after_offset=self._last_acked_offset):
                    await self._mirror.apply(event)
                    self._last_acked_offset = event.offset
            except asyncio.CancelledError:
                break
            except FeedGapError as e:
                self._feed_fallbacks += 1
                logger.warning("Change feed gap (%s); falling back to full re-read", e)
                await self._full_reread("feed gap")
                await self._publish(EventType.MIRROR_RESYNCED, {"reason": "feed gap"})
            except Exception as e:
                logger.error("Change feed consumer error: %s; reconnecting", e)
                await asyncio.sleep(self._reconnect_delay_s)

    async def _resync_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._resync_interval_s)
                self._last_result = await self.reconcile_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Mirror reconciliation error: %s", e)
                self._last_result = MirrorReconciliationResult(error=str(e))

    async def reconcile_once(self) -> MirrorReconciliationResult:
        """Re-read every account from the ledger and report where the mirror drifted."""
        accounts = await self._ledger.list_accounts()
        drifted: list[str] = []

        for account in accounts:
            view = await self._ledger.get_account(account)
            snapshot = self._mirror.get(account)
            if snapshot is None or (snapshot.sequence <= view.sequence and snapshot.differs_from(view)):
                drifted.append(account)
            self._mirror.install(view)

        result = MirrorReconciliationResult(
            accounts_checked=len(accounts),
            drifted_accounts=drifted,
        )
        self._last_result = result

        if result.has_drift:
            logger.warning("Mirror drift corrected for accounts: %s", drifted)
            await self._publish(EventType.MIRROR_DRIFT, {"accounts": drifted})
        return result

    async def _publish(self, event_type: EventType, data: dict[str, object]) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(Event(type=event_type, data=data))

    def get_stats(self) -> dict[str, object]:
        return {
            "running": self._running,
            "last_acked_offset": self._last_acked_offset,
            "feed_fallbacks": self._feed_fallbacks,
            "last_result": self._last_result.model_dump(mode="json") if self._last_result else None,
            **self._mirror.get_stats(),
        }
