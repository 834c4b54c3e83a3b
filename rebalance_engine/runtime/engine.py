"""
Engine runtime: builds and owns the long-lived components.

DEMO mode uses simulated destinations; LIVE mode talks to the venue
gateway over HTTP. Started and stopped from the FastAPI lifespan.
"""

from rebalance_engine.adapters import (
    AdapterRegistry,
    DestinationAdapter,
    HttpDestination,
    SimulatedDestination,
)
from rebalance_engine.config import Settings
from rebalance_engine.decision import Preferences
from rebalance_engine.ledger import ChangeFeed, Ledger
from rebalance_engine.logging import get_logger
from rebalance_engine.mirror import MirrorReconciler, PermissionMirror
from rebalance_engine.orchestrator import PreferenceBook, RebalanceOrchestrator, set_orchestrator
from rebalance_engine.runtime.event_bus import Event, EventBus, EventType, get_event_bus

logger = get_logger(__name__)


def build_adapters(settings: Settings) -> AdapterRegistry:
    """One adapter per registered destination."""
    adapters: list[DestinationAdapter] = []
    for destination in settings.registered_destinations:
        if settings.is_demo:
            adapters.append(
                SimulatedDestination(destination, rate=settings.demo_rates.get(destination, "0"))
            )
        else:
            adapters.append(
                HttpDestination(
                    destination,
                    base_url=settings.venue_base_url,
                    api_key=settings.venue_api_key,
                    timeout=settings.venue_request_timeout,
                    max_retries=settings.venue_max_retries,
                )
            )
    return AdapterRegistry(adapters)


class EngineRuntime:
    """Container for ledger, mirror, reconciler and orchestrator."""

    def __init__(
        self,
        settings: Settings,
        adapters: AdapterRegistry | None = None,
        event_bus: EventBus | None = None,
        persist: bool = True,
    ):
        self.settings = settings
        self.event_bus = event_bus or get_event_bus()
        self.adapters = adapters or build_adapters(settings)
        self.ledger = Ledger(
            self.adapters,
            admin=settings.admin_address,
            data_dir=settings.ledger_dir if persist else None,
            feed=ChangeFeed(retention=settings.feed_retention),
            proof_retention=settings.move_proof_retention,
        )
        self.mirror = PermissionMirror(self.ledger)
        self.reconciler = MirrorReconciler(
            self.mirror,
            self.ledger,
            resync_interval_s=settings.mirror_resync_interval_s,
            event_bus=self.event_bus,
        )
        preferences_path = settings.preferences_file or settings.data_dir / "preferences.json"
        self.orchestrator = RebalanceOrchestrator(
            settings,
            self.ledger,
            self.mirror,
            self.adapters,
            event_bus=self.event_bus,
            preferences=PreferenceBook(Preferences(), preferences_path if persist else None),
            persist=persist,
        )
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, schedule: bool = True) -> None:
        """Register configured destinations, bootstrap the mirror and start loops."""
        if self._started:
            return
        for destination in self.settings.registered_destinations:
            result = await self.ledger.register_destination(
                destination, caller=self.settings.admin_address
            )
            if not result.ok:
                logger.error("Failed to register %s: %s", destination, result.error)

        await self.reconciler.start()
        await self.orchestrator.init()
        if schedule:
            await self.orchestrator.start()
        set_orchestrator(self.orchestrator)
        self._started = True
        await self.event_bus.publish(
            Event(type=EventType.ENGINE_STARTED, data={"mode": self.settings.mode.value})
        )

    async def stop(self) -> None:
        if not self._started:
            return
        await self.orchestrator.shutdown()
        await self.reconciler.stop()
        for destination in self.adapters.destinations:
            adapter = self.adapters.get(destination)
            if isinstance(adapter, HttpDestination):
                await adapter.close()
        set_orchestrator(None)
        self._started = False
        await self.event_bus.publish(Event(type=EventType.ENGINE_STOPPED))


# Module-level singleton
_runtime: EngineRuntime | None = None


def get_runtime() -> EngineRuntime | None:
    """Get the global engine runtime."""
    return _runtime


def set_runtime(runtime: EngineRuntime | None) -> None:
    """Set the global engine runtime (called from main.py lifespan)."""
    global _runtime
    _runtime = runtime
