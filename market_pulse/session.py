"""
Dashboard mount lifecycle.

One session per mounted dashboard: it owns exactly one coordinator, runs the
aggregation engine and installs the resulting snapshots. Every run is
numbered; a result is installed only while the session is mounted and only
if no newer run has already been installed.

Usage:
    session = DashboardSession(source, event_bus=bus)
    await session.mount()
    session.snapshot.to_dict()
    session.unmount()
"""
from typing import Any, Dict, Iterable, Optional

from market_pulse.aggregation import AggregationEngine
from market_pulse.config import AnalyticsSettings, config
from market_pulse.coordinator import CoordinatorState, DebounceCoordinator
from market_pulse.events import DashboardEvent, EventBus
from market_pulse.models import DashboardSnapshot, EntityType, Granularity, TimeWindow
from market_pulse.observability import get_logger, metrics
from market_pulse.resilience import RESUBSCRIBE_RETRY, RetryConfig
from market_pulse.source import EventSource

logger = get_logger(__name__)


class DashboardSession:
    """Mount/refresh/unmount for one dashboard view."""

    def __init__(
        self,
        source: EventSource,
        settings: Optional[AnalyticsSettings] = None,
        event_bus: Optional[EventBus] = None,
        engine: Optional[AggregationEngine] = None,
        retry_config: RetryConfig = RESUBSCRIBE_RETRY,
    ):
        self.source = source
        self.settings = settings or config.analytics
        self.event_bus = event_bus or EventBus()
        self.engine = engine or AggregationEngine(source, self.settings)
        self.retry_config = retry_config

        self.coordinator: Optional[DebounceCoordinator] = None
        self._snapshot: Optional[DashboardSnapshot] = None
        self._generation = 0
        self._installed_generation = 0
        self._mounted = False
        # Runs numbered at or below this belong to an earlier mount
        self._mount_floor = 0

    @property
    def snapshot(self) -> Optional[DashboardSnapshot]:
        return self._snapshot

    @property
    def generation(self) -> int:
        """Number of the most recently started run."""
        return self._generation

    @property
    def installed_generation(self) -> int:
        return self._installed_generation

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def degraded(self) -> bool:
        return self.coordinator is not None and self.coordinator.degraded

    @property
    def coordinator_state(self) -> Optional[CoordinatorState]:
        return self.coordinator.state if self.coordinator else None

    async def mount(self, entities: Optional[Iterable[EntityType]] = None) -> Optional[DashboardSnapshot]:
        """
        Subscribe to changes and compute the first snapshot.

        Subscriptions go first so changes landing during the initial fetch
        still schedule a refresh.
        """
        if self._mounted:
            raise RuntimeError("session is already mounted")
        self._mounted = True
        self._mount_floor = self._generation

        self.coordinator = DebounceCoordinator(
            self.source,
            recompute=self.refresh,
            debounce_window_ms=self.settings.debounce_window_ms,
            event_bus=self.event_bus,
            retry_config=self.retry_config,
        )
        await self.coordinator.start(entities or self.settings.watched)
        return await self.refresh()

    async def refresh(
        self,
        window: Optional[TimeWindow] = None,
        granularity: Optional[Granularity] = None,
    ) -> Optional[DashboardSnapshot]:
        """
        Run the engine and install the result.

        Returns the installed snapshot, or None when the result was dropped
        (session unmounted meanwhile, or a newer run already installed).
        """
        if not self._mounted:
            logger.debug("Refresh requested on an unmounted session")
            return None

        self._generation += 1
        generation = self._generation
        snapshot = await self.engine.run(window, granularity)
        return await self._install(generation, snapshot)

    async def restore_live_updates(self) -> int:
        """Re-open degraded push channels; returns how many came back."""
        if not self._mounted or self.coordinator is None or not self.coordinator.degraded:
            return 0
        return await self.coordinator.resubscribe_degraded()

    async def _install(self, generation: int, snapshot: DashboardSnapshot) -> Optional[DashboardSnapshot]:
        if not self._mounted or generation <= self._mount_floor:
            metrics.increment("results_dropped_after_unmount")
            logger.info(f"Dropping snapshot #{snapshot.snapshot_id}: session unmounted since the run started")
            return None

        if generation <= self._installed_generation:
            metrics.increment("stale_results_dropped")
            logger.info(
                f"Dropping stale snapshot #{snapshot.snapshot_id}",
                extra={"generation": generation, "installed_generation": self._installed_generation},
            )
            return None

        self._installed_generation = generation
        self._snapshot = snapshot

        await self.event_bus.emit(DashboardEvent.SNAPSHOT_PUBLISHED, self.published_payload(generation, snapshot))
        if not snapshot.is_complete:
            await self.event_bus.emit(
                DashboardEvent.REFRESH_FAILED,
                {
                    "snapshot_id": snapshot.snapshot_id,
                    "failed_families": [f.value for f in snapshot.failed_families],
                },
            )
        return snapshot

    @staticmethod
    def published_payload(generation: int, snapshot: DashboardSnapshot) -> Dict[str, Any]:
        return {
            "generation": generation,
            "snapshot_id": snapshot.snapshot_id,
            "failed_families": [f.value for f in snapshot.failed_families],
            "snapshot": snapshot.to_dict(),
        }

    def unmount(self) -> None:
        """Tear down the coordinator; results still in flight will be dropped. Idempotent."""
        if not self._mounted:
            return
        self._mounted = False
        if self.coordinator is not None:
            self.coordinator.teardown()
        logger.info("Dashboard session unmounted")
