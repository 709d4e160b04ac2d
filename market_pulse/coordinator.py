"""
Debounced refresh coordination.

Several entity subscriptions feed one coordinator. A burst of changes
collapses into a single recompute that runs once the stream has been quiet
for the debounce window:

    IDLE    --notify-->  PENDING   (timer armed)
    PENDING --notify-->  PENDING   (timer re-armed with a fresh window)
    PENDING --timer-->   IDLE      (recompute invoked once)

Usage:
    coordinator = DebounceCoordinator(source, recompute=session.refresh)
    await coordinator.start()
    ...
    coordinator.teardown()
"""
import asyncio
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from market_pulse.config import config
from market_pulse.events import DashboardEvent, EventBus
from market_pulse.exceptions import SubscriptionError
from market_pulse.models import ChangeDescriptor, EntityType, PendingRefresh, SubscriptionHandle
from market_pulse.observability import correlation_context, get_logger, metrics
from market_pulse.resilience import RESUBSCRIBE_RETRY, RetryConfig, retry_with_backoff
from market_pulse.source import EventSource

logger = get_logger(__name__)

DEGRADED_MESSAGE = "Live updates unavailable, data may be stale"


class CoordinatorState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"


class DebounceCoordinator:
    """
    Owns the push subscriptions of one dashboard mount and the single
    pending refresh they share.

    Recompute failures are logged and the coordinator goes back to IDLE; the
    next change (or a manual refresh) tries again. A channel that cannot be
    (re)opened after one retry marks the coordinator degraded.
    """

    def __init__(
        self,
        source: EventSource,
        recompute: Callable[[], Awaitable[Any]],
        debounce_window_ms: Optional[int] = None,
        event_bus: Optional[EventBus] = None,
        retry_config: RetryConfig = RESUBSCRIBE_RETRY,
    ):
        self.source = source
        self.recompute = recompute
        self.debounce_window_ms = debounce_window_ms or config.analytics.debounce_window_ms
        self.event_bus = event_bus
        self.retry_config = retry_config

        self._pending: Optional[PendingRefresh] = None
        self._handles: Dict[EntityType, SubscriptionHandle] = {}
        self._degraded_entities: Set[EntityType] = set()
        self._recompute_task: Optional[asyncio.Task] = None
        self._torn_down = False

        self.recompute_count = 0
        self.notification_count = 0

    # ───────────────────────────────────────────────────────────────────────────
    # State
    # ───────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> CoordinatorState:
        return CoordinatorState.PENDING if self._pending is not None else CoordinatorState.IDLE

    @property
    def pending(self) -> Optional[PendingRefresh]:
        return self._pending

    @property
    def degraded(self) -> bool:
        return bool(self._degraded_entities)

    @property
    def degraded_entities(self) -> Set[EntityType]:
        return set(self._degraded_entities)

    @property
    def live_subscriptions(self) -> int:
        return sum(1 for handle in self._handles.values() if handle.active)

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    # ───────────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ───────────────────────────────────────────────────────────────────────────

    async def start(self, entities: Optional[Iterable[EntityType]] = None) -> None:
        """Subscribe every entity to this coordinator."""
        if self._torn_down:
            raise RuntimeError("coordinator has been torn down")

        for entity in entities or config.analytics.watched:
            await self._subscribe(entity)

        logger.info(
            f"Watching {self.live_subscriptions} entities for changes",
            extra={"entities": [e.value for e in self._handles],
                   "debounce_window_ms": self.debounce_window_ms},
        )

    async def _subscribe(self, entity: EntityType) -> None:
        async def attempt() -> SubscriptionHandle:
            return self.source.subscribe(
                entity, self._on_change, on_drop=partial(self._on_drop, entity)
            )

        try:
            handle = await retry_with_backoff(
                attempt,
                config=self.retry_config,
                retryable_exceptions=(SubscriptionError,),
            )
        except SubscriptionError as e:
            await self._mark_degraded(entity, e)
            return

        # Teardown may have happened while we were backing off
        if self._torn_down:
            handle.cancel()
            return

        self._handles[entity] = handle
        if entity in self._degraded_entities:
            self._degraded_entities.discard(entity)
            logger.info(f"Live updates restored for {entity.value}")
            if self.event_bus:
                await self.event_bus.emit(
                    DashboardEvent.LIVE_UPDATES_RESTORED, {"entity": entity.value}
                )

    async def resubscribe_degraded(self) -> int:
        """
        Try again to open every channel that was given up on.

        Returns:
            Number of entities whose live updates are back
        """
        if self._torn_down:
            return 0
        entities = list(self._degraded_entities)
        for entity in entities:
            await self._subscribe(entity)
        return sum(1 for entity in entities if entity not in self._degraded_entities)

    def _on_change(self, change: ChangeDescriptor) -> None:
        self.notify(change)

    async def _on_drop(self, entity: EntityType, error: SubscriptionError) -> None:
        if self._torn_down:
            return
        self._handles.pop(entity, None)
        logger.warning(
            f"Subscription to {entity.value} dropped, re-subscribing",
            extra={"entity": entity.value, "error": str(error)},
        )
        await self._subscribe(entity)

    async def _mark_degraded(self, entity: EntityType, error: SubscriptionError) -> None:
        newly = entity not in self._degraded_entities
        self._degraded_entities.add(entity)
        metrics.increment("subscription_failures")
        logger.error(
            f"{DEGRADED_MESSAGE} ({entity.value}: {error})",
            extra={"entity": entity.value},
        )
        if newly and self.event_bus:
            await self.event_bus.emit(
                DashboardEvent.LIVE_UPDATES_DEGRADED,
                {"entity": entity.value, "message": DEGRADED_MESSAGE},
            )

    # ───────────────────────────────────────────────────────────────────────────
    # Debounce
    # ───────────────────────────────────────────────────────────────────────────

    def notify(self, change: Optional[ChangeDescriptor] = None) -> None:
        """Record a change: arm the timer, or re-arm it with a fresh window."""
        if self._torn_down:
            logger.debug("Change ignored after teardown")
            return

        loop = asyncio.get_running_loop()
        now = loop.time()
        delay = self.debounce_window_ms / 1000

        if self._pending is not None:
            self._pending.cancel()

        self._pending = PendingRefresh(
            scheduled_at=now,
            fires_at=now + delay,
            timer_handle=loop.call_later(delay, self._fire),
        )
        self.notification_count += 1
        metrics.increment("change_notifications")

        if change is not None:
            logger.debug(
                f"{change.entity.value} {change.change_type.value}: refresh in {self.debounce_window_ms}ms"
            )

    def _fire(self) -> None:
        self._pending = None
        if self._torn_down:
            return
        self.recompute_count += 1
        metrics.increment("debounced_recomputes")
        self._recompute_task = asyncio.ensure_future(self._run_recompute())

    async def _run_recompute(self) -> None:
        with correlation_context():
            try:
                await self.recompute()
            except Exception as e:
                metrics.increment("recompute_failures")
                logger.error(f"Debounced recompute failed: {e}", exc_info=True)

    async def wait_for_recompute(self) -> None:
        """Wait for the most recent recompute (if any) to finish."""
        task = self._recompute_task
        if task is not None and not task.done():
            await asyncio.wait([task])

    # ───────────────────────────────────────────────────────────────────────────
    # Teardown
    # ───────────────────────────────────────────────────────────────────────────

    def teardown(self) -> None:
        """
        Cancel the pending timer and every subscription.

        Safe to call from any state and any number of times. An in-flight
        recompute is left to finish; its owner decides whether to use it.
        """
        if self._torn_down:
            return
        self._torn_down = True

        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

        for handle in self._handles.values():
            handle.cancel()
        count = len(self._handles)
        self._handles.clear()

        logger.info(f"Coordinator torn down ({count} subscriptions cancelled)")
