"""
Offer push events for one viewer.

Push payloads are hints: every relevant change triggers an authoritative
re-fetch of the viewer's offers, and the fetched list replaces local state
wholesale. Re-fetches are coalesced so a burst of changes costs at most one
fetch in flight plus one follow-up.

The router also keeps the latest role-tagged event so a UI can show a
short-lived "live activity" notice.

A dropped offer channel gets one re-subscribe attempt; if that fails the
router is degraded until `resubscribe()` succeeds.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from market_pulse.config import config
from market_pulse.coordinator import DEGRADED_MESSAGE
from market_pulse.events import DashboardEvent, EventBus
from market_pulse.exceptions import FetchError, SubscriptionError
from market_pulse.models import (
    ChangeDescriptor,
    ChangeType,
    EntityType,
    OfferRole,
    RoleTaggedOfferEvent,
    SubscriptionHandle,
    parse_timestamp,
    utcnow,
)
from market_pulse.observability import get_logger, metrics
from market_pulse.payloads import OfferChange, parse_change
from market_pulse.resilience import RESUBSCRIBE_RETRY, RetryConfig, retry_with_backoff
from market_pulse.source import EventSource

logger = get_logger(__name__)

Record = Dict[str, Any]
OfferFetcher = Callable[[str], Awaitable[List[Record]]]

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


async def fetch_viewer_offers(source: EventSource, viewer_id: str) -> List[Record]:
    """Offers where the viewer is buyer or seller, newest first."""
    as_buyer, as_seller = await asyncio.gather(
        source.fetch_range(EntityType.OFFER, {"buyer_id": viewer_id}),
        source.fetch_range(EntityType.OFFER, {"seller_id": viewer_id}),
    )

    merged: Dict[str, Record] = {}
    for offer in as_buyer + as_seller:
        if offer.get("id") is not None:
            merged[str(offer["id"])] = offer

    return sorted(
        merged.values(),
        key=lambda o: parse_timestamp(o.get("created_at")) or _OLDEST,
        reverse=True,
    )


class OfferUpdateRouter:
    """
    Routes offer changes to one viewer's offer list.

    Usage:
        router = OfferUpdateRouter(source, viewer_id="u-1")
        await router.start()
        router.is_live()          # True for 5s after a relevant change
        router.received_offers()  # offers where u-1 is the seller
        router.teardown()
    """

    def __init__(
        self,
        source: EventSource,
        viewer_id: str,
        fetch_offers: Optional[OfferFetcher] = None,
        recency_window_ms: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        event_bus: Optional[EventBus] = None,
        retry_config: RetryConfig = RESUBSCRIBE_RETRY,
    ):
        self.source = source
        self.viewer_id = str(viewer_id)
        self.recency_window = timedelta(
            milliseconds=recency_window_ms or config.analytics.recency_window_ms
        )
        self.clock = clock or utcnow
        self.event_bus = event_bus
        self.retry_config = retry_config
        self._fetch_offers = fetch_offers or (lambda viewer: fetch_viewer_offers(source, viewer))

        self._offers: List[Record] = []
        self._latest: Optional[RoleTaggedOfferEvent] = None
        self._handle: Optional[SubscriptionHandle] = None
        self._refetch_task: Optional[asyncio.Task] = None
        self._dirty = False
        self._torn_down = False
        self._degraded = False

        self.fetch_count = 0
        self.last_error: Optional[Exception] = None

    # ───────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ───────────────────────────────────────────────────────────────────────────

    async def start(self, initial_fetch: bool = True) -> None:
        """Subscribe to offer changes and (optionally) load the current list."""
        if self._torn_down:
            raise RuntimeError("router has been torn down")
        await self._subscribe()
        if initial_fetch:
            await self.request_refetch()

    async def resubscribe(self) -> bool:
        """
        Try the offer channel again after live updates were given up on.

        On success the list is re-fetched, since changes made while the
        channel was down were never pushed.
        """
        if self._torn_down or not self._degraded:
            return False
        if not await self._subscribe():
            return False
        self.request_refetch()
        return True

    def teardown(self) -> None:
        """Stop receiving changes. Idempotent; late fetch results are dropped."""
        if self._torn_down:
            return
        self._torn_down = True
        if self._handle is not None:
            self._handle.cancel()
        logger.debug(f"Offer router for {self.viewer_id} torn down")

    @property
    def active(self) -> bool:
        return not self._torn_down and self._handle is not None and self._handle.active

    @property
    def degraded(self) -> bool:
        """True once re-subscribing failed: offers may be stale."""
        return self._degraded

    async def _subscribe(self) -> bool:
        async def attempt() -> SubscriptionHandle:
            return self.source.subscribe(EntityType.OFFER, self._on_change, on_drop=self._on_drop)

        try:
            handle = await retry_with_backoff(
                attempt,
                config=self.retry_config,
                retryable_exceptions=(SubscriptionError,),
            )
        except SubscriptionError as e:
            await self._mark_degraded(e)
            return False

        if self._torn_down:
            handle.cancel()
            return False

        self._handle = handle
        if self._degraded:
            self._degraded = False
            logger.info(f"Offer updates for {self.viewer_id} restored")
            if self.event_bus:
                await self.event_bus.emit(
                    DashboardEvent.LIVE_UPDATES_RESTORED,
                    {"entity": EntityType.OFFER.value, "viewer_id": self.viewer_id},
                )
        return True

    async def _mark_degraded(self, error: SubscriptionError) -> None:
        newly = not self._degraded
        self._degraded = True
        metrics.increment("subscription_failures")
        logger.error(
            f"{DEGRADED_MESSAGE} (offers for {self.viewer_id}: {error})",
            extra={"viewer_id": self.viewer_id},
        )
        if newly and self.event_bus:
            await self.event_bus.emit(
                DashboardEvent.LIVE_UPDATES_DEGRADED,
                {"entity": EntityType.OFFER.value, "viewer_id": self.viewer_id, "message": DEGRADED_MESSAGE},
            )

    # ───────────────────────────────────────────────────────────────────────────
    # Push handling
    # ───────────────────────────────────────────────────────────────────────────

    async def _on_change(self, descriptor: ChangeDescriptor) -> None:
        if self._torn_down:
            return

        change = parse_change(descriptor)
        if not isinstance(change, OfferChange):
            logger.debug("Ignoring unparseable offer change", extra={"reason": getattr(change, "reason", None)})
            return

        role = change.role_of(self.viewer_id)
        if role is None:
            return

        event = RoleTaggedOfferEvent(
            offer=change.model_dump(mode="json"),
            role=OfferRole(role),
            received_at=self.clock(),
            change_type=descriptor.change_type,
        )
        self._latest = event
        metrics.increment("offer_events_routed")
        self.request_refetch()

        if self.event_bus:
            await self.event_bus.emit(
                DashboardEvent.OFFER_ACTIVITY,
                {**event.to_dict(), "viewer_id": self.viewer_id, "message": self._message_for(event)},
            )

    async def _on_drop(self, error: SubscriptionError) -> None:
        if self._torn_down:
            return
        self._handle = None
        logger.warning(
            f"Offer updates for {self.viewer_id} dropped, re-subscribing",
            extra={"viewer_id": self.viewer_id, "error": str(error)},
        )
        if await self._subscribe():
            # Changes made while the channel was down were never pushed
            self.request_refetch()

    def request_refetch(self) -> "asyncio.Task[None]":
        """
        Start an authoritative re-fetch, or mark the running one dirty.

        Returns the task that will have installed the freshest list once done.
        """
        if self._refetch_task is not None and not self._refetch_task.done():
            self._dirty = True
            return self._refetch_task
        self._refetch_task = asyncio.ensure_future(self._refetch_loop())
        return self._refetch_task

    async def wait_for_refetch(self) -> None:
        """Wait until no re-fetch is running."""
        while self._refetch_task is not None and not self._refetch_task.done():
            await asyncio.wait([self._refetch_task])

    async def _refetch_loop(self) -> None:
        while True:
            self._dirty = False
            self.fetch_count += 1
            try:
                offers: Optional[List[Record]] = await self._fetch_offers(self.viewer_id)
            except FetchError as e:
                self.last_error = e
                offers = None
                logger.error(
                    f"Refreshing offers for {self.viewer_id} failed: {e}",
                    extra={"viewer_id": self.viewer_id, "error_kind": e.kind},
                )
            except Exception as e:
                self.last_error = e
                offers = None
                metrics.increment("offer_refetch_failures")
                logger.error(f"Refreshing offers for {self.viewer_id} failed: {e}", exc_info=True)

            if self._torn_down:
                logger.debug("Dropping offer list fetched after teardown")
                return

            if offers is not None:
                self._offers = list(offers)
                self.last_error = None

            if not self._dirty:
                return

    # ───────────────────────────────────────────────────────────────────────────
    # Views
    # ───────────────────────────────────────────────────────────────────────────

    @property
    def offers(self) -> List[Record]:
        return list(self._offers)

    def sent_offers(self) -> List[Record]:
        """Offers the viewer made (viewer is the buyer)."""
        return [o for o in self._offers if str(o.get("buyer_id")) == self.viewer_id]

    def received_offers(self) -> List[Record]:
        """Offers made to the viewer (viewer is the seller)."""
        return [o for o in self._offers if str(o.get("seller_id")) == self.viewer_id]

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.live_activity(now) is not None

    def live_activity(self, now: Optional[datetime] = None) -> Optional[RoleTaggedOfferEvent]:
        """The latest event while it is still within the recency window."""
        if self._latest is None:
            return None
        if self._latest.is_live(now or self.clock(), self.recency_window):
            return self._latest
        return None

    def dismiss(self) -> None:
        """Hide the live activity notice before it expires."""
        self._latest = None

    @staticmethod
    def _message_for(event: RoleTaggedOfferEvent) -> str:
        if event.change_type is not ChangeType.INSERT:
            return "An offer was updated"
        if event.role is OfferRole.SELLER:
            return "You received a new offer!"
        return "Your offer was sent!"

    def activity_message(self, now: Optional[datetime] = None) -> Optional[str]:
        event = self.live_activity(now)
        return self._message_for(event) if event else None
