"""
Integration tests for market_pulse/offer_router.py

Tests:
- Role tagging and notice messages
- Irrelevant and unparseable payloads
- Recency window boundaries
- Re-fetch coalescing and teardown
"""
import asyncio

import pytest

from market_pulse.events import DashboardEvent, EventBus
from market_pulse.exceptions import TransientFetchError
from market_pulse.models import ChangeType, EntityType, OfferRole
from market_pulse.observability import metrics
from market_pulse.offer_router import OfferUpdateRouter, fetch_viewer_offers
from market_pulse.resilience import RetryConfig
from market_pulse.source import InMemoryEventSource

VIEWER = "u3"
FAST_RETRY = RetryConfig(max_attempts=2, base_delay=0.01, jitter=0)


def offer(offer_id, buyer_id, seller_id, created_at="2026-03-18T11:59:00Z", **extra):
    return {"id": offer_id, "buyer_id": buyer_id, "seller_id": seller_id,
            "amount": "10.00", "status": "pending", "created_at": created_at, **extra}


class GatedFetcher:
    """Offer fetcher that blocks until released."""

    def __init__(self):
        self.calls = 0
        self.gate = asyncio.Event()

    async def __call__(self, viewer_id):
        self.calls += 1
        call = self.calls
        await self.gate.wait()
        return [offer(f"fetch-{call}", viewer_id, "u9")]


@pytest.fixture
def router(source, clock):
    router = OfferUpdateRouter(source, VIEWER, recency_window_ms=5000, clock=clock, retry_config=FAST_RETRY)
    yield router
    router.teardown()


class TestFetchViewerOffers:
    @pytest.mark.asyncio
    async def test_both_roles_newest_first(self, source):
        offers = await fetch_viewer_offers(source, VIEWER)
        assert [o["id"] for o in offers] == ["o3", "o2", "o1"]

    @pytest.mark.asyncio
    async def test_self_offer_listed_once(self):
        source = InMemoryEventSource({EntityType.OFFER: [offer("x", "u1", "u1")]})
        assert [o["id"] for o in await fetch_viewer_offers(source, "u1")] == ["x"]


class TestStart:
    @pytest.mark.asyncio
    async def test_initial_load(self, router, source):
        await router.start()

        assert [o["id"] for o in router.offers] == ["o3", "o2", "o1"]
        assert [o["id"] for o in router.sent_offers()] == ["o1"]
        assert [o["id"] for o in router.received_offers()] == ["o3", "o2"]
        assert router.fetch_count == 1
        assert router.active
        assert not router.is_live()

    @pytest.mark.asyncio
    async def test_start_without_fetch(self, router):
        await router.start(initial_fetch=False)
        assert router.offers == []
        assert router.fetch_count == 0

    @pytest.mark.asyncio
    async def test_start_after_teardown(self, router):
        router.teardown()
        with pytest.raises(RuntimeError):
            await router.start()


class TestRoleTagging:
    """Changes are tagged with the viewer's role and trigger a re-fetch."""

    @pytest.mark.asyncio
    async def test_received_offer(self, router, source):
        await router.start()

        await source.apply_change(EntityType.OFFER, ChangeType.INSERT, offer("o4", "u1", VIEWER))
        await router.wait_for_refetch()

        activity = router.live_activity()
        assert activity.role is OfferRole.SELLER
        assert activity.offer_id == "o4"
        assert router.activity_message() == "You received a new offer!"
        assert router.offers[0]["id"] == "o4"
        assert router.fetch_count == 2

    @pytest.mark.asyncio
    async def test_sent_offer(self, router, source):
        await router.start()
        await source.apply_change(EntityType.OFFER, ChangeType.INSERT, offer("o4", VIEWER, "u1"))
        await router.wait_for_refetch()

        assert router.live_activity().role is OfferRole.BUYER
        assert router.activity_message() == "Your offer was sent!"
        assert "o4" in [o["id"] for o in router.sent_offers()]

    @pytest.mark.asyncio
    async def test_status_update(self, router, source):
        await router.start()
        await source.apply_change(
            EntityType.OFFER, ChangeType.UPDATE, offer("o2", "u4", VIEWER, status="rejected"),
        )
        await router.wait_for_refetch()

        assert router.activity_message() == "An offer was updated"
        o2 = next(o for o in router.offers if o["id"] == "o2")
        assert o2["status"] == "rejected"

    @pytest.mark.asyncio
    async def test_other_parties_ignored(self, router, source):
        await router.start()
        await source.apply_change(EntityType.OFFER, ChangeType.INSERT, offer("o5", "u1", "u2"))
        await router.wait_for_refetch()

        assert router.live_activity() is None
        assert router.fetch_count == 1

    @pytest.mark.asyncio
    async def test_unparseable_payload_ignored(self, router, source):
        await router.start()
        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, {"id": "o6", "amount": "5"})
        await router.wait_for_refetch()

        assert router.live_activity() is None
        assert router.fetch_count == 1

    @pytest.mark.asyncio
    async def test_emits_offer_activity(self, source, clock):
        bus = EventBus()
        seen = []

        @bus.on(DashboardEvent.OFFER_ACTIVITY)
        async def on_activity(data):
            seen.append(data)

        router = OfferUpdateRouter(source, VIEWER, recency_window_ms=5000, clock=clock, event_bus=bus)
        await router.start(initial_fetch=False)
        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer("o7", "u1", VIEWER))
        await router.wait_for_refetch()
        router.teardown()

        assert seen[0]["offer_id"] == "o7"
        assert seen[0]["role"] == "seller"
        assert seen[0]["viewer_id"] == VIEWER
        assert seen[0]["message"] == "You received a new offer!"


class TestRecencyWindow:
    """The live notice lasts strictly less than the recency window."""

    @pytest.mark.asyncio
    async def test_boundaries(self, router, source, clock):
        await router.start(initial_fetch=False)
        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer("o8", "u1", VIEWER))
        await router.wait_for_refetch()

        clock.advance(4999)
        assert router.is_live()
        clock.advance(1)
        assert not router.is_live()
        clock.advance(1)
        assert not router.is_live()
        assert router.activity_message() is None

    @pytest.mark.asyncio
    async def test_newer_event_restarts_window(self, router, source, clock):
        await router.start(initial_fetch=False)
        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer("o8", "u1", VIEWER))
        clock.advance(4000)
        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer("o9", VIEWER, "u1"))
        await router.wait_for_refetch()
        clock.advance(4000)

        assert router.live_activity().offer_id == "o9"

    @pytest.mark.asyncio
    async def test_dismiss(self, router, source):
        await router.start(initial_fetch=False)
        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer("o8", "u1", VIEWER))
        await router.wait_for_refetch()
        router.dismiss()
        assert not router.is_live()


class TestRefetchCoalescing:
    """A burst of changes costs one fetch in flight plus one follow-up."""

    @pytest.mark.asyncio
    async def test_burst_coalesced(self, source, clock):
        fetcher = GatedFetcher()
        router = OfferUpdateRouter(source, VIEWER, fetch_offers=fetcher, clock=clock)
        await router.start(initial_fetch=False)

        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer("a", "u1", VIEWER))
        await asyncio.sleep(0)
        assert fetcher.calls == 1

        for offer_id in ("b", "c", "d"):
            await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer(offer_id, "u1", VIEWER))

        fetcher.gate.set()
        await router.wait_for_refetch()

        assert fetcher.calls == 2
        assert [o["id"] for o in router.offers] == ["fetch-2"]
        router.teardown()

    @pytest.mark.asyncio
    async def test_fetch_failure_keeps_previous_list(self, source, clock):
        responses = [[offer("kept", VIEWER, "u1")], TransientFetchError("timeout", entity="offer")]

        async def fetch(viewer_id):
            result = responses.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        router = OfferUpdateRouter(source, VIEWER, fetch_offers=fetch, clock=clock)
        await router.start()
        await router.request_refetch()

        assert [o["id"] for o in router.offers] == ["kept"]
        assert router.last_error.kind == "transient"
        router.teardown()


class TestTeardown:
    @pytest.mark.asyncio
    async def test_late_results_dropped(self, source, clock):
        fetcher = GatedFetcher()
        router = OfferUpdateRouter(source, VIEWER, fetch_offers=fetcher, clock=clock)
        await router.start(initial_fetch=False)

        router.request_refetch()
        await asyncio.sleep(0)
        router.teardown()
        fetcher.gate.set()
        await router.wait_for_refetch()

        assert router.offers == []
        assert not router.active

    @pytest.mark.asyncio
    async def test_changes_after_teardown_ignored(self, router, source):
        await router.start(initial_fetch=False)
        router.teardown()
        router.teardown()

        await source.feed.publish(EntityType.OFFER, ChangeType.INSERT, offer("o8", "u1", VIEWER))

        assert source.feed.subscriber_count(EntityType.OFFER) == 0
        assert router.live_activity() is None


    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_recorded(self, source, clock):
        async def fetch(viewer_id):
            raise KeyError("buyer_id")

        router = OfferUpdateRouter(source, VIEWER, fetch_offers=fetch, clock=clock)
        await router.start()

        assert router.offers == []
        assert isinstance(router.last_error, KeyError)
        assert metrics.counter("offer_refetch_failures") == 1
        router.teardown()


class TestChannelDrop:
    """One re-subscribe attempt after a drop, then degraded until resubscribed."""

    @pytest.fixture
    def bus_events(self):
        bus = EventBus()
        seen = []

        @bus.on(None)
        async def on_any(data):
            seen.append(data)

        return bus, seen

    @pytest.mark.asyncio
    async def test_recovers_when_channel_returns(self, source, clock):
        router = OfferUpdateRouter(source, VIEWER, clock=clock, retry_config=FAST_RETRY)
        await router.start()

        dropping = asyncio.ensure_future(source.feed.drop(EntityType.OFFER))
        await asyncio.sleep(0)
        source.feed.restore(EntityType.OFFER)
        await dropping
        await router.wait_for_refetch()

        assert router.active
        assert not router.degraded
        assert router.fetch_count == 2

        await source.apply_change(EntityType.OFFER, ChangeType.INSERT, offer("o4", "u1", VIEWER))
        await router.wait_for_refetch()
        assert router.live_activity().offer_id == "o4"
        router.teardown()

    @pytest.mark.asyncio
    async def test_gives_up_then_resubscribes(self, source, clock, bus_events):
        bus, seen = bus_events
        router = OfferUpdateRouter(source, VIEWER, clock=clock, retry_config=FAST_RETRY, event_bus=bus)
        await router.start(initial_fetch=False)

        await source.feed.drop(EntityType.OFFER)

        assert not router.active
        assert router.degraded
        assert seen == [{"entity": "offer", "viewer_id": VIEWER,
                         "message": "Live updates unavailable, data may be stale"}]
        assert await router.resubscribe() is False

        source.feed.restore(EntityType.OFFER)
        assert await router.resubscribe() is True
        await router.wait_for_refetch()

        assert router.active
        assert not router.degraded
        assert router.fetch_count == 1
        assert seen[-1] == {"entity": "offer", "viewer_id": VIEWER}
        router.teardown()

    @pytest.mark.asyncio
    async def test_start_on_dropped_channel_degrades(self, source, clock):
        await source.feed.drop(EntityType.OFFER)
        router = OfferUpdateRouter(source, VIEWER, clock=clock, retry_config=FAST_RETRY)

        await router.start(initial_fetch=False)

        assert router.degraded
        assert not router.active
        assert metrics.counter("subscription_failures") == 1
        router.teardown()

    @pytest.mark.asyncio
    async def test_resubscribe_when_healthy_is_noop(self, router):
        await router.start(initial_fetch=False)
        assert await router.resubscribe() is False
        assert router.fetch_count == 0
