"""
Pytest configuration and shared fixtures.

All sample data is anchored to NOW (Wednesday 2026-03-18 12:00 UTC).
"""
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from market_pulse.config import AnalyticsSettings
from market_pulse.models import EntityType
from market_pulse.observability import metrics
from market_pulse.source import InMemoryEventSource

NOW = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for recency and trend tests."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, milliseconds: int) -> None:
        self.now += timedelta(milliseconds=milliseconds)


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-global; start every test from zero."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> AnalyticsSettings:
    """Explicit settings so tests never depend on the environment."""
    return AnalyticsSettings(
        granularity="day",
        range_days=30,
        debounce_window_ms=1000,
        recency_window_ms=5000,
        timezone="UTC",
    )


@pytest.fixture
def marketplace_records() -> Dict[EntityType, List[Dict[str, Any]]]:
    """A small marketplace: 4 users, 6 listings, 3 offers and their side data."""
    return {
        EntityType.USER: [
            {"id": "u1", "name": "Ada", "created_at": "2026-01-05T10:00:00Z"},
            {"id": "u2", "name": "Ben", "created_at": "2026-03-02T10:00:00Z"},
            {"id": "u3", "name": "Cleo", "created_at": "2026-03-12T10:00:00Z"},
            {"id": "u4", "name": "Dev", "created_at": "2026-03-17T09:00:00Z"},
        ],
        EntityType.LISTING: [
            {"id": "l1", "user_id": "u2", "category_id": "c1", "status": "available",
             "price": "100.00", "created_at": "2026-03-01T10:00:00Z"},
            {"id": "l2", "user_id": "u2", "category_id": "c1", "status": "sold",
             "price": "250.00", "created_at": "2026-03-05T10:00:00Z"},
            {"id": "l3", "user_id": "u3", "category_id": "c2", "status": "sold",
             "price": "400.00", "created_at": "2026-03-10T10:00:00Z"},
            {"id": "l4", "user_id": "u3", "category_id": None, "status": "sold",
             "price": "100.00", "created_at": "2026-03-14T10:00:00Z"},
            {"id": "l5", "user_id": "u4", "category_id": "c9", "status": "available",
             "price": "50.00", "created_at": "2026-03-16T10:00:00Z"},
            {"id": "l6", "user_id": "u2", "category_id": "c2", "status": "pending",
             "price": "75.00", "created_at": "2026-03-17T08:00:00Z"},
        ],
        EntityType.CATEGORY: [
            {"id": "c1", "name": "Electronics"},
            {"id": "c2", "name": "Books"},
        ],
        EntityType.OFFER: [
            {"id": "o1", "buyer_id": "u3", "seller_id": "u2", "listing_id": "l1",
             "amount": "90.00", "status": "pending", "created_at": "2026-03-06T10:00:00Z"},
            {"id": "o2", "buyer_id": "u4", "seller_id": "u3", "listing_id": "l3",
             "amount": "380.00", "status": "accepted", "created_at": "2026-03-15T10:00:00Z"},
            {"id": "o3", "buyer_id": "u2", "seller_id": "u3", "listing_id": "l4",
             "amount": "95.00", "status": "pending", "created_at": "2026-03-17T10:00:00Z"},
        ],
        EntityType.MESSAGE: [
            {"id": "m1", "sender_id": "u3", "created_at": "2026-03-06T11:00:00Z"},
            {"id": "m2", "sender_id": "u4", "created_at": "2026-03-15T11:00:00Z"},
            {"id": "m3", "sender_id": "u2", "created_at": "2026-03-17T11:00:00Z"},
        ],
        EntityType.VIEW: [
            {"id": "v1", "listing_id": "l1", "user_id": "u3", "viewed_at": "2026-03-10T12:00:00Z"},
            {"id": "v2", "listing_id": "l1", "user_id": "u4", "viewed_at": "2026-03-16T12:00:00Z"},
            {"id": "v3", "listing_id": "l2", "user_id": "u4", "viewed_at": "2026-03-17T12:00:00Z"},
        ],
        EntityType.REPORT: [
            {"id": "r1", "reason": "Spam", "status": "pending", "created_at": "2026-03-16T10:00:00Z"},
            {"id": "r2", "reason": None, "status": "resolved", "created_at": "2026-03-02T10:00:00Z"},
        ],
        EntityType.REVIEW: [
            {"id": "rv1", "rating": 5, "reviewer_id": "u3", "created_at": "2026-03-17T07:00:00Z"},
        ],
    }


@pytest.fixture
def source(marketplace_records) -> InMemoryEventSource:
    """In-memory event source loaded with the sample marketplace."""
    return InMemoryEventSource(marketplace_records)
