"""
Tests for market_pulse.models module.
"""
import pytest
from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from market_pulse.exceptions import SchemaError, TransientFetchError, ValidationError
from market_pulse.models import (
    ChangeType,
    DashboardSnapshot,
    DomainEvent,
    EntityType,
    FamilyError,
    FamilyResult,
    Granularity,
    MetricFamily,
    OfferRole,
    PendingRefresh,
    RoleTaggedOfferEvent,
    SubscriptionHandle,
    TimeBucket,
    TimeWindow,
    parse_timestamp,
    to_decimal,
)

NOW = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)


class TestEntityType:
    """Tests for EntityType enum."""

    def test_tables(self):
        assert EntityType.USER.table == "users"
        assert EntityType.VIEW.table == "viewed_listings"
        assert EntityType.CATEGORY.table == "categories"

    def test_timestamp_columns(self):
        assert EntityType.LISTING.timestamp_column == "created_at"
        assert EntityType.VIEW.timestamp_column == "viewed_at"
        assert EntityType.CATEGORY.timestamp_column is None

    def test_from_table(self):
        assert EntityType.from_table("offers") is EntityType.OFFER
        assert EntityType.from_table("audit_logs") is None


class TestChangeType:
    """Tests for ChangeType parsing."""

    def test_parse_is_case_insensitive(self):
        assert ChangeType.parse("INSERT") is ChangeType.INSERT
        assert ChangeType.parse("delete") is ChangeType.DELETE

    def test_parse_unknown(self):
        with pytest.raises(ValidationError):
            ChangeType.parse("TRUNCATE")


class TestParseTimestamp:
    """Tests for parse_timestamp helper."""

    def test_z_suffix(self):
        assert parse_timestamp("2026-03-18T12:00:00Z") == NOW

    def test_offset(self):
        assert parse_timestamp("2026-03-18T14:00:00+02:00") == NOW

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-03-18T12:00:00") == NOW

    def test_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(None) is None
        assert parse_timestamp(12345) is None


class TestToDecimal:
    def test_values(self):
        assert to_decimal("12.50") == Decimal("12.50")
        assert to_decimal(3) == Decimal("3")
        assert to_decimal(None) == Decimal("0")
        assert to_decimal("n/a") == Decimal("0")


class TestTimeWindow:
    """Tests for TimeWindow."""

    def test_half_open(self):
        window = TimeWindow(NOW - timedelta(days=1), NOW)
        assert window.contains(NOW - timedelta(days=1))
        assert not window.contains(NOW)

    def test_start_must_precede_end(self):
        with pytest.raises(ValidationError):
            TimeWindow(NOW, NOW)

    def test_requires_aware_datetimes(self):
        with pytest.raises(ValidationError):
            TimeWindow(datetime(2026, 3, 1), datetime(2026, 3, 2))

    def test_last_and_previous(self):
        window = TimeWindow.last(timedelta(days=7), end=NOW)
        previous = window.previous()
        assert previous.end == window.start
        assert previous.duration == timedelta(days=7)


class TestDomainEvent:
    """Tests for DomainEvent."""

    def test_from_record(self):
        event = DomainEvent.from_record(EntityType.USER, {"id": 7, "created_at": "2026-03-18T12:00:00Z"})
        assert event.entity_id == "7"
        assert event.occurred_at == NOW

    def test_from_record_without_timestamp(self):
        assert DomainEvent.from_record(EntityType.USER, {"id": 7}) is None

    def test_immutable(self):
        event = DomainEvent.from_record(EntityType.USER, {"id": 1, "created_at": "2026-03-18T12:00:00Z"})
        with pytest.raises(FrozenInstanceError):
            event.entity_id = "2"
        with pytest.raises(TypeError):
            event.payload["id"] = 2


class TestTimeBucket:
    """Tests for TimeBucket."""

    def test_increment(self):
        bucket = TimeBucket(period_start=NOW, granularity=Granularity.DAY)
        bucket.increment("views")
        bucket.increment("views", 2)
        assert bucket.count("views") == 3
        assert bucket.count("other") == 0

    def test_counters_never_decrease(self):
        bucket = TimeBucket(period_start=NOW, granularity=Granularity.DAY)
        with pytest.raises(ValueError):
            bucket.increment("views", -1)


class TestFamilyResult:
    """Tests for FamilyError / FamilyResult."""

    def test_error_from_transient(self):
        error = FamilyError.from_exception(TransientFetchError("timeout"))
        assert error.kind == "transient"
        assert error.retryable is True

    def test_error_from_schema(self):
        error = FamilyError.from_exception(SchemaError("missing relation"))
        assert error.kind == "schema"
        assert error.retryable is False

    def test_error_from_unknown_exception(self):
        error = FamilyError.from_exception(KeyError("x"))
        assert error.kind == "compute"

    def test_failed_to_dict(self):
        result = FamilyResult.failed(MetricFamily.TOP_SELLERS, FamilyError("schema", "boom"))
        assert result.to_dict() == {
            "status": "failed",
            "data": None,
            "error": {"kind": "schema", "message": "boom", "retryable": False},
        }


class TestDashboardSnapshot:
    """Tests for DashboardSnapshot."""

    def _snapshot(self, **metrics):
        return DashboardSnapshot(
            generated_at=NOW,
            window=TimeWindow.last(timedelta(days=30), end=NOW),
            granularity=Granularity.DAY,
            metrics=metrics or {
                MetricFamily.OVERVIEW: FamilyResult.ok(MetricFamily.OVERVIEW, {"total_users": 1}),
                MetricFamily.TOP_SELLERS: FamilyResult.failed(
                    MetricFamily.TOP_SELLERS, FamilyError("transient", "timeout", True)
                ),
            },
        )

    def test_metrics_read_only(self):
        snapshot = self._snapshot()
        with pytest.raises(TypeError):
            snapshot.metrics[MetricFamily.ACTIVITY] = None
        with pytest.raises(FrozenInstanceError):
            snapshot.generated_at = NOW

    def test_failed_families(self):
        snapshot = self._snapshot()
        assert snapshot.failed_families == [MetricFamily.TOP_SELLERS]
        assert not snapshot.is_complete
        assert snapshot[MetricFamily.OVERVIEW].is_ok

    def test_ids_increase(self):
        assert self._snapshot().snapshot_id < self._snapshot().snapshot_id

    def test_to_dict(self):
        data = self._snapshot().to_dict()
        assert data["granularity"] == "day"
        assert data["failed_families"] == ["top_sellers"]
        assert data["metrics"]["overview"]["status"] == "ok"


class TestSubscriptionHandle:
    """Tests for SubscriptionHandle."""

    def test_cancel_is_idempotent(self):
        cancelled = []
        handle = SubscriptionHandle(entity=EntityType.OFFER, _on_cancel=cancelled.append)
        handle.cancel()
        handle.cancel()
        assert handle.active is False
        assert cancelled == [handle]

    def test_unique_ids(self):
        assert SubscriptionHandle(EntityType.USER).id != SubscriptionHandle(EntityType.USER).id


class TestPendingRefresh:
    def test_cancel_clears_timer(self):
        class Timer:
            cancelled = False

            def cancel(self):
                self.cancelled = True

        timer = Timer()
        pending = PendingRefresh(scheduled_at=0.0, fires_at=1.0, timer_handle=timer)
        pending.cancel()
        pending.cancel()
        assert timer.cancelled
        assert pending.timer_handle is None


class TestRoleTaggedOfferEvent:
    """Tests for the recency window."""

    def test_recency(self):
        event = RoleTaggedOfferEvent(offer={"id": "o1"}, role=OfferRole.SELLER, received_at=NOW)
        window = timedelta(milliseconds=5000)
        assert event.is_live(NOW + timedelta(milliseconds=4999), window)
        assert not event.is_live(NOW + timedelta(milliseconds=5000), window)
        assert not event.is_live(NOW + timedelta(milliseconds=5001), window)

    def test_to_dict(self):
        event = RoleTaggedOfferEvent(offer={"id": 9}, role=OfferRole.BUYER, received_at=NOW)
        assert event.to_dict()["offer_id"] == "9"
        assert event.to_dict()["role"] == "buyer"
