"""
Tests for market_pulse.trends module.
"""
import pytest
from datetime import datetime, timedelta, timezone

from market_pulse.bucketizer import bucketize
from market_pulse.exceptions import ValidationError
from market_pulse.models import Granularity, TrendDirection
from market_pulse.trends import NO_BASELINE_PERCENTAGE, bucket_trend, calculate_trend, window_trend

NOW = datetime(2026, 3, 18, 12, 0, tzinfo=timezone.utc)


def days_ago(days: float) -> str:
    return (NOW - timedelta(days=days)).isoformat()


class TestCalculateTrend:
    """Tests for calculate_trend."""

    def test_growth(self):
        result = calculate_trend(10, 5)
        assert result.direction == TrendDirection.UP
        assert result.percentage == 100

    def test_decline(self):
        result = calculate_trend(5, 10)
        assert result.direction == TrendDirection.DOWN
        assert result.percentage == -50

    def test_both_zero(self):
        result = calculate_trend(0, 0)
        assert result.direction == TrendDirection.FLAT
        assert result.percentage == 0
        assert result.no_baseline is False

    def test_flat_nonzero(self):
        result = calculate_trend(7, 7)
        assert result.direction == TrendDirection.FLAT
        assert result.percentage == 0

    def test_growth_from_zero_uses_sentinel(self):
        result = calculate_trend(3, 0)
        assert result.direction == TrendDirection.UP
        assert result.percentage == NO_BASELINE_PERCENTAGE
        assert result.no_baseline is True

    def test_drop_to_zero(self):
        result = calculate_trend(0, 4)
        assert result.direction == TrendDirection.DOWN
        assert result.percentage == -100

    def test_rounds_half_up(self):
        assert calculate_trend(3, 2).percentage == 50
        assert calculate_trend(1, 3).percentage == -67
        assert calculate_trend(2, 3).percentage == -33
        # 1/8 = 12.5% rounds up
        assert calculate_trend(9, 8).percentage == 13

    def test_negative_counts_rejected(self):
        with pytest.raises(ValidationError):
            calculate_trend(-1, 3)

    def test_to_dict(self):
        assert calculate_trend(10, 5).to_dict() == {
            "current": 10,
            "previous": 5,
            "direction": "up",
            "percentage": 100,
            "no_baseline": False,
        }


class TestWindowTrend:
    """Tests for week-over-week trends."""

    def test_week_over_week(self):
        records = [
            {"created_at": days_ago(1)},
            {"created_at": days_ago(2)},
            {"created_at": days_ago(8)},
            {"created_at": days_ago(30)},
        ]
        result = window_trend(records, NOW)
        assert (result.current_count, result.previous_count) == (2, 1)
        assert result.percentage == 100

    def test_boundary_goes_to_current_period(self):
        records = [{"created_at": days_ago(7)}]
        result = window_trend(records, NOW)
        assert (result.current_count, result.previous_count) == (1, 0)

    def test_future_records_ignored(self):
        records = [{"created_at": (NOW + timedelta(hours=1)).isoformat()}]
        result = window_trend(records, NOW)
        assert result.current_count == 0

    def test_custom_period_and_field(self):
        records = [{"viewed_at": days_ago(0.5)}, {"viewed_at": days_ago(1.5)}]
        result = window_trend(records, NOW, period=timedelta(days=1), timestamp_field="viewed_at")
        assert (result.current_count, result.previous_count) == (1, 1)
        assert result.direction == TrendDirection.FLAT


class TestBucketTrend:
    """Tests for comparing halves of a bucket series."""

    def _buckets(self, per_day):
        start = datetime(2026, 3, 1, tzinfo=timezone.utc)
        records = [
            {"created_at": (start + timedelta(days=day, hours=1)).isoformat()}
            for day, count in enumerate(per_day)
            for _ in range(count)
        ]
        return bucketize(records, Granularity.DAY, start, start + timedelta(days=len(per_day)))

    def test_later_half_against_earlier_half(self):
        result = bucket_trend(self._buckets([1, 1, 3, 1]), "count")
        assert (result.current_count, result.previous_count) == (4, 2)

    def test_odd_length_skips_oldest(self):
        result = bucket_trend(self._buckets([9, 1, 1, 2, 2]), "count")
        assert (result.current_count, result.previous_count) == (4, 2)

    def test_single_bucket(self):
        result = bucket_trend(self._buckets([3]), "count")
        assert (result.current_count, result.previous_count) == (3, 0)
