"""
Time bucketing for raw backend records.

The output for a range is always complete: every period between the range
start and end has a bucket, even when nothing happened in it. Intervals are
half-open, so a record exactly on a boundary belongs to the bucket that
boundary opens.

Usage:
    buckets = bucketize(listings, Granularity.DAY, start, end, metric="listings")
    [(b.period_start.date(), b.count("listings")) for b in buckets]
"""
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Union
from zoneinfo import ZoneInfo

from market_pulse.exceptions import ComputeError, ValidationError
from market_pulse.models import Granularity, TimeBucket, parse_timestamp
from market_pulse.observability import get_logger

logger = get_logger(__name__)

Record = Mapping[str, Any]
TimezoneLike = Union[str, tzinfo, None]


def resolve_timezone(tz: TimezoneLike) -> tzinfo:
    """Accept a zone name, a tzinfo or None (UTC)."""
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return timezone.utc if tz.upper() == "UTC" else ZoneInfo(tz)
    return tz


def truncate(moment: datetime, granularity: Granularity, tz: TimezoneLike = None) -> datetime:
    """
    Start of the period containing `moment`.

    Day = calendar date, week = ISO week (Monday), month = first of month,
    all evaluated in `tz`.
    """
    zone = resolve_timezone(tz)
    local = moment.astimezone(zone)

    if granularity is Granularity.HOUR:
        return local.replace(minute=0, second=0, microsecond=0)
    if granularity is Granularity.DAY:
        return datetime(local.year, local.month, local.day, tzinfo=zone)
    if granularity is Granularity.WEEK:
        monday = local.date() - timedelta(days=local.weekday())
        return datetime(monday.year, monday.month, monday.day, tzinfo=zone)
    if granularity is Granularity.MONTH:
        return datetime(local.year, local.month, 1, tzinfo=zone)
    raise ValidationError("granularity", "unsupported granularity", granularity)


def next_period(period_start: datetime, granularity: Granularity, tz: TimezoneLike = None) -> datetime:
    """Start of the period after the one starting at `period_start`."""
    zone = resolve_timezone(tz)
    local = period_start.astimezone(zone)

    if granularity is Granularity.HOUR:
        # Step in UTC so DST transitions never repeat or skip an hour
        return (local.astimezone(timezone.utc) + timedelta(hours=1)).astimezone(zone)
    if granularity is Granularity.DAY:
        following = local.date() + timedelta(days=1)
    elif granularity is Granularity.WEEK:
        following = local.date() + timedelta(days=7)
    elif granularity is Granularity.MONTH:
        year, month = (local.year + 1, 1) if local.month == 12 else (local.year, local.month + 1)
        return datetime(year, month, 1, tzinfo=zone)
    else:
        raise ValidationError("granularity", "unsupported granularity", granularity)
    return datetime(following.year, following.month, following.day, tzinfo=zone)


def iter_periods(
    range_start: datetime,
    range_end: datetime,
    granularity: Granularity,
    tz: TimezoneLike = None,
) -> Iterator[datetime]:
    """Yield every period start from the one containing `range_start` up to `range_end` (exclusive)."""
    if range_start >= range_end:
        raise ValidationError(
            "range", "range_start must be before range_end",
            f"{range_start.isoformat()} >= {range_end.isoformat()}",
        )
    period = truncate(range_start, granularity, tz)
    while period < range_end:
        yield period
        period = next_period(period, granularity, tz)


def count_periods(
    range_start: datetime,
    range_end: datetime,
    granularity: Granularity,
    tz: TimezoneLike = None,
) -> int:
    """Number of buckets `bucketize` produces for this range."""
    return sum(1 for _ in iter_periods(range_start, range_end, granularity, tz))


def _instant(moment: datetime) -> datetime:
    return moment.astimezone(timezone.utc)


def bucketize(
    records: Iterable[Record],
    granularity: Granularity,
    range_start: datetime,
    range_end: datetime,
    metric: str = "count",
    timestamp_field: str = "created_at",
    tz: TimezoneLike = None,
) -> List[TimeBucket]:
    """Count `records` per period over [range_start, range_end)."""
    return bucketize_many(
        {metric: records}, granularity, range_start, range_end,
        timestamp_fields={metric: timestamp_field}, tz=tz,
    )


def bucketize_many(
    series: Mapping[str, Iterable[Record]],
    granularity: Granularity,
    range_start: datetime,
    range_end: datetime,
    timestamp_fields: Union[str, Mapping[str, str]] = "created_at",
    tz: TimezoneLike = None,
) -> List[TimeBucket]:
    """
    Count several record sets into one complete bucket list.

    Args:
        series: metric name -> records counted under that metric
        granularity: bucket width
        range_start, range_end: half-open range to cover
        timestamp_fields: timestamp column, for all metrics or per metric
        tz: zone in which day/week/month boundaries are drawn

    Returns:
        One TimeBucket per period, oldest first, every metric present
    """
    buckets = [
        TimeBucket(period_start=period, granularity=granularity, counters={m: 0 for m in series})
        for period in iter_periods(range_start, range_end, granularity, tz)
    ]
    # Keyed by instant: the repeated fall-back hour compares equal in local time
    index: Dict[datetime, TimeBucket] = {_instant(b.period_start): b for b in buckets}

    skipped = 0
    outside = 0
    for metric, records in series.items():
        field_name = (
            timestamp_fields if isinstance(timestamp_fields, str)
            else timestamp_fields.get(metric, "created_at")
        )
        for record in records:
            moment = parse_timestamp(record.get(field_name))
            if moment is None:
                skipped += 1
                continue
            if not (range_start <= moment < range_end):
                outside += 1
                continue

            key = truncate(moment, granularity, tz)
            bucket = index.get(_instant(key))
            if bucket is None:
                raise ComputeError(
                    "Record fell between buckets",
                    details=f"{moment.isoformat()} -> {key.isoformat()}",
                )
            bucket.increment(metric)

    if skipped or outside:
        logger.debug(
            "Records ignored while bucketizing",
            extra={"without_timestamp": skipped, "outside_range": outside},
        )
    return buckets


def cumulative(
    buckets: List[TimeBucket],
    metric: str,
    into: str = "total",
    base: int = 0,
) -> List[TimeBucket]:
    """
    Add a running total of `metric` to every bucket under `into`.

    `base` is the count accumulated before the first bucket.
    """
    running = base
    for bucket in buckets:
        running += bucket.count(metric)
        bucket.counters[into] = running
    return buckets


def bucket_totals(buckets: Iterable[TimeBucket]) -> Dict[str, int]:
    """Sum every counter across buckets."""
    totals: Dict[str, int] = {}
    for bucket in buckets:
        for metric, value in bucket.counters.items():
            totals[metric] = totals.get(metric, 0) + value
    return totals
