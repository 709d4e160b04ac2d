"""
Period-over-period trend deltas.

`calculate_trend` is a pure function of two counts. Percentages are whole
numbers rounded half up, so `(3, 2)` is +50 and `(1, 3)` is -67.

Growth from an empty previous period has no meaningful ratio. It is reported
as NO_BASELINE_PERCENTAGE and flagged with `TrendResult.no_baseline` so
dashboards can render "new" instead of a number.
"""
import math
from datetime import datetime, timedelta
from fractions import Fraction
from typing import Any, Iterable, List, Mapping

from market_pulse.exceptions import ValidationError
from market_pulse.models import TimeBucket, TimeWindow, TrendDirection, TrendResult, parse_timestamp

NO_BASELINE_PERCENTAGE = 999


def calculate_trend(current: int, previous: int) -> TrendResult:
    """
    Compare the current period count with the previous one.

    >>> calculate_trend(10, 5).percentage
    100
    >>> calculate_trend(5, 10).direction
    <TrendDirection.DOWN: 'down'>
    """
    if current < 0 or previous < 0:
        raise ValidationError("count", "counts cannot be negative", (current, previous))

    if current > previous:
        direction = TrendDirection.UP
    elif current < previous:
        direction = TrendDirection.DOWN
    else:
        direction = TrendDirection.FLAT

    if previous == 0:
        percentage = 0 if current == 0 else NO_BASELINE_PERCENTAGE
    else:
        ratio = Fraction(current - previous, previous) * 100
        percentage = math.floor(ratio + Fraction(1, 2))

    return TrendResult(
        current_count=current,
        previous_count=previous,
        direction=direction,
        percentage=percentage,
    )


def window_trend(
    records: Iterable[Mapping[str, Any]],
    now: datetime,
    period: timedelta = timedelta(days=7),
    timestamp_field: str = "created_at",
) -> TrendResult:
    """
    Count records in the period ending at `now` against the period before it.

    Week-over-week by default: [now-7d, now) versus [now-14d, now-7d).
    """
    current_window = TimeWindow.last(period, end=now)
    previous_window = current_window.previous()

    current = previous = 0
    for record in records:
        moment = parse_timestamp(record.get(timestamp_field))
        if moment is None:
            continue
        if current_window.contains(moment):
            current += 1
        elif previous_window.contains(moment):
            previous += 1

    return calculate_trend(current, previous)


def bucket_trend(buckets: List[TimeBucket], metric: str) -> TrendResult:
    """
    Compare the later half of a bucket list with the adjacent earlier half.

    With an odd number of buckets the oldest one is left out so both halves
    span the same number of periods.
    """
    half = len(buckets) // 2
    if half == 0:
        return calculate_trend(sum(b.count(metric) for b in buckets), 0)

    current = sum(b.count(metric) for b in buckets[-half:])
    previous = sum(b.count(metric) for b in buckets[-2 * half:-half])
    return calculate_trend(current, previous)
