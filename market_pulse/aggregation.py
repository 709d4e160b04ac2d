"""
Aggregation engine: raw backend records in, dashboard snapshot out.

Each metric family is computed in its own task. Families share fetches
within a run (the same entity/filters/window is requested once), but fail
independently: a family whose fetch or computation breaks is reported as
failed while every other family still populates.

Usage:
    engine = AggregationEngine(source)
    snapshot = await engine.run()
    snapshot[MetricFamily.TOP_SELLERS].data
"""
import asyncio
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from market_pulse.bucketizer import (
    bucket_totals,
    bucketize,
    bucketize_many,
    cumulative,
    next_period,
    resolve_timezone,
    truncate,
)
from market_pulse.config import AnalyticsSettings, config
from market_pulse.exceptions import ComputeError, FetchError
from market_pulse.models import (
    DashboardSnapshot,
    EntityType,
    FamilyError,
    FamilyResult,
    Granularity,
    MetricFamily,
    TimeWindow,
    parse_timestamp,
    to_decimal,
    utcnow,
)
from market_pulse.observability import Timer, correlation_context, get_correlation_id, get_logger, metrics
from market_pulse.source import EventSource
from market_pulse.trends import bucket_trend, window_trend

logger = get_logger(__name__)

Record = Dict[str, Any]
Clock = Callable[[], datetime]

UNCATEGORIZED = "Uncategorized"
ACTIVE_LISTING_STATUS = "available"
PENDING_REPORT_STATUSES = ("pending", "reviewing")

ACTIVITY_LABELS = {
    EntityType.USER: "New user registered",
    EntityType.LISTING: "New listing created",
    EntityType.OFFER: "New offer submitted",
    EntityType.REVIEW: "New review submitted",
}


def default_window(
    now: datetime,
    range_days: int,
    granularity: Granularity,
    tz: Any = None,
) -> TimeWindow:
    """
    The last `range_days` days, aligned to whole periods.

    Ends at the start of the period after the one containing `now`, so the
    current (partial) period is included.
    """
    end = next_period(truncate(now, granularity, tz), granularity, tz)
    start = truncate(end - timedelta(days=range_days), granularity, tz)
    return TimeWindow(start=start, end=end)


class _Run:
    """Per-run state: the window, the clock reading and the shared fetches."""

    def __init__(
        self,
        source: EventSource,
        window: TimeWindow,
        granularity: Granularity,
        now: datetime,
        settings: AnalyticsSettings,
    ):
        self.source = source
        self.window = window
        self.granularity = granularity
        self.now = now
        self.settings = settings
        self.tz = resolve_timezone(settings.timezone)
        self._fetches: Dict[Tuple, "asyncio.Task[List[Record]]"] = {}

    async def fetch(
        self,
        entity: EntityType,
        filters: Optional[Mapping[str, Any]] = None,
        windowed: bool = True,
    ) -> List[Record]:
        """Fetch once per run; concurrent callers await the same request."""
        window = self.window if windowed else None
        key = (entity, tuple(sorted((filters or {}).items())), window)
        task = self._fetches.get(key)
        if task is None:
            task = asyncio.ensure_future(self.source.fetch_range(entity, filters, window))
            self._fetches[key] = task
        return await task

    async def fetch_many(self, *requests: Tuple[EntityType, bool]) -> List[List[Record]]:
        """Fetch concurrently; every failure is collected, the first one is raised."""
        results = await asyncio.gather(
            *(self.fetch(entity, windowed=w) for entity, w in requests),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return list(results)

    @property
    def fetch_count(self) -> int:
        return len(self._fetches)

    def close(self) -> None:
        for task in self._fetches.values():
            if not task.done():
                task.cancel()


# ═══════════════════════════════════════════════════════════════════════════════
# METRIC FAMILIES
# ═══════════════════════════════════════════════════════════════════════════════

def _count_where(records: List[Record], column: str, values: Tuple[str, ...]) -> int:
    return sum(1 for r in records if r.get(column) in values)


async def _overview(run: _Run) -> Dict[str, Any]:
    users, listings, offers, reports = await run.fetch_many(
        (EntityType.USER, False),
        (EntityType.LISTING, False),
        (EntityType.OFFER, False),
        (EntityType.REPORT, False),
    )
    period = timedelta(days=run.settings.trend_period_days)

    def card(records: List[Record], with_trend: bool = True) -> Dict[str, Any]:
        result: Dict[str, Any] = {"value": len(records)}
        if with_trend:
            result["trend"] = window_trend(records, run.now, period).to_dict()
        return result

    return {
        "total_users": card(users),
        "total_listings": card(listings),
        "active_listings": {"value": _count_where(listings, "status", (ACTIVE_LISTING_STATUS,))},
        "total_offers": card(offers),
        "pending_offers": {"value": _count_where(offers, "status", ("pending",))},
        "total_reports": card(reports),
        "pending_reports": {"value": _count_where(reports, "status", PENDING_REPORT_STATUSES)},
        "trend_period_days": run.settings.trend_period_days,
    }


async def _user_growth(run: _Run) -> Dict[str, Any]:
    # All users: the running total starts from everyone registered before the window
    users = await run.fetch(EntityType.USER, windowed=False)

    before = 0
    for user in users:
        moment = parse_timestamp(user.get("created_at"))
        if moment is not None and moment < run.window.start:
            before += 1

    buckets = bucketize(
        users, run.granularity, run.window.start, run.window.end,
        metric="new_users", tz=run.tz,
    )
    cumulative(buckets, "new_users", into="total_users", base=before)

    return {
        "buckets": [b.to_dict() for b in buckets],
        "new_users": sum(b.count("new_users") for b in buckets),
        "total_users": buckets[-1].count("total_users") if buckets else before,
        "trend": bucket_trend(buckets, "new_users").to_dict(),
    }


async def _activity(run: _Run) -> Dict[str, Any]:
    listings, offers, messages = await run.fetch_many(
        (EntityType.LISTING, True),
        (EntityType.OFFER, True),
        (EntityType.MESSAGE, True),
    )
    buckets = bucketize_many(
        {"listings": listings, "offers": offers, "messages": messages},
        run.granularity, run.window.start, run.window.end, tz=run.tz,
    )
    return {
        "buckets": [b.to_dict() for b in buckets],
        "totals": bucket_totals(buckets),
    }


async def _category_distribution(run: _Run) -> Dict[str, Any]:
    listings, categories = await run.fetch_many(
        (EntityType.LISTING, True),
        (EntityType.CATEGORY, False),
    )
    names = {str(c.get("id")): c.get("name") for c in categories if c.get("id") is not None}

    counts: Counter = Counter()
    for listing in listings:
        category_id = listing.get("category_id")
        key = str(category_id) if category_id is not None else None
        counts[key if key in names else None] += 1

    entries = [
        {
            "category_id": category_id,
            "name": names[category_id] if category_id is not None else UNCATEGORIZED,
            "count": count,
        }
        for category_id, count in counts.items()
    ]
    entries.sort(key=lambda e: (-e["count"], str(e["name"]), e["category_id"] or ""))

    total = len(listings)
    top = entries[:run.settings.top_categories_k]
    for entry in top:
        entry["percentage"] = round(entry["count"] / total * 100, 1) if total else 0.0

    return {
        "categories": top,
        "total_listings": total,
        "other_count": sum(e["count"] for e in entries[run.settings.top_categories_k:]),
    }


async def _listing_status(run: _Run) -> Dict[str, Any]:
    listings = await run.fetch(EntityType.LISTING)
    counts = Counter((listing.get("status") or "unknown") for listing in listings)
    statuses = [
        {"status": status, "count": count}
        for status, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    ]
    return {"statuses": statuses, "total": len(listings)}


async def _listing_views(run: _Run) -> Dict[str, Any]:
    views = await run.fetch(EntityType.VIEW)
    buckets = bucketize(
        views, run.granularity, run.window.start, run.window.end,
        metric="views", timestamp_field="viewed_at", tz=run.tz,
    )
    return {
        "buckets": [b.to_dict() for b in buckets],
        "total_views": sum(b.count("views") for b in buckets),
        "unique_listings": len({v.get("listing_id") for v in views if v.get("listing_id") is not None}),
        "trend": bucket_trend(buckets, "views").to_dict(),
    }


async def _top_sellers(run: _Run) -> Dict[str, Any]:
    # All time: a listing sells long after it is created
    sold = await run.fetch(EntityType.LISTING, {"status": "sold"}, windowed=False)

    sellers: Dict[str, Dict[str, Any]] = {}
    for listing in sold:
        seller_id = listing.get("user_id")
        if seller_id is None:
            continue
        entry = sellers.setdefault(
            str(seller_id), {"count": 0, "value": Decimal("0")}
        )
        entry["count"] += 1
        entry["value"] += to_decimal(listing.get("price"))

    ranked = sorted(
        sellers.items(),
        key=lambda item: (-item[1]["count"], -item[1]["value"], item[0]),
    )
    return {
        "sellers": [
            {"seller_id": seller_id, "sales_count": entry["count"], "total_value": float(entry["value"])}
            for seller_id, entry in ranked[:run.settings.top_sellers_k]
        ],
        "total_sold": len(sold),
    }


def _activity_label(entity: EntityType, record: Record) -> str:
    if entity is EntityType.REPORT:
        return f"New report: {record.get('reason') or 'Issue reported'}"
    return ACTIVITY_LABELS[entity]


async def _recent_activity(run: _Run) -> Dict[str, Any]:
    entities = (
        EntityType.USER, EntityType.LISTING, EntityType.OFFER,
        EntityType.REPORT, EntityType.REVIEW,
    )
    fetched = await run.fetch_many(*((entity, True) for entity in entities))

    items = []
    for entity, records in zip(entities, fetched):
        for record in records:
            moment = parse_timestamp(record.get("created_at"))
            if moment is None:
                continue
            items.append((moment, entity, record))

    items.sort(key=lambda item: (item[0], item[1].value, str(item[2].get("id"))), reverse=True)
    return {
        "items": [
            {
                "type": entity.value,
                "id": record.get("id"),
                "label": _activity_label(entity, record),
                "occurred_at": moment.isoformat(),
            }
            for moment, entity, record in items[:run.settings.recent_activity_limit]
        ]
    }


FamilyFn = Callable[[_Run], Awaitable[Any]]

FAMILIES: Dict[MetricFamily, FamilyFn] = {
    MetricFamily.OVERVIEW: _overview,
    MetricFamily.USER_GROWTH: _user_growth,
    MetricFamily.ACTIVITY: _activity,
    MetricFamily.CATEGORY_DISTRIBUTION: _category_distribution,
    MetricFamily.LISTING_STATUS: _listing_status,
    MetricFamily.LISTING_VIEWS: _listing_views,
    MetricFamily.TOP_SELLERS: _top_sellers,
    MetricFamily.RECENT_ACTIVITY: _recent_activity,
}


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class AggregationEngine:
    """
    Computes dashboard snapshots from an event source.

    Stateless between runs: every `run()` fetches fresh data and builds a new
    immutable snapshot.
    """

    def __init__(
        self,
        source: EventSource,
        settings: Optional[AnalyticsSettings] = None,
        clock: Optional[Clock] = None,
        families: Optional[Mapping[MetricFamily, FamilyFn]] = None,
    ):
        self.source = source
        self.settings = settings or config.analytics
        self.clock = clock or utcnow
        self.families = dict(families or FAMILIES)

    async def run(
        self,
        window: Optional[TimeWindow] = None,
        granularity: Optional[Granularity] = None,
    ) -> DashboardSnapshot:
        """
        Compute every metric family and assemble one snapshot.

        Never raises for family failures; those are recorded per family.
        Cancellation propagates.
        """
        now = self.clock()
        granularity = granularity or self.settings.granularity_enum
        window = window or default_window(
            now, self.settings.range_days, granularity, self.settings.timezone
        )
        run = _Run(self.source, window, granularity, now, self.settings)

        with correlation_context(get_correlation_id()) as cid:
            logger.info(
                f"Aggregation run started ({len(self.families)} families)",
                extra={"window_start": window.start.isoformat(), "window_end": window.end.isoformat(),
                       "granularity": granularity.value},
            )
            try:
                with Timer("aggregation_run", logger, warn_threshold_ms=5000) as timer:
                    results = await asyncio.gather(
                        *(self._run_family(run, family, fn) for family, fn in self.families.items())
                    )
            finally:
                run.close()

            snapshot = DashboardSnapshot(
                generated_at=self.clock(),
                window=window,
                granularity=granularity,
                metrics={result.family: result for result in results},
            )

            metrics.increment("aggregation_runs")
            metrics.record_timing("aggregation_run", timer.elapsed_ms)
            failed = [f.value for f in snapshot.failed_families]
            log = logger.warning if failed else logger.info
            log(
                f"Aggregation run finished: {len(results) - len(failed)}/{len(results)} families ok",
                extra={
                    "correlation_id": cid,
                    "snapshot_id": snapshot.snapshot_id,
                    "fetches": run.fetch_count,
                    "failed_families": failed,
                    "duration_ms": round(timer.elapsed_ms, 2),
                },
            )
            return snapshot

    async def _run_family(self, run: _Run, family: MetricFamily, fn: FamilyFn) -> FamilyResult:
        try:
            data = await fn(run)
        except FetchError as e:
            logger.error(
                f"Family {family.value} failed to fetch: {e}",
                extra={"family": family.value, "error_kind": e.kind,
                       "entity": e.entity, "retryable": e.retryable},
            )
            metrics.record_family_failure(family.value, e.kind)
            return FamilyResult.failed(family, FamilyError.from_exception(e))
        except Exception as e:
            error = ComputeError(f"Computing {family.value} failed", details=str(e), family=family.value)
            logger.exception(
                f"Family {family.value} failed to compute: {e}",
                extra={"family": family.value, "error_kind": error.kind},
            )
            metrics.record_family_failure(family.value, error.kind)
            return FamilyResult.failed(family, FamilyError.from_exception(error))

        return FamilyResult.ok(family, data)
