"""
Domain models for marketplace analytics.

Provides type-safe dataclasses for domain events, time buckets, trends,
dashboard snapshots and push-subscription bookkeeping. Everything a reader
can observe from outside (events, trends, snapshots) is frozen.
"""
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from market_pulse.exceptions import ValidationError


# ═══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════════

class EntityType(str, Enum):
    """Backend entities the dashboard reads or watches."""
    USER = "user"
    LISTING = "listing"
    OFFER = "offer"
    MESSAGE = "message"
    VIEW = "view"
    REPORT = "report"
    REVIEW = "review"
    # Reference data, fetched without a time window
    CATEGORY = "category"

    @property
    def table(self) -> str:
        """Backend table holding this entity."""
        tables = {
            EntityType.USER: "users",
            EntityType.LISTING: "listings",
            EntityType.OFFER: "offers",
            EntityType.MESSAGE: "messages",
            EntityType.VIEW: "viewed_listings",
            EntityType.REPORT: "reports",
            EntityType.REVIEW: "reviews",
            EntityType.CATEGORY: "categories",
        }
        return tables[self]

    @property
    def timestamp_column(self) -> Optional[str]:
        """Column used for time filtering and ordering (None for reference data)."""
        if self is EntityType.CATEGORY:
            return None
        if self is EntityType.VIEW:
            return "viewed_at"
        return "created_at"

    @classmethod
    def from_table(cls, table: str) -> Optional["EntityType"]:
        for entity in cls:
            if entity.table == table:
                return entity
        return None


class Granularity(str, Enum):
    """Width of one time bucket."""
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class TrendDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    FLAT = "flat"


class ChangeType(str, Enum):
    """Kind of row change delivered by the push channel."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: str) -> "ChangeType":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError("change_type", "unknown change type", value)


class OfferRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"


class MetricFamily(str, Enum):
    """Independent sections of the dashboard snapshot."""
    OVERVIEW = "overview"
    USER_GROWTH = "user_growth"
    ACTIVITY = "activity"
    CATEGORY_DISTRIBUTION = "category_distribution"
    LISTING_STATUS = "listing_status"
    LISTING_VIEWS = "listing_views"
    TOP_SELLERS = "top_sellers"
    RECENT_ACTIVITY = "recent_activity"


class FamilyStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"


# ═══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ═══════════════════════════════════════════════════════════════════════════════

def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a backend timestamp into an aware datetime.

    Accepts datetimes and ISO-8601 strings (with `Z` or an offset). Naive
    values are treated as UTC. Returns None for anything unparseable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_decimal(value: Any) -> Decimal:
    """Convert a price-like value to Decimal, treating junk as zero."""
    if value is None:
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError):
        return Decimal("0")


# ═══════════════════════════════════════════════════════════════════════════════
# DATACLASSES
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TimeWindow:
    """Half-open time range [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValidationError("window", "start and end must be timezone-aware")
        if self.start >= self.end:
            raise ValidationError(
                "window", "start must be before end", f"{self.start.isoformat()} >= {self.end.isoformat()}"
            )

    @classmethod
    def last(cls, duration: timedelta, end: Optional[datetime] = None) -> "TimeWindow":
        """Window of `duration` ending at `end` (default: now)."""
        end = end or utcnow()
        return cls(start=end - duration, end=end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def previous(self) -> "TimeWindow":
        """The adjacent window of equal length ending where this one starts."""
        return TimeWindow(start=self.start - self.duration, end=self.start)

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class DomainEvent:
    """A single observed backend row, read-only once constructed."""
    entity_type: EntityType
    entity_id: str
    occurred_at: datetime
    payload: Mapping[str, Any]

    @classmethod
    def from_record(cls, entity_type: EntityType, record: Mapping[str, Any]) -> Optional["DomainEvent"]:
        """Create from a raw backend record; None if it has no usable timestamp."""
        column = entity_type.timestamp_column
        occurred_at = parse_timestamp(record.get(column)) if column else None
        if occurred_at is None:
            return None
        return cls(
            entity_type=entity_type,
            entity_id=str(record.get("id", "")),
            occurred_at=occurred_at,
            payload=MappingProxyType(dict(record)),
        )


@dataclass
class TimeBucket:
    """Counters for one period; counters never go below zero."""
    period_start: datetime
    granularity: Granularity
    counters: Dict[str, int] = field(default_factory=dict)

    def increment(self, metric: str, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("bucket counters only grow")
        self.counters[metric] = self.counters.get(metric, 0) + amount

    def count(self, metric: str) -> int:
        return self.counters.get(metric, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_start": self.period_start.isoformat(),
            "granularity": self.granularity.value,
            **self.counters,
        }


@dataclass(frozen=True)
class TrendResult:
    """Comparison of two adjacent periods."""
    current_count: int
    previous_count: int
    direction: TrendDirection
    percentage: int

    @property
    def no_baseline(self) -> bool:
        """True when growth came from zero and `percentage` is the sentinel."""
        return self.previous_count == 0 and self.current_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current_count,
            "previous": self.previous_count,
            "direction": self.direction.value,
            "percentage": self.percentage,
            "no_baseline": self.no_baseline,
        }


@dataclass(frozen=True)
class FamilyError:
    """Why a metric family could not be produced."""
    kind: str
    message: str
    retryable: bool = False

    @classmethod
    def from_exception(cls, exc: BaseException) -> "FamilyError":
        return cls(
            kind=getattr(exc, "kind", "compute"),
            message=str(exc),
            retryable=bool(getattr(exc, "retryable", False)),
        )


@dataclass(frozen=True)
class FamilyResult:
    """One dashboard section: populated data or an explicit failure."""
    family: MetricFamily
    status: FamilyStatus
    data: Any = None
    error: Optional[FamilyError] = None

    @classmethod
    def ok(cls, family: MetricFamily, data: Any) -> "FamilyResult":
        return cls(family=family, status=FamilyStatus.OK, data=data)

    @classmethod
    def failed(cls, family: MetricFamily, error: FamilyError) -> "FamilyResult":
        return cls(family=family, status=FamilyStatus.FAILED, data=None, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status is FamilyStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"status": self.status.value, "data": self.data}
        if self.error:
            result["error"] = {
                "kind": self.error.kind,
                "message": self.error.message,
                "retryable": self.error.retryable,
            }
        return result


_snapshot_ids = itertools.count(1)


@dataclass(frozen=True)
class DashboardSnapshot:
    """
    Materialized dashboard output.

    Built once per aggregation run and never mutated; consumers swap the
    whole object when a newer one arrives.
    """
    generated_at: datetime
    window: TimeWindow
    granularity: Granularity
    metrics: Mapping[MetricFamily, FamilyResult]
    snapshot_id: int = field(default_factory=lambda: next(_snapshot_ids))

    def __post_init__(self):
        # Freeze the mapping so readers can never observe a partial update
        object.__setattr__(self, "metrics", MappingProxyType(dict(self.metrics)))

    def __getitem__(self, family: MetricFamily) -> FamilyResult:
        return self.metrics[family]

    @property
    def failed_families(self) -> list:
        return [family for family, result in self.metrics.items() if not result.is_ok]

    @property
    def is_complete(self) -> bool:
        return not self.failed_families

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "generated_at": self.generated_at.isoformat(),
            "window": self.window.to_dict(),
            "granularity": self.granularity.value,
            "metrics": {family.value: result.to_dict() for family, result in self.metrics.items()},
            "failed_families": [family.value for family in self.failed_families],
        }


@dataclass(frozen=True)
class ChangeDescriptor:
    """A row change as delivered by the push channel."""
    entity: EntityType
    change_type: ChangeType
    record: Mapping[str, Any] = field(default_factory=dict)
    old_record: Optional[Mapping[str, Any]] = None
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity.value,
            "change_type": self.change_type.value,
            "record": dict(self.record),
            "old_record": dict(self.old_record) if self.old_record is not None else None,
            "received_at": self.received_at.isoformat(),
        }


_handle_ids = itertools.count(1)


@dataclass(eq=False)
class SubscriptionHandle:
    """
    Owner's receipt for one push subscription.

    `cancel()` stops delivery; calling it again is a no-op.
    """
    entity: EntityType
    id: int = field(default_factory=lambda: next(_handle_ids))
    active: bool = True
    _on_cancel: Optional[Callable[["SubscriptionHandle"], None]] = field(default=None, repr=False)

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_cancel is not None:
            self._on_cancel(self)

    def deactivate(self) -> None:
        """Mark inactive without notifying the source (channel already gone)."""
        self.active = False


@dataclass
class PendingRefresh:
    """A debounce window in flight; at most one per coordinator."""
    scheduled_at: float
    fires_at: float
    timer_handle: Any = field(default=None, repr=False)

    def cancel(self) -> None:
        if self.timer_handle is not None:
            self.timer_handle.cancel()
            self.timer_handle = None


@dataclass(frozen=True)
class RoleTaggedOfferEvent:
    """An offer push event seen from the current viewer's side."""
    offer: Mapping[str, Any]
    role: OfferRole
    received_at: datetime
    change_type: ChangeType = ChangeType.INSERT

    @property
    def offer_id(self) -> str:
        return str(self.offer.get("id", ""))

    def is_live(self, now: datetime, recency_window: timedelta) -> bool:
        """Live while strictly less than `recency_window` has elapsed."""
        return now - self.received_at < recency_window

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offer_id": self.offer_id,
            "role": self.role.value,
            "change_type": self.change_type.value,
            "received_at": self.received_at.isoformat(),
        }
