"""
Event source contract and an in-memory implementation.

Every other component reaches backend data through two calls:

    records = await source.fetch_range(EntityType.LISTING, {"status": "sold"}, window)
    handle = source.subscribe(EntityType.OFFER, callback, on_drop=None)

`fetch_range` returns records whose timestamp lies in [window.start,
window.end), oldest first, and an empty list when nothing matches. Failures
are `FetchError` subclasses. `window=None` skips time filtering (reference
data, per-viewer lists).
"""
import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from market_pulse.change_feed import ChangeCallback, ChangeFeed, DropCallback
from market_pulse.exceptions import FetchError
from market_pulse.models import (
    ChangeType,
    EntityType,
    SubscriptionHandle,
    TimeWindow,
    parse_timestamp,
)
from market_pulse.observability import get_logger

logger = get_logger(__name__)

Filters = Optional[Mapping[str, Any]]


class EventSource(Protocol):
    """What the analytics core needs from the backend data store."""

    async def fetch_range(
        self,
        entity: EntityType,
        filters: Filters = None,
        window: Optional[TimeWindow] = None,
    ) -> List[Dict[str, Any]]:
        """Return matching records ordered by timestamp ascending."""

    def subscribe(
        self,
        entity: EntityType,
        callback: ChangeCallback,
        on_drop: Optional[DropCallback] = None,
    ) -> SubscriptionHandle:
        """Register for future changes; the returned handle cancels delivery."""


def matches_filters(record: Mapping[str, Any], filters: Filters) -> bool:
    """Equality match on every filter column; list/tuple/set values mean 'one of'."""
    if not filters:
        return True
    for column, expected in filters.items():
        actual = record.get(column)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def sort_by_timestamp(entity: EntityType, records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Order records oldest first; rows without a timestamp go last."""
    column = entity.timestamp_column
    rows = [dict(r) for r in records]
    if column is None:
        return rows

    def key(row: Dict[str, Any]) -> Tuple[int, Any]:
        moment = parse_timestamp(row.get(column))
        return (0, moment) if moment is not None else (1, 0)

    return sorted(rows, key=key)


class InMemoryEventSource:
    """
    Event source backed by in-process lists.

    Used for tests and local runs. Supports per-entity failure injection
    (`fail`/`heal`) and an artificial latency so concurrent fetches really
    interleave on the event loop.
    """

    def __init__(
        self,
        records: Optional[Mapping[EntityType, Iterable[Mapping[str, Any]]]] = None,
        feed: Optional[ChangeFeed] = None,
        latency: float = 0.0,
    ):
        self.feed = feed or ChangeFeed()
        self.latency = latency
        self._records: Dict[EntityType, List[Dict[str, Any]]] = {}
        self._failures: Dict[EntityType, FetchError] = {}
        self.fetch_calls: List[Tuple[EntityType, Dict[str, Any], Optional[TimeWindow]]] = []

        for entity, rows in (records or {}).items():
            self.add(entity, *rows)

    def add(self, entity: EntityType, *records: Mapping[str, Any]) -> None:
        self._records.setdefault(entity, []).extend(dict(r) for r in records)

    def records(self, entity: EntityType) -> List[Dict[str, Any]]:
        return [dict(r) for r in self._records.get(entity, [])]

    def fail(self, entity: EntityType, error: FetchError) -> None:
        """Make every fetch of `entity` raise `error` until healed."""
        self._failures[entity] = error

    def heal(self, entity: EntityType) -> None:
        self._failures.pop(entity, None)

    async def fetch_range(
        self,
        entity: EntityType,
        filters: Filters = None,
        window: Optional[TimeWindow] = None,
    ) -> List[Dict[str, Any]]:
        self.fetch_calls.append((entity, dict(filters or {}), window))

        if self.latency:
            await asyncio.sleep(self.latency)

        if entity in self._failures:
            raise self._failures[entity]

        column = entity.timestamp_column
        selected = []
        for record in self._records.get(entity, []):
            if not matches_filters(record, filters):
                continue
            if window is not None and column is not None:
                moment = parse_timestamp(record.get(column))
                if moment is None or not window.contains(moment):
                    continue
            selected.append(record)

        return sort_by_timestamp(entity, selected)

    def subscribe(
        self,
        entity: EntityType,
        callback: ChangeCallback,
        on_drop: Optional[DropCallback] = None,
    ) -> SubscriptionHandle:
        return self.feed.subscribe(entity, callback, on_drop)

    async def apply_change(
        self,
        entity: EntityType,
        change_type: ChangeType,
        record: Mapping[str, Any],
        old_record: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Write a change to the stored records, then announce it on the feed.

        Mirrors the backend: the fetchable truth changes first, the push
        notification follows.
        """
        rows = self._records.setdefault(entity, [])
        key = (old_record or record).get("id")

        if change_type is ChangeType.INSERT:
            rows.append(dict(record))
        elif change_type is ChangeType.UPDATE:
            for i, row in enumerate(rows):
                if row.get("id") == key:
                    rows[i] = {**row, **record}
                    break
            else:
                rows.append(dict(record))
        elif change_type is ChangeType.DELETE:
            self._records[entity] = [row for row in rows if row.get("id") != key]

        return await self.feed.publish(entity, change_type, record, old_record)
