"""
Push channel for backend row changes.

The backend announces inserts/updates/deletes (database webhooks in
production, direct `publish` calls in tests). `ChangeFeed` fans each change
out to the subscribers of that entity and hands every subscriber a
`SubscriptionHandle` it owns.

Usage:
    feed = ChangeFeed()
    handle = feed.subscribe(EntityType.OFFER, on_offer_change)
    await feed.publish(EntityType.OFFER, ChangeType.INSERT, {"id": "o1", ...})
    handle.cancel()
"""
import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Union

from market_pulse.exceptions import SubscriptionError
from market_pulse.models import ChangeDescriptor, ChangeType, EntityType, SubscriptionHandle
from market_pulse.observability import get_logger

logger = get_logger(__name__)

ChangeCallback = Callable[[ChangeDescriptor], Union[None, Awaitable[None]]]
DropCallback = Callable[[SubscriptionError], Union[None, Awaitable[None]]]


async def _invoke(callback: Callable[[Any], Any], argument: Any) -> None:
    result = callback(argument)
    if inspect.isawaitable(result):
        await result


@dataclass
class _Subscriber:
    handle: SubscriptionHandle
    callback: ChangeCallback
    on_drop: Optional[DropCallback] = None


class ChangeFeed:
    """
    Entity-keyed change fan-out.

    - Per-subscriber error isolation on delivery
    - `drop(entity)` simulates/propagates a lost channel: handles go
      inactive, `on_drop` callbacks fire, new subscriptions are refused
      until `restore(entity)`
    - Bounded history of delivered changes
    """

    def __init__(self, max_history: int = 100):
        self._subscribers: Dict[EntityType, Dict[int, _Subscriber]] = {}
        self._dropped: Set[EntityType] = set()
        self._history: List[ChangeDescriptor] = []
        self._max_history = max_history

    def subscribe(
        self,
        entity: EntityType,
        callback: ChangeCallback,
        on_drop: Optional[DropCallback] = None,
    ) -> SubscriptionHandle:
        """
        Register interest in changes to `entity`.

        Raises:
            SubscriptionError: the entity channel is currently dropped
        """
        if entity in self._dropped:
            raise SubscriptionError("Push channel unavailable", entity=entity.value)

        handle = SubscriptionHandle(entity=entity, _on_cancel=self._remove)
        self._subscribers.setdefault(entity, {})[handle.id] = _Subscriber(handle, callback, on_drop)
        logger.debug(f"Subscribed #{handle.id} to {entity.value} changes")
        return handle

    def _remove(self, handle: SubscriptionHandle) -> None:
        subscribers = self._subscribers.get(handle.entity)
        if subscribers is not None:
            subscribers.pop(handle.id, None)
            if not subscribers:
                del self._subscribers[handle.entity]

    async def publish(
        self,
        entity: EntityType,
        change_type: ChangeType,
        record: Optional[Mapping[str, Any]] = None,
        old_record: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Deliver a change to every active subscriber of `entity`.

        Returns:
            Number of subscribers that handled the change without error
        """
        descriptor = ChangeDescriptor(
            entity=entity,
            change_type=change_type,
            record=dict(record or {}),
            old_record=dict(old_record) if old_record is not None else None,
        )

        if entity in self._dropped:
            logger.warning(f"Change to {entity.value} lost: channel dropped")
            return 0

        self._history.append(descriptor)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        subscribers = [s for s in self._subscribers.get(entity, {}).values() if s.handle.active]
        if not subscribers:
            logger.debug(f"No subscribers for {entity.value} change")
            return 0

        results = await asyncio.gather(
            *[_invoke(s.callback, descriptor) for s in subscribers],
            return_exceptions=True,
        )

        delivered = 0
        for subscriber, result in zip(subscribers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Subscriber #{subscriber.handle.id} failed on {entity.value} change: {result}",
                    extra={"entity": entity.value, "change_type": change_type.value},
                )
            else:
                delivered += 1
        return delivered

    async def drop(self, entity: EntityType, reason: str = "channel closed") -> int:
        """
        Drop the channel for `entity` and notify its subscribers.

        Returns:
            Number of subscriptions that were cut
        """
        self._dropped.add(entity)
        subscribers = list(self._subscribers.pop(entity, {}).values())
        logger.warning(
            f"Push channel for {entity.value} dropped",
            extra={"reason": reason, "subscribers": len(subscribers)},
        )

        for subscriber in subscribers:
            subscriber.handle.deactivate()
            if subscriber.on_drop is None:
                continue
            error = SubscriptionError("Push channel dropped", details=reason, entity=entity.value)
            try:
                await _invoke(subscriber.on_drop, error)
            except Exception as e:
                logger.error(f"Drop handler for #{subscriber.handle.id} failed: {e}")
        return len(subscribers)

    def restore(self, entity: EntityType) -> None:
        """Re-open a dropped channel for new subscriptions."""
        self._dropped.discard(entity)

    def is_dropped(self, entity: EntityType) -> bool:
        return entity in self._dropped

    def subscriber_count(self, entity: Optional[EntityType] = None) -> int:
        if entity is not None:
            return len(self._subscribers.get(entity, {}))
        return sum(len(subs) for subs in self._subscribers.values())

    def get_history(self, entity: Optional[EntityType] = None, limit: int = 20) -> List[Dict[str, Any]]:
        changes = self._history
        if entity is not None:
            changes = [c for c in changes if c.entity == entity]
        return [c.to_dict() for c in changes[-limit:]]
