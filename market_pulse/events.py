"""
Dashboard lifecycle events.

A small async publish/subscribe bus that decouples the refresh machinery from
whatever presents its output (WebSocket broadcast, logging, tests).

Usage:
    from market_pulse.events import EventBus, DashboardEvent

    bus = EventBus()

    @bus.on(DashboardEvent.SNAPSHOT_PUBLISHED)
    async def push_to_clients(data: dict):
        ...

    await bus.emit(DashboardEvent.SNAPSHOT_PUBLISHED, {"snapshot_id": 7})
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from market_pulse.models import utcnow
from market_pulse.observability import get_correlation_id, get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Coroutine[Any, Any, None]]


class DashboardEvent(Enum):
    """Events emitted by dashboard sessions and coordinators."""

    SNAPSHOT_PUBLISHED = "snapshot_published"
    REFRESH_FAILED = "refresh_failed"
    LIVE_UPDATES_DEGRADED = "live_updates_degraded"
    LIVE_UPDATES_RESTORED = "live_updates_restored"
    OFFER_ACTIVITY = "offer_activity"


@dataclass
class Event:
    """Event payload plus metadata."""

    type: DashboardEvent
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
        }


class EventBus:
    """
    Async event bus.

    - Multiple handlers per event, plus wildcard handlers
    - Handlers run concurrently; one failing handler does not affect others
    - Bounded history for debugging
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[DashboardEvent, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[Event] = []
        self._max_history = max_history

    def on(
        self, event_type: Optional[DashboardEvent] = None
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler (None subscribes to every event)."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[DashboardEvent], handler: EventHandler) -> None:
        if event_type is None:
            self._wildcard_handlers.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(
            f"Registered handler {getattr(handler, '__name__', handler)!s} for "
            f"{event_type.value if event_type else '*'}"
        )

    def unsubscribe(self, event_type: Optional[DashboardEvent], handler: EventHandler) -> bool:
        """Returns True if the handler was found and removed."""
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def emit(
        self,
        event_type: DashboardEvent,
        data: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """Deliver an event to every subscribed handler and return it."""
        event = Event(type=event_type, data=data or {})

        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._wildcard_handlers)

        if not handlers:
            logger.debug(f"No handlers for event {event_type.value}")
            return event

        results = await asyncio.gather(
            *[handler(event.data) for handler in handlers],
            return_exceptions=True,
        )

        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)!s} failed for "
                    f"{event_type.value}: {result}",
                    extra={"event_type": event_type.value},
                )

        return event

    def get_history(self, event_type: Optional[DashboardEvent] = None, limit: int = 20) -> List[Dict[str, Any]]:
        events = self._history
        if event_type:
            events = [e for e in events if e.type == event_type]
        return [e.to_dict() for e in events[-limit:]]

    def clear_handlers(self) -> None:
        """Remove all handlers (useful for testing)."""
        self._handlers.clear()
        self._wildcard_handlers.clear()
