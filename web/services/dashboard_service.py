"""
Dashboard service: one mounted dashboard session behind the HTTP surface.

Owns the event source, the push feed the database webhook writes into, and
the session that turns both into snapshots. Snapshot and live-update events
are forwarded to WebSocket clients.
"""
from typing import Any, Dict, Optional

from market_pulse.change_feed import ChangeFeed
from market_pulse.config import AnalyticsSettings
from market_pulse.events import DashboardEvent, EventBus
from market_pulse.exceptions import ValidationError
from market_pulse.models import ChangeType, EntityType
from market_pulse.observability import get_logger
from market_pulse.session import DashboardSession
from market_pulse.source import EventSource
from web.config import DASHBOARD_ROOM
from web.websocket_manager import ConnectionManager, WebSocketEvent, manager as default_manager

logger = get_logger(__name__)


class DashboardService:
    """Lifecycle and webhook handling for the admin dashboard."""

    def __init__(
        self,
        source: EventSource,
        feed: Optional[ChangeFeed] = None,
        settings: Optional[AnalyticsSettings] = None,
        ws_manager: Optional[ConnectionManager] = None,
    ):
        self.source = source
        self.feed = feed or getattr(source, "feed")
        self.bus = EventBus()
        self.session = DashboardSession(source, settings, event_bus=self.bus)
        self.ws_manager = ws_manager or default_manager
        self._register_event_handlers()

    def _register_event_handlers(self) -> None:
        """Forward dashboard events to WebSocket clients."""

        @self.bus.on(DashboardEvent.SNAPSHOT_PUBLISHED)
        async def on_snapshot_published(data: dict):
            await self.ws_manager.broadcast(DASHBOARD_ROOM, WebSocketEvent.SNAPSHOT_PUBLISHED, data)

        @self.bus.on(DashboardEvent.LIVE_UPDATES_DEGRADED)
        async def on_live_updates_degraded(data: dict):
            await self.ws_manager.broadcast(DASHBOARD_ROOM, WebSocketEvent.LIVE_UPDATES_DEGRADED, data)

        @self.bus.on(DashboardEvent.LIVE_UPDATES_RESTORED)
        async def on_live_updates_restored(data: dict):
            await self.ws_manager.broadcast(DASHBOARD_ROOM, WebSocketEvent.LIVE_UPDATES_RESTORED, data)

    async def start(self) -> None:
        snapshot = await self.session.mount()
        if snapshot is not None:
            logger.info(
                f"Dashboard ready: snapshot #{snapshot.snapshot_id}",
                extra={"failed_families": [f.value for f in snapshot.failed_families]},
            )

    async def stop(self) -> None:
        self.session.unmount()
        close = getattr(self.source, "close", None)
        if close is not None:
            await close()

    async def handle_change(
        self,
        table: str,
        change_type: str,
        record: Optional[Dict[str, Any]] = None,
        old_record: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Publish a webhook row change into the push feed.

        Tables the dashboard does not know are acknowledged and ignored.

        Raises:
            ValidationError: unknown change type
        """
        entity = EntityType.from_table(table)
        if entity is None:
            logger.debug(f"Ignoring change to unwatched table {table}")
            return {"status": "ignored", "entity": None, "delivered": 0}

        kind = ChangeType.parse(change_type)
        if kind is not ChangeType.DELETE and not record:
            raise ValidationError("record", f"{kind.value} change without a record")

        delivered = await self.feed.publish(entity, kind, record, old_record)
        return {"status": "accepted", "entity": entity.value, "delivered": delivered}
