"""
WebSocket connection management for live dashboard updates.

Provides room-based subscriptions and broadcast for pushing snapshot and
live-update status events to connected clients.

Usage:
    from web.websocket_manager import manager

    # In WebSocket endpoint
    conn = await manager.connect(websocket, room="dashboard")

    # Broadcast to all dashboard clients
    await manager.broadcast("dashboard", WebSocketEvent.SNAPSHOT_PUBLISHED, {...})
"""
import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from fastapi import WebSocket

from market_pulse.models import utcnow
from market_pulse.observability import get_logger

logger = get_logger(__name__)


class WebSocketEvent(Enum):
    """Events that can be sent via WebSocket."""

    # Dashboard events
    SNAPSHOT_PUBLISHED = "snapshot_published"
    LIVE_UPDATES_DEGRADED = "live_updates_degraded"
    LIVE_UPDATES_RESTORED = "live_updates_restored"

    # Connection events
    CONNECTED = "connected"
    PONG = "pong"


EventName = Union[WebSocketEvent, str]


@dataclass
class ConnectionInfo:
    """Information about a WebSocket connection."""

    id: int
    websocket: WebSocket
    room: str
    connected_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    message_count: int = 0


class ConnectionManager:
    """
    Manages WebSocket connections with room-based subscriptions.

    Features:
    - Multiple rooms
    - Broadcast to all connections in a room
    - Automatic cleanup of dead connections
    """

    def __init__(self):
        # Room -> connection_id -> ConnectionInfo
        self._rooms: Dict[str, Dict[int, ConnectionInfo]] = {}
        self._lock = asyncio.Lock()
        self._total_connections = 0
        self._total_messages_sent = 0
        self._next_connection_id = 1

    async def connect(self, websocket: WebSocket, room: str = "dashboard") -> ConnectionInfo:
        """Accept a WebSocket connection and add it to a room."""
        await websocket.accept()

        async with self._lock:
            conn_info = ConnectionInfo(id=self._next_connection_id, websocket=websocket, room=room)
            self._next_connection_id += 1
            self._rooms.setdefault(room, {})[conn_info.id] = conn_info
            self._total_connections += 1

        logger.info(
            f"WebSocket connected to room '{room}' "
            f"({self.connection_count(room)} in room)"
        )

        await self.send(conn_info, WebSocketEvent.CONNECTED, {"room": room})
        return conn_info

    async def disconnect(self, conn_info: ConnectionInfo) -> None:
        """Remove a connection from its room."""
        async with self._lock:
            room = self._rooms.get(conn_info.room)
            if room is not None:
                room.pop(conn_info.id, None)
                if not room:
                    del self._rooms[conn_info.room]

        logger.info(
            f"WebSocket disconnected from room '{conn_info.room}' "
            f"(remaining: {self.connection_count(conn_info.room)} in room)"
        )

    async def broadcast(self, room: str, event: EventName, data: Dict[str, Any]) -> int:
        """
        Broadcast a message to all connections in a room.

        Returns:
            Number of connections that received the message
        """
        async with self._lock:
            connections = list(self._rooms.get(room, {}).values())

        if not connections:
            logger.debug(f"No connections in room '{room}' for broadcast")
            return 0

        results = await asyncio.gather(
            *[self.send(conn, event, data) for conn in connections],
            return_exceptions=True,
        )

        sent_count = 0
        for conn, result in zip(connections, results):
            if result is True:
                sent_count += 1
            else:
                if isinstance(result, Exception):
                    logger.warning(f"Failed to send to connection #{conn.id}: {result}")
                await self.disconnect(conn)

        self._total_messages_sent += sent_count
        return sent_count

    async def send(self, conn: ConnectionInfo, event: EventName, data: Dict[str, Any]) -> bool:
        """Send one message; False if the socket is gone."""
        event_name = event.value if isinstance(event, WebSocketEvent) else event
        message = json.dumps(
            {
                "event": event_name,
                "data": data,
                "timestamp": utcnow().isoformat(),
            },
            default=str,
        )

        try:
            await conn.websocket.send_text(message)
        except Exception as e:
            logger.debug(f"Failed to send message: {e}")
            return False

        conn.last_activity = utcnow()
        conn.message_count += 1
        return True

    async def handle_message(self, conn_info: ConnectionInfo, message: str) -> None:
        """Answer keep-alives; anything else is ignored."""
        conn_info.last_activity = utcnow()

        if message == "ping":
            await self.send(conn_info, WebSocketEvent.PONG, {})
            return

        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.debug(f"Received non-JSON message: {message[:100]}")
            return

        if isinstance(data, dict) and data.get("action") == "ping":
            await self.send(conn_info, WebSocketEvent.PONG, {})

    def connection_count(self, room: Optional[str] = None) -> int:
        if room:
            return len(self._rooms.get(room, {}))
        return sum(len(conns) for conns in self._rooms.values())

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_connections": self.connection_count(),
            "total_connections_ever": self._total_connections,
            "total_messages_sent": self._total_messages_sent,
            "rooms": {room: len(conns) for room, conns in self._rooms.items()},
        }


# Global manager instance
manager = ConnectionManager()
