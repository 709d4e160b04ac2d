"""
WebSocket routes for live dashboard updates.

Provides:
- /ws/dashboard - snapshot_published and live_updates_degraded events
"""
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from market_pulse.observability import get_logger
from web.config import DASHBOARD_ROOM
from web.websocket_manager import WebSocketEvent, manager

router = APIRouter(tags=["websocket"])
logger = get_logger(__name__)


@router.websocket("/ws/dashboard")
async def dashboard_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for live dashboard updates.

    Receives events:
    - connected: sent once after the handshake
    - snapshot_published: a new snapshot was installed (sent on connect too)
    - live_updates_degraded / live_updates_restored: push channel status

    Client can send:
    - "ping" for keep-alive (responds with "pong")
    """
    conn_info = await manager.connect(websocket, room=DASHBOARD_ROOM)

    service = getattr(websocket.app.state, "dashboard", None)
    snapshot = service.session.snapshot if service else None
    if snapshot is not None:
        await manager.send(
            conn_info,
            WebSocketEvent.SNAPSHOT_PUBLISHED,
            service.session.published_payload(service.session.installed_generation, snapshot),
        )

    try:
        while True:
            message = await websocket.receive_text()
            await manager.handle_message(conn_info, message)
    except WebSocketDisconnect:
        logger.debug("Client disconnected normally")
    finally:
        await manager.disconnect(conn_info)


@router.get("/ws/stats")
async def get_websocket_stats():
    """Active connections, room counts and message stats."""
    return manager.get_stats()
