"""Health check and metrics endpoints."""
import time

from fastapi import APIRouter, Depends

from market_pulse.observability import get_correlation_id, metrics
from web.config import DASHBOARD_ROOM, VERSION
from web.schemas import HealthResponse, MetricsResponse
from web.services.dashboard_service import DashboardService
from web.websocket_manager import manager
from ._deps import START_TIME, get_dashboard

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(service: DashboardService = Depends(get_dashboard)):
    """Health check endpoint for Docker/load balancer monitoring."""
    session = service.session
    snapshot = session.snapshot
    failed = [f.value for f in snapshot.failed_families] if snapshot else []
    state = session.coordinator_state

    healthy = snapshot is not None and not failed and not session.degraded
    return {
        "status": "healthy" if healthy else "degraded",
        "version": VERSION,
        "uptime_seconds": int(time.time() - START_TIME),
        "correlation_id": get_correlation_id(),
        "coordinator_state": state.value if state else None,
        "live_updates": not session.degraded,
        "snapshot_id": snapshot.snapshot_id if snapshot else None,
        "failed_families": failed,
        "websocket_connections": manager.connection_count(DASHBOARD_ROOM),
    }


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics():
    """In-memory aggregation and request metrics."""
    return metrics.get_stats()
