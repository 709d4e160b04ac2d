"""Dashboard snapshot endpoints."""
from fastapi import APIRouter, Depends, HTTPException

from web.services.dashboard_service import DashboardService
from ._deps import get_dashboard, get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("/dashboard")
async def get_dashboard_snapshot(service: DashboardService = Depends(get_dashboard)):
    """The currently installed snapshot; 503 until the first one exists."""
    snapshot = service.session.snapshot
    if snapshot is None:
        raise HTTPException(status_code=503, detail="Dashboard snapshot not ready yet")
    return {
        **snapshot.to_dict(),
        "live_updates": not service.session.degraded,
    }


@router.post("/dashboard/refresh")
async def refresh_dashboard(service: DashboardService = Depends(get_dashboard)):
    """Recompute now. Failed families stay failed in the returned snapshot."""
    if service.session.degraded:
        await service.session.restore_live_updates()
    snapshot = await service.session.refresh()
    if snapshot is None:
        # A newer run won the race, or the session is shutting down
        current = service.session.snapshot
        if current is None:
            raise HTTPException(status_code=503, detail="Dashboard is not mounted")
        logger.info("Manual refresh superseded by a newer snapshot")
        snapshot = current
    return {
        **snapshot.to_dict(),
        "live_updates": not service.session.degraded,
    }
