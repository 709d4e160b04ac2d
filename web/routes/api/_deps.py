"""Shared dependencies for API route modules."""
import time

from fastapi import HTTPException, Request

from market_pulse.observability import get_logger
from web.services.dashboard_service import DashboardService

# Track startup time for uptime calculation
START_TIME = time.time()


def get_dashboard(request: Request) -> DashboardService:
    service = getattr(request.app.state, "dashboard", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Dashboard service is not running")
    return service


__all__ = ["START_TIME", "get_dashboard", "get_logger"]
