"""
Database webhook receiver.

Supabase database webhooks POST every insert/update/delete of the watched
tables here; the change is published into the dashboard's push feed.
"""
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from market_pulse.exceptions import ValidationError
from market_pulse.observability import get_logger
from web.config import WEBHOOK_SECRET_HEADER
from web.routes.api._deps import get_dashboard
from web.schemas import DatabaseWebhookPayload, WebhookAck
from web.services.dashboard_service import DashboardService

router = APIRouter(prefix="/hooks", tags=["hooks"])
logger = get_logger(__name__)


def verify_secret(
    request: Request,
    secret: Optional[str] = Header(default=None, alias=WEBHOOK_SECRET_HEADER),
) -> None:
    expected = getattr(request.app.state, "webhook_secret", "")
    if not expected:
        return
    if secret is None or not hmac.compare_digest(secret.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected webhook with a missing or wrong secret")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.post("/db-change", response_model=WebhookAck, dependencies=[Depends(verify_secret)])
async def receive_db_change(
    payload: DatabaseWebhookPayload,
    service: DashboardService = Depends(get_dashboard),
):
    """Publish one row change into the push feed."""
    try:
        return await service.handle_change(
            payload.table, payload.type, payload.record, payload.old_record
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
