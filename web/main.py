"""
FastAPI web application for the marketplace admin dashboard.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from market_pulse.config import AnalyticsSettings, config, validate_config
from market_pulse.exceptions import ConfigurationError
from market_pulse.observability import get_logger, setup_logging
from market_pulse.source import EventSource
from market_pulse.supabase_client import SupabaseEventSource
from web.config import VERSION, WEB_HOST, WEB_PORT, WEBHOOK_SECRET
from web.middleware import RequestLoggingMiddleware
from web.routes import api, hooks, websocket
from web.services.dashboard_service import DashboardService

# Configure structured logging
# Use JSON format in production (LOG_FORMAT=json), human-readable otherwise
setup_logging(level=config.logging.level, json_format=config.logging.json_format)
logger = get_logger(__name__)


def create_app(
    source: Optional[EventSource] = None,
    settings: Optional[AnalyticsSettings] = None,
    webhook_secret: Optional[str] = None,
) -> FastAPI:
    """
    Build the dashboard application.

    Without a `source`, configuration is validated on startup and the
    Supabase source is used.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Market Pulse dashboard starting...")

        event_source = source
        if event_source is None:
            # Fail fast with clear errors
            try:
                validate_config()
                logger.info("Configuration validated")
            except ConfigurationError as e:
                logger.critical(f"Configuration error: {e}")
                raise
            event_source = SupabaseEventSource()
        elif settings is not None:
            settings.validate()

        service = DashboardService(event_source, settings=settings)
        app.state.dashboard = service
        await service.start()
        logger.info("Dashboard ready")

        yield

        await service.stop()
        app.state.dashboard = None
        logger.info("Market Pulse dashboard stopped")

    app = FastAPI(
        title="Market Pulse",
        description="Realtime analytics for the marketplace admin dashboard",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.webhook_secret = WEBHOOK_SECRET if webhook_secret is None else webhook_secret

    # Adds correlation IDs and timing
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(api.router, prefix="/api")
    app.include_router(hooks.router)
    app.include_router(websocket.router)  # WebSocket routes (no /api prefix)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("web.main:app", host=WEB_HOST, port=WEB_PORT)
