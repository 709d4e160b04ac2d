"""
Web service configuration.
"""
from market_pulse.config import VERSION, config

# Web server settings
WEB_HOST = config.web.host
WEB_PORT = config.web.port

# Shared secret sent by the database webhook (empty disables the check)
WEBHOOK_SECRET = config.web.webhook_secret
WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"

# WebSocket room every dashboard client joins
DASHBOARD_ROOM = "dashboard"

__all__ = [
    "VERSION",
    "WEB_HOST",
    "WEB_PORT",
    "WEBHOOK_SECRET",
    "WEBHOOK_SECRET_HEADER",
    "DASHBOARD_ROOM",
]
