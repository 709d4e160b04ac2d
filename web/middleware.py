"""
Request observability for the dashboard API.

Each request runs inside its own correlation context (taken from
X-Request-ID when the caller supplies one), so log lines written while a
manual refresh or webhook delivery is processed carry the request's id.
Timings are keyed by route template rather than raw path.
"""
import time
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from market_pulse.observability import correlation_context, get_logger, metrics

logger = get_logger(__name__)

# Polled by monitors; logged only when they fail
QUIET_PATHS = frozenset({"/api/health", "/api/metrics", "/ws/stats"})


def _route_key(request: Request) -> str:
    route = request.scope.get("route")
    template = getattr(route, "path", None) or request.url.path
    return f"{request.method} {template}"


def _log_outcome(request: Request, status_code: int, duration_ms: float) -> None:
    if request.url.path in QUIET_PATHS and status_code < 400:
        return
    log = logger.info if status_code < 400 else logger.warning
    log(
        f"{request.method} {request.url.path} -> {status_code}",
        extra={
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            "client_ip": request.client.host if request.client else "unknown",
        },
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Correlation id, access log line and timing metrics per request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        with correlation_context(request.headers.get("X-Request-ID")) as request_id:
            started = time.perf_counter()
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(
                    f"{request.method} {request.url.path} raised {type(e).__name__}: {e}",
                    extra={"duration_ms": round((time.perf_counter() - started) * 1000, 2)},
                )
                metrics.increment(f"http_error:{type(e).__name__}")
                raise

            duration_ms = (time.perf_counter() - started) * 1000
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"

            _log_outcome(request, response.status_code, duration_ms)
            metrics.increment("http_requests")
            metrics.record_timing(_route_key(request), duration_ms)
            if response.status_code >= 400:
                metrics.increment(f"http_error:HTTP_{response.status_code}")

            return response
