"""
Async event source for the Supabase (PostgREST) backend.

Reads go through the REST interface with connection pooling and Range-header
pagination. Push delivery is delegated to a `ChangeFeed`, fed by the
database-webhook receiver in `web/`.

Error mapping:
- timeouts, connection failures, 408/425/429/5xx  -> TransientFetchError
- everything else >= 400 (bad column, missing relation, RLS denial)
                                                -> SchemaError
- a body that is not a JSON array                 -> SchemaError
"""
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx

from market_pulse.change_feed import ChangeCallback, ChangeFeed, DropCallback
from market_pulse.config import config
from market_pulse.exceptions import ConfigurationError, SchemaError, TransientFetchError
from market_pulse.models import EntityType, SubscriptionHandle, TimeWindow
from market_pulse.observability import Timer, get_correlation_id, get_logger

logger = get_logger(__name__)

TRANSIENT_STATUS_CODES = {408, 425, 429}


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def build_query(
    entity: EntityType,
    filters: Optional[Mapping[str, Any]] = None,
    window: Optional[TimeWindow] = None,
    select: str = "*",
) -> List[Tuple[str, str]]:
    """
    Translate a fetch into PostgREST query parameters.

    A list of pairs, because the timestamp column appears twice (gte and lt).
    """
    params: List[Tuple[str, str]] = [("select", select)]

    for column, value in (filters or {}).items():
        if value is None:
            params.append((column, "is.null"))
        elif isinstance(value, (list, tuple, set, frozenset)):
            joined = ",".join(_format_value(v) for v in value)
            params.append((column, f"in.({joined})"))
        else:
            params.append((column, f"eq.{_format_value(value)}"))

    column = entity.timestamp_column
    if column is not None:
        if window is not None:
            params.append((column, f"gte.{window.start.isoformat()}"))
            params.append((column, f"lt.{window.end.isoformat()}"))
        params.append(("order", f"{column}.asc,id.asc"))

    return params


class SupabaseEventSource:
    """
    Event source reading from PostgREST.

    Usage:
        async with SupabaseEventSource(feed=feed) as source:
            listings = await source.fetch_range(EntityType.LISTING, window=window)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        timeout: Optional[float] = None,
        page_size: Optional[int] = None,
        feed: Optional[ChangeFeed] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            url: Project URL (defaults to SUPABASE_URL)
            key: API key (defaults to SUPABASE_KEY)
            timeout: Request timeout in seconds
            page_size: Rows requested per Range page
            feed: Push channel used by `subscribe`
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.url = (url or config.supabase.url).rstrip("/")
        self.key = key or config.supabase.key
        self.timeout = timeout or config.supabase.timeout_seconds
        self.page_size = page_size or config.supabase.page_size
        self.feed = feed or ChangeFeed()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        if not self.url or not self.key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_KEY are required")

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
            "Accept": "application/json",
        }

    async def connect(self) -> None:
        """Create the pooled HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SupabaseEventSource":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def fetch_range(
        self,
        entity: EntityType,
        filters: Optional[Mapping[str, Any]] = None,
        window: Optional[TimeWindow] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch every matching row, one Range page at a time."""
        params = build_query(entity, filters, window)
        rows: List[Dict[str, Any]] = []
        offset = 0

        while True:
            page = await self._fetch_page(entity, params, offset)
            rows.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size

        logger.debug(
            f"Fetched {len(rows)} {entity.table} rows",
            extra={"entity": entity.value, "pages": offset // self.page_size + 1},
        )
        return rows

    async def _fetch_page(
        self,
        entity: EntityType,
        params: List[Tuple[str, str]],
        offset: int,
    ) -> List[Dict[str, Any]]:
        if not self._client:
            await self.connect()

        headers = {
            "Range-Unit": "items",
            "Range": f"{offset}-{offset + self.page_size - 1}",
        }
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Request-ID"] = correlation_id

        try:
            with Timer(f"fetch_{entity.table}", logger):
                response = await self._client.get(f"/{entity.table}", params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(
                f"Request timeout: {entity.table}",
                extra={"entity": entity.value, "timeout": self.timeout},
            )
            raise TransientFetchError(
                f"Request timeout after {self.timeout}s", entity=entity.value, retry_after=5
            ) from e
        except httpx.RequestError as e:
            logger.error(
                f"Request failed: {entity.table} - {e}",
                extra={"entity": entity.value, "error": str(e)},
            )
            raise TransientFetchError("Backend unreachable", details=str(e), entity=entity.value) from e

        return self._parse_response(entity, response)

    def _parse_response(self, entity: EntityType, response: httpx.Response) -> List[Dict[str, Any]]:
        status = response.status_code

        # Offset past the last row
        if status == 416:
            return []

        if status in TRANSIENT_STATUS_CODES or status >= 500:
            retry_after = response.headers.get("Retry-After")
            logger.warning(
                f"Transient backend error {status} for {entity.table}",
                extra={"entity": entity.value, "status_code": status},
            )
            raise TransientFetchError(
                f"Backend returned {status}",
                details=response.text[:500],
                entity=entity.value,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        if status >= 400:
            error_code, message = None, response.text[:500]
            try:
                body = response.json()
                if isinstance(body, dict):
                    error_code = body.get("code")
                    message = body.get("message") or message
            except ValueError:
                pass
            logger.error(
                f"Schema/permission error {status} for {entity.table}: {message}",
                extra={"entity": entity.value, "status_code": status, "error_code": error_code},
            )
            raise SchemaError(
                f"Backend rejected query on {entity.table}",
                details=message,
                entity=entity.value,
                status_code=status,
                error_code=error_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SchemaError(
                f"Invalid JSON from {entity.table}", details=str(e), entity=entity.value
            ) from e

        if not isinstance(body, list):
            raise SchemaError(
                f"Unexpected response structure from {entity.table}",
                details=f"expected list, got {type(body).__name__}",
                entity=entity.value,
            )
        return body

    def subscribe(
        self,
        entity: EntityType,
        callback: ChangeCallback,
        on_drop: Optional[DropCallback] = None,
    ) -> SubscriptionHandle:
        return self.feed.subscribe(entity, callback, on_drop)
