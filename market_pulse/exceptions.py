"""
Custom exception hierarchy for analytics aggregation.

Exception Hierarchy:
    MarketPulseError (base)
    ├── FetchError                 - Event source request failed
    │   ├── TransientFetchError    - Network/timeout issues (caller may refresh)
    │   └── SchemaError            - Missing table/column or permission (never retried)
    ├── SubscriptionError          - Push channel dropped or refused
    └── ComputeError               - Bug while bucketizing/ranking a metric family

    ValidationError                - Input validation failed
    ConfigurationError             - Required configuration missing or invalid
"""
from typing import Any, Optional


class MarketPulseError(Exception):
    """Base exception for all analytics-related errors."""

    kind = "error"

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class FetchError(MarketPulseError):
    """
    A fetch against the event source failed.

    `retryable` tells the caller whether a manual refresh has a chance of
    succeeding. Nothing in this package retries a fetch on its own.
    """

    kind = "fetch"
    retryable = False

    def __init__(self, message: str, details: Optional[str] = None, entity: Optional[str] = None):
        super().__init__(message, details)
        self.entity = entity


class TransientFetchError(FetchError):
    """
    Network-related errors (timeout, connection refused, 5xx, rate limiting).

    Eligible for a caller-initiated refresh.
    """

    kind = "transient"
    retryable = True

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        entity: Optional[str] = None,
        retry_after: Optional[int] = None,
    ):
        super().__init__(message, details, entity)
        self.retry_after = retry_after


class SchemaError(FetchError):
    """
    The backend rejected the query itself.

    Missing relation, unknown column or permission denied. Retrying cannot
    help, so it is logged with full context and surfaced as a failed family.
    """

    kind = "schema"
    retryable = False

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        entity: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message, details, entity)
        self.status_code = status_code
        self.error_code = error_code


class SubscriptionError(MarketPulseError):
    """Push channel for an entity was dropped or could not be opened."""

    kind = "subscription"

    def __init__(self, message: str, details: Optional[str] = None, entity: Optional[str] = None):
        super().__init__(message, details)
        self.entity = entity


class ComputeError(MarketPulseError):
    """
    Aggregation logic failed on data it was given.

    Never expected in normal operation; reported like a schema failure.
    """

    kind = "compute"

    def __init__(self, message: str, details: Optional[str] = None, family: Optional[str] = None):
        super().__init__(message, details)
        self.family = family


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating caller-supplied windows and settings.
    """

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass
