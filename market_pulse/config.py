"""
Centralized configuration for the marketplace analytics core.

Configuration is loaded from environment variables (and a local `.env`)
with sensible defaults.

Usage:
    from market_pulse.config import config

    window = config.analytics.debounce_window_ms
    url = config.supabase.url
"""

import os
from dataclasses import dataclass, field, replace
from typing import Tuple

from dotenv import load_dotenv

from market_pulse.exceptions import ConfigurationError
from market_pulse.models import EntityType, Granularity

# Load environment variables
load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer (got {raw!r})")


@dataclass(frozen=True)
class SupabaseConfig:
    """Backend data store (PostgREST) connection settings."""

    url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", "").rstrip("/"))
    key: str = field(default_factory=lambda: os.getenv("SUPABASE_KEY", ""))
    timeout_seconds: int = field(default_factory=lambda: _env_int("SUPABASE_TIMEOUT", 30))
    page_size: int = 1000

    @property
    def rest_url(self) -> str:
        return f"{self.url}/rest/v1"


@dataclass(frozen=True)
class AnalyticsSettings:
    """
    Caller-facing knobs for aggregation and refresh coordination.

    top_sellers_k / top_categories_k are the per-family truncation limits.
    """

    granularity: str = field(default_factory=lambda: os.getenv("ANALYTICS_GRANULARITY", "day"))
    range_days: int = field(default_factory=lambda: _env_int("ANALYTICS_RANGE_DAYS", 30))
    debounce_window_ms: int = field(default_factory=lambda: _env_int("DEBOUNCE_WINDOW_MS", 1000))
    recency_window_ms: int = field(default_factory=lambda: _env_int("RECENCY_WINDOW_MS", 5000))
    top_sellers_k: int = 5
    top_categories_k: int = 8
    recent_activity_limit: int = 10
    trend_period_days: int = 7
    timezone: str = field(default_factory=lambda: os.getenv("ANALYTICS_TIMEZONE", "UTC"))

    # Entities whose changes trigger a dashboard recompute
    watched_entities: Tuple[str, ...] = ("user", "listing", "offer", "report", "review")

    @property
    def granularity_enum(self) -> Granularity:
        return Granularity(self.granularity)

    @property
    def watched(self) -> Tuple[EntityType, ...]:
        return tuple(EntityType(name) for name in self.watched_entities)

    def with_overrides(self, **overrides) -> "AnalyticsSettings":
        """Return a copy with some fields replaced (settings are frozen)."""
        return replace(self, **overrides)

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigurationError: listing every invalid setting
        """
        errors = []

        if self.granularity not in {g.value for g in Granularity}:
            errors.append(
                f"granularity must be one of hour/day/week/month (got {self.granularity!r})"
            )
        for name in ("range_days", "debounce_window_ms", "recency_window_ms",
                     "top_sellers_k", "top_categories_k", "recent_activity_limit",
                     "trend_period_days"):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be positive (got {getattr(self, name)})")

        known = {e.value for e in EntityType}
        for name in self.watched_entities:
            if name not in known:
                errors.append(f"unknown watched entity {name!r}")

        if errors:
            raise ConfigurationError(
                "Analytics settings invalid:\n" + "\n".join(f"  - {e}" for e in errors)
            )


@dataclass(frozen=True)
class LoggingConfig:
    """Log level and output format."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    format: str = field(default_factory=lambda: os.getenv("LOG_FORMAT", "text"))

    @property
    def json_format(self) -> bool:
        return self.format == "json"


@dataclass(frozen=True)
class WebConfig:
    """Dashboard HTTP service configuration."""

    host: str = field(default_factory=lambda: os.getenv("WEB_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("WEB_PORT", 8080))
    webhook_secret: str = field(default_factory=lambda: os.getenv("WEBHOOK_SECRET", ""))


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "0.3.0"
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    analytics: AnalyticsSettings = field(default_factory=AnalyticsSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    web: WebConfig = field(default_factory=WebConfig)


# Global config instance
config = AppConfig()

VERSION = config.version


def validate_config(app_config: AppConfig = None, require_supabase: bool = True) -> None:
    """
    Validate that all required configuration is present.

    Call this on startup to fail fast with clear error messages.

    Raises:
        ConfigurationError: If required configuration is missing
    """
    app_config = app_config or config
    errors = []

    if require_supabase:
        if not app_config.supabase.url:
            errors.append("SUPABASE_URL is required but not set")
        elif not app_config.supabase.url.startswith(("http://", "https://")):
            errors.append("SUPABASE_URL must start with http:// or https://")
        if not app_config.supabase.key:
            errors.append("SUPABASE_KEY is required but not set")

    if app_config.supabase.timeout_seconds <= 0:
        errors.append("SUPABASE_TIMEOUT must be positive")

    try:
        app_config.analytics.validate()
    except ConfigurationError as e:
        errors.append(str(e))

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)
