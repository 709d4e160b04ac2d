"""
Tests for market_pulse.config module.
"""
import pytest

from market_pulse.config import (
    AnalyticsSettings,
    AppConfig,
    LoggingConfig,
    SupabaseConfig,
    validate_config,
)
from market_pulse.exceptions import ConfigurationError
from market_pulse.models import EntityType, Granularity


class TestAnalyticsSettings:
    """Tests for AnalyticsSettings."""

    def test_defaults(self, monkeypatch):
        for name in ("ANALYTICS_GRANULARITY", "ANALYTICS_RANGE_DAYS", "DEBOUNCE_WINDOW_MS",
                     "RECENCY_WINDOW_MS", "ANALYTICS_TIMEZONE"):
            monkeypatch.delenv(name, raising=False)
        settings = AnalyticsSettings()
        assert settings.granularity_enum is Granularity.DAY
        assert settings.debounce_window_ms == 1000
        assert settings.recency_window_ms == 5000
        assert settings.top_sellers_k == 5
        assert settings.top_categories_k == 8
        assert settings.recent_activity_limit == 10

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("DEBOUNCE_WINDOW_MS", "250")
        monkeypatch.setenv("ANALYTICS_GRANULARITY", "week")
        settings = AnalyticsSettings()
        assert settings.debounce_window_ms == 250
        assert settings.granularity_enum is Granularity.WEEK

    def test_bad_integer_env(self, monkeypatch):
        monkeypatch.setenv("ANALYTICS_RANGE_DAYS", "thirty")
        with pytest.raises(ConfigurationError):
            AnalyticsSettings()

    def test_watched_entities(self):
        assert AnalyticsSettings().watched == (
            EntityType.USER, EntityType.LISTING, EntityType.OFFER, EntityType.REPORT, EntityType.REVIEW,
        )

    def test_with_overrides(self, settings):
        changed = settings.with_overrides(top_sellers_k=3)
        assert changed.top_sellers_k == 3
        assert settings.top_sellers_k == 5

    def test_validate_lists_every_problem(self, settings):
        bad = settings.with_overrides(granularity="year", top_sellers_k=0, watched_entities=("user", "audit"))
        with pytest.raises(ConfigurationError) as exc_info:
            bad.validate()
        message = str(exc_info.value)
        assert "granularity" in message
        assert "top_sellers_k" in message
        assert "audit" in message

    def test_validate_ok(self, settings):
        settings.validate()


class TestValidateConfig:
    """Tests for validate_config."""

    def test_missing_supabase(self, settings):
        app_config = AppConfig(supabase=SupabaseConfig(url="", key=""), analytics=settings)
        with pytest.raises(ConfigurationError) as exc_info:
            validate_config(app_config)
        assert "SUPABASE_URL" in str(exc_info.value)
        assert "SUPABASE_KEY" in str(exc_info.value)

    def test_bad_url_scheme(self, settings):
        app_config = AppConfig(supabase=SupabaseConfig(url="db.example.com", key="k"), analytics=settings)
        with pytest.raises(ConfigurationError, match="http"):
            validate_config(app_config)

    def test_supabase_optional(self, settings):
        app_config = AppConfig(supabase=SupabaseConfig(url="", key=""), analytics=settings)
        validate_config(app_config, require_supabase=False)

    def test_valid(self, settings):
        app_config = AppConfig(
            supabase=SupabaseConfig(url="https://abc.supabase.co", key="anon"), analytics=settings,
        )
        validate_config(app_config)

    def test_rest_url(self):
        assert SupabaseConfig(url="https://abc.supabase.co", key="k").rest_url == "https://abc.supabase.co/rest/v1"


class TestLoggingConfig:
    def test_json_format(self):
        assert LoggingConfig(level="INFO", format="json").json_format is True
        assert LoggingConfig(level="INFO", format="text").json_format is False
