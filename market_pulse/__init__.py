"""
Market Pulse: analytics aggregation and realtime refresh for the marketplace
admin dashboard.

This package contains the logic shared by the web service and its tests:
- source / supabase_client / change_feed: reading and watching backend data
- bucketizer / trends: time bucketing and period-over-period deltas
- aggregation: the metric families and the snapshot they form
- coordinator / session: debounced recompute for one mounted dashboard
- offer_router: live offer updates for one viewer
"""

# Import in dependency order
from market_pulse.exceptions import (
    MarketPulseError,
    FetchError,
    TransientFetchError,
    SchemaError,
    SubscriptionError,
    ComputeError,
    ValidationError,
    ConfigurationError,
)

from market_pulse.models import (
    EntityType,
    Granularity,
    MetricFamily,
    TimeWindow,
    DashboardSnapshot,
)

from market_pulse.config import config

from market_pulse.change_feed import ChangeFeed
from market_pulse.source import EventSource, InMemoryEventSource
from market_pulse.supabase_client import SupabaseEventSource
from market_pulse.trends import NO_BASELINE_PERCENTAGE, calculate_trend
from market_pulse.aggregation import AggregationEngine
from market_pulse.coordinator import DebounceCoordinator
from market_pulse.offer_router import OfferUpdateRouter
from market_pulse.session import DashboardSession

__all__ = [
    # Exceptions
    "MarketPulseError",
    "FetchError",
    "TransientFetchError",
    "SchemaError",
    "SubscriptionError",
    "ComputeError",
    "ValidationError",
    "ConfigurationError",
    # Models
    "EntityType",
    "Granularity",
    "MetricFamily",
    "TimeWindow",
    "DashboardSnapshot",
    # Config
    "config",
    # Sources
    "ChangeFeed",
    "EventSource",
    "InMemoryEventSource",
    "SupabaseEventSource",
    # Analytics
    "NO_BASELINE_PERCENTAGE",
    "calculate_trend",
    "AggregationEngine",
    "DebounceCoordinator",
    "OfferUpdateRouter",
    "DashboardSession",
]
