"""
Pydantic request/response models for the dashboard service.

Provides type-safe models with automatic validation and documentation.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# ═══════════════════════════════════════════════════════════════════════════════
# DATABASE WEBHOOK
# ═══════════════════════════════════════════════════════════════════════════════

class DatabaseWebhookPayload(BaseModel):
    """Row change as posted by a Supabase database webhook."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Literal["INSERT", "UPDATE", "DELETE"] = Field(description="Kind of change")
    table: str = Field(description="Table the change happened in")
    db_schema: str = Field("public", alias="schema", description="Database schema")
    record: Optional[Dict[str, Any]] = Field(None, description="Row after the change")
    old_record: Optional[Dict[str, Any]] = Field(None, description="Row before the change")


class WebhookAck(BaseModel):
    """Webhook receipt."""
    status: str = Field(description="accepted or ignored")
    entity: Optional[str] = Field(None, description="Entity the table maps to")
    delivered: int = Field(0, description="Subscribers that received the change")


# ═══════════════════════════════════════════════════════════════════════════════
# HEALTH CHECK
# ═══════════════════════════════════════════════════════════════════════════════

class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(description="Service status: healthy or degraded")
    version: str = Field(description="Application version")
    uptime_seconds: int = Field(description="Uptime in seconds")
    correlation_id: Optional[str] = Field(None, description="Request correlation ID")
    coordinator_state: Optional[str] = Field(None, description="idle or pending")
    live_updates: bool = Field(description="False when push updates are unavailable")
    snapshot_id: Optional[int] = Field(None, description="Currently installed snapshot")
    failed_families: List[str] = Field(default_factory=list, description="Families missing from the snapshot")
    websocket_connections: int = Field(0, description="Connected dashboard clients")


class MetricsResponse(BaseModel):
    """In-memory pipeline metrics."""
    counters: Dict[str, int]
    family_failures: Dict[str, int]
    timing: Dict[str, Dict[str, Any]]
