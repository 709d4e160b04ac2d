"""
Typed push payloads.

Row changes arrive as untyped JSON records. Each entity gets a pydantic
model; anything that does not validate becomes an `UnknownChange` instead of
being poked at field by field.

Usage:
    from market_pulse.payloads import parse_change, OfferChange

    change = parse_change(descriptor)
    if isinstance(change, OfferChange):
        ...
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from market_pulse.models import ChangeDescriptor, EntityType
from market_pulse.observability import get_logger

logger = get_logger(__name__)


def _as_str(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


class ChangePayload(BaseModel):
    """Fields shared by every row change."""

    model_config = ConfigDict(extra="allow", frozen=True)

    id: str
    created_at: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return _as_str(value)


class UserChange(ChangePayload):
    email: Optional[str] = None
    name: Optional[str] = None
    status: Optional[str] = None


class ListingChange(ChangePayload):
    user_id: Optional[str] = None
    category_id: Optional[str] = None
    status: Optional[str] = None
    title: Optional[str] = None
    price: Optional[Decimal] = None

    @field_validator("user_id", "category_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _as_str(value)


class OfferChange(ChangePayload):
    buyer_id: str
    seller_id: str
    listing_id: Optional[str] = None
    amount: Optional[Decimal] = None
    status: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("buyer_id", "seller_id", "listing_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _as_str(value)

    def role_of(self, viewer_id: str) -> Optional[str]:
        """'buyer', 'seller' or None when the viewer is not a party."""
        if self.buyer_id == viewer_id:
            return "buyer"
        if self.seller_id == viewer_id:
            return "seller"
        return None


class MessageChange(ChangePayload):
    conversation_id: Optional[str] = None
    sender_id: Optional[str] = None

    @field_validator("conversation_id", "sender_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _as_str(value)


class ViewChange(ChangePayload):
    listing_id: Optional[str] = None
    user_id: Optional[str] = None
    viewed_at: Optional[datetime] = None

    @field_validator("listing_id", "user_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _as_str(value)


class ReportChange(ChangePayload):
    status: Optional[str] = None
    reason: Optional[str] = None


class ReviewChange(ChangePayload):
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    reviewer_id: Optional[str] = None

    @field_validator("reviewer_id", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> Any:
        return _as_str(value)


class CategoryChange(ChangePayload):
    name: Optional[str] = None


class UnknownChange(BaseModel):
    """A payload that could not be mapped to its entity model."""

    model_config = ConfigDict(frozen=True)

    entity: str
    reason: str
    raw: Dict[str, Any] = Field(default_factory=dict)


TypedChange = Union[
    UserChange, ListingChange, OfferChange, MessageChange, ViewChange,
    ReportChange, ReviewChange, CategoryChange, UnknownChange,
]

PAYLOAD_MODELS: Dict[EntityType, Type[ChangePayload]] = {
    EntityType.USER: UserChange,
    EntityType.LISTING: ListingChange,
    EntityType.OFFER: OfferChange,
    EntityType.MESSAGE: MessageChange,
    EntityType.VIEW: ViewChange,
    EntityType.REPORT: ReportChange,
    EntityType.REVIEW: ReviewChange,
    EntityType.CATEGORY: CategoryChange,
}


def parse_change(descriptor: ChangeDescriptor) -> TypedChange:
    """
    Map a change descriptor onto its entity model.

    Deletes carry their data in `old_record`. Never raises: invalid payloads
    come back as `UnknownChange`.
    """
    raw = dict(descriptor.record or descriptor.old_record or {})
    model = PAYLOAD_MODELS.get(descriptor.entity)
    if model is None:
        return UnknownChange(entity=descriptor.entity.value, reason="no payload model", raw=raw)
    if not raw:
        return UnknownChange(entity=descriptor.entity.value, reason="empty payload", raw=raw)

    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.debug(
            f"Unparseable {descriptor.entity.value} payload",
            extra={"errors": e.error_count(), "change_type": descriptor.change_type.value},
        )
        return UnknownChange(
            entity=descriptor.entity.value,
            reason=f"invalid payload ({e.error_count()} errors)",
            raw=raw,
        )
