"""
Event tracking API schemas.
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from core.domain import Case, EventSource, EventType


class TrackEventRequest(BaseModel):
    """One attribution event from a storefront."""

    test_id: str = Field(..., min_length=1, max_length=64)
    session_id: str = Field(..., min_length=1, max_length=255)
    event_type: EventType
    product_id: str = Field(..., min_length=1, max_length=255)
    case: Optional[Case] = Field(None, description="Case shown; defaults to the test's current case")
    variant_id: Optional[str] = Field(None, max_length=255)
    revenue: Optional[float] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=1)
    source: Optional[EventSource] = None
    order_id: Optional[str] = Field(None, max_length=255)


class TrackEventResponse(BaseModel):
    """Acknowledgement for a stored (or deduplicated) event."""

    success: bool = True
    event_id: str
    test_id: str
    active_case: Case
    duplicate: bool = False


class CheckoutLineItem(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=255)
    variant_id: Optional[str] = Field(None, max_length=255)
    quantity: int = Field(1, ge=1)
    price: float = Field(0.0, ge=0, description="Unit price")


class CheckoutRequest(BaseModel):
    """A completed checkout to attribute."""

    session_id: str = Field(..., min_length=1, max_length=255)
    order_id: str = Field(..., min_length=1, max_length=255)
    line_items: List[CheckoutLineItem] = Field(default_factory=list)


class CheckoutResponse(BaseModel):
    attributed: int = Field(..., description="Number of line items attributed to a test")
    events: List[TrackEventResponse] = Field(default_factory=list)
