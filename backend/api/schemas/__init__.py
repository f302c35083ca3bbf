"""
API request and response schemas.
"""

from .assignment import AssignmentResponse
from .rotation import (
    ABTestResponse,
    RotationEventResponse,
    RotationHistoryResponse,
    RotationRunResponse,
    RotationStateResponse,
)
from .statistics import AggregateRequest, AggregateResponse, StatisticsExportResponse
from .tracking import CheckoutRequest, CheckoutResponse, TrackEventRequest, TrackEventResponse

__all__ = [
    "AssignmentResponse",
    "ABTestResponse",
    "RotationEventResponse",
    "RotationHistoryResponse",
    "RotationRunResponse",
    "RotationStateResponse",
    "AggregateRequest",
    "AggregateResponse",
    "StatisticsExportResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "TrackEventRequest",
    "TrackEventResponse",
]
