"""
Rotation API schemas.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.domain import Case, TestStatus


class RotationResultResponse(BaseModel):
    test_id: str
    from_case: Case
    to_case: Case
    success: bool
    next_rotation: Optional[datetime] = None
    error: Optional[str] = None
    skipped: bool = False


class RotationSummaryResponse(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    duration_ms: int = 0
    results: List[RotationResultResponse] = Field(default_factory=list)


class RotationRunResponse(BaseModel):
    """Response of the rotation trigger."""

    ok: bool = True
    summary: RotationSummaryResponse


class RotationStateResponse(BaseModel):
    """Authoritative rotation state of a product's active test."""

    test_id: Optional[str] = None
    product_id: Optional[str] = None
    status: Optional[TestStatus] = None
    current_case: Optional[Case] = None
    last_rotation: Optional[datetime] = None
    next_rotation: Optional[datetime] = None


class ABTestResponse(BaseModel):
    """Full test record."""

    id: str
    tenant_id: Optional[str] = None
    name: str
    product_id: str
    status: TestStatus
    current_case: Case
    traffic_split: int
    rotation_hours: float
    base_images: List[str] = Field(default_factory=list)
    test_images: List[str] = Field(default_factory=list)
    last_rotation: Optional[datetime] = None
    next_rotation: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RotationEventResponse(BaseModel):
    id: str
    test_id: str
    from_case: Case
    to_case: Case
    triggered_by: str
    actor: Optional[str] = None
    success: bool
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RotationHistoryResponse(BaseModel):
    items: List[RotationEventResponse] = Field(default_factory=list)
    total: int = 0
