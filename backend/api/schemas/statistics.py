"""
Statistics aggregation and export schemas.
"""

from datetime import date as date_type
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AggregateRequest(BaseModel):
    """Date range to roll up. Re-running a range is safe."""

    start_date: date_type
    end_date: date_type
    tenant_id: Optional[str] = Field(None, max_length=255)

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if (self.end_date - self.start_date).days > 366:
            raise ValueError("Date range cannot exceed 366 days")
        return self


class AggregateResponse(BaseModel):
    start_date: date_type
    end_date: date_type
    groups: int
    created: int
    skipped: int
    unattributed_events: int
    # end_date was pulled back to the last completed UTC day
    clamped: bool = False
    tenants_backfilled: int = 0


class DailyStatisticResponse(BaseModel):
    date: date_type
    tenant_id: str
    product_id: str
    variant: str
    impressions: int
    add_to_carts: int
    orders: int
    revenue: float
    ctr: float
    conversion_rate: float

    model_config = ConfigDict(from_attributes=True)


class StatisticsExportResponse(BaseModel):
    tenant_id: str
    start_date: date_type
    end_date: date_type
    # Last day rolled up by refresh=true; today is never aggregated
    refreshed_through: Optional[date_type] = None
    rows: List[DailyStatisticResponse] = Field(default_factory=list)
