"""Daily statistics aggregation and export endpoints."""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import require_admin_auth
from api.schemas.statistics import (
    AggregateRequest,
    AggregateResponse,
    DailyStatisticResponse,
    StatisticsExportResponse,
)
from infrastructure.database import get_db
from services.event_ingestion import backfill_event_tenants
from services.statistics import (
    default_date_range,
    aggregate_daily_statistics,
    get_daily_statistics,
    records_to_csv,
    statistics_to_records,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/statistics", tags=["Statistics"])


@router.post("/aggregate", response_model=AggregateResponse)
async def aggregate_statistics(
    body: AggregateRequest,
    _: str = Depends(require_admin_auth),
    db: AsyncSession = Depends(get_db),
):
    """
    Roll a date range of events into daily statistics.

    Events missing a tenant are stamped first. Days already rolled up are
    left as they are, so the range may overlap earlier runs. Days that have
    not ended yet are excluded and the response says so with ``clamped``.
    """
    backfill = await backfill_event_tenants(db)
    result = await aggregate_daily_statistics(
        db, body.start_date, body.end_date, tenant_id=body.tenant_id
    )
    return AggregateResponse(**result.to_dict(), tenants_backfilled=backfill["updated"])


@router.get("/export")
async def export_statistics(
    tenant_id: str = Query(..., min_length=1, max_length=255),
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    product_id: Optional[str] = Query(None, max_length=255),
    format: str = Query("json", pattern="^(json|csv)$"),
    refresh: bool = Query(False, description="Aggregate the range before exporting"),
    _: str = Depends(require_admin_auth),
    db: AsyncSession = Depends(get_db),
):
    """Export per-day, per-case rollups for a tenant as JSON or CSV."""
    start_date, end_date = default_date_range(start_date, end_date)
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end_date must not be before start_date",
        )

    refreshed_through = None
    if refresh:
        result = await aggregate_daily_statistics(db, start_date, end_date, tenant_id=tenant_id)
        refreshed_through = result.end_date if result.end_date >= start_date else None

    rows = await get_daily_statistics(
        db, tenant_id, start_date, end_date, product_id=product_id
    )

    if format == "csv":
        content = records_to_csv(statistics_to_records(rows))
        filename = f"statistics_{tenant_id}_{start_date}_{end_date}.csv"
        headers = {"Content-Disposition": f"attachment; filename={filename}"}
        if refreshed_through is not None:
            headers["X-Refreshed-Through"] = refreshed_through.isoformat()
        return StreamingResponse(
            iter([content]),
            media_type="text/csv",
            headers=headers,
        )

    return StatisticsExportResponse(
        tenant_id=tenant_id,
        start_date=start_date,
        end_date=end_date,
        refreshed_through=refreshed_through,
        rows=[DailyStatisticResponse.model_validate(r) for r in rows],
    )
