"""Attribution event endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.tracking import (
    CheckoutRequest,
    CheckoutResponse,
    TrackEventRequest,
    TrackEventResponse,
)
from infrastructure.database import get_db
from services.event_ingestion import (
    CheckoutLine,
    EventValidationError,
    ingest_event,
    record_checkout,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/track", tags=["Tracking"])


@router.post("", response_model=TrackEventResponse)
@limiter.limit(get_rate_limit("storefront"))
async def track_event(
    request: Request,
    body: TrackEventRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Record an impression, add-to-cart or purchase.

    Impressions and fallback add-to-carts already recorded for the same
    session, test and case are acknowledged with ``duplicate: true``.
    """
    try:
        result = await ingest_event(
            db,
            test_id=body.test_id,
            session_id=body.session_id,
            event_type=body.event_type.value,
            product_id=body.product_id,
            case=body.case.value if body.case else None,
            variant_id=body.variant_id,
            revenue=body.revenue,
            quantity=body.quantity,
            source=body.source.value if body.source else None,
            order_id=body.order_id,
        )
    except EventValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return TrackEventResponse(
        event_id=result.event_id,
        test_id=result.test_id,
        active_case=result.active_case,
        duplicate=result.duplicate,
    )


@router.post("/checkout", response_model=CheckoutResponse)
@limiter.limit(get_rate_limit("storefront"))
async def track_checkout(
    request: Request,
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
):
    """Attribute a completed checkout, one PURCHASE per tested line item."""
    try:
        results = await record_checkout(
            db,
            session_id=body.session_id,
            order_id=body.order_id,
            line_items=[
                CheckoutLine(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    price=item.price,
                )
                for item in body.line_items
            ],
        )
    except EventValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return CheckoutResponse(
        attributed=len(results),
        events=[
            TrackEventResponse(
                event_id=r.event_id,
                test_id=r.test_id,
                active_case=r.active_case,
                duplicate=r.duplicate,
            )
            for r in results
        ],
    )
