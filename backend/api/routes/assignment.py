"""Variant assignment endpoint used by the storefront engine."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.assignment import AssignmentResponse
from infrastructure.database import get_db
from services.assignment import resolve_assignment

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Assignment"])


@router.get("/variant/{product_id:path}", response_model=AssignmentResponse)
@limiter.limit(get_rate_limit("storefront"))
async def get_variant(
    request: Request,
    product_id: str,
    session: Optional[str] = Query(None, max_length=255, description="Client session id"),
    force: Optional[str] = Query(None, max_length=10, description="Force BASE/TEST (or a/b)"),
    db: AsyncSession = Depends(get_db),
):
    """
    Return the case and image list this session should see for a product.

    Unknown or malformed product ids yield ``active: false`` rather than an
    error so the storefront can fall back to its own images.
    """
    assignment = await resolve_assignment(db, product_id, session, force=force)
    if assignment is None:
        logger.debug("No active test for product %s", product_id)
        return AssignmentResponse(active=False, reason="no_active_test")

    return AssignmentResponse(
        active=True,
        test_id=assignment.test_id,
        product_id=assignment.product_id,
        case=assignment.case,
        images=assignment.images,
        forced=assignment.forced,
    )
