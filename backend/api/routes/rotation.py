"""Rotation trigger, rotation state and test lifecycle endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import require_admin_auth, require_cron_auth
from api.middleware.rate_limit import get_rate_limit, limiter
from api.schemas.rotation import (
    ABTestResponse,
    RotationEventResponse,
    RotationHistoryResponse,
    RotationResultResponse,
    RotationRunResponse,
    RotationStateResponse,
    RotationSummaryResponse,
)
from infrastructure.database import get_db
from services.assignment import find_active_test
from services.rotation import (
    InvalidLifecycleTransition,
    TestNotFoundError,
    get_rotation_history,
    get_test,
    process_due_tests,
    rotate_now,
    transition_test,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rotation", tags=["Rotation"])


@router.api_route("/run", methods=["GET", "POST"], response_model=RotationRunResponse)
@limiter.limit(get_rate_limit("rotation_trigger"))
async def run_rotation(
    request: Request,
    caller: str = Depends(require_cron_auth),
    db: AsyncSession = Depends(get_db),
):
    """
    Advance every due test once.

    Called by the external scheduler every few minutes, or manually by an
    operator. Per-test failures are reported in the summary.
    """
    logger.info("Rotation trigger invoked by %s", caller)
    summary = await process_due_tests(db)
    return RotationRunResponse(
        ok=True,
        summary=RotationSummaryResponse(**summary.to_dict()),
    )


@router.get("/state/{product_id:path}", response_model=RotationStateResponse)
async def get_rotation_state(
    product_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Current authoritative case of the product's active test."""
    test = await find_active_test(db, product_id)
    if test is None:
        return RotationStateResponse(product_id=product_id)
    return RotationStateResponse(
        test_id=test.id,
        product_id=test.product_id,
        status=test.status,
        current_case=test.current_case,
        last_rotation=test.last_rotation,
        next_rotation=test.next_rotation,
    )


@router.get("/tests/{test_id}", response_model=ABTestResponse)
async def read_test(
    test_id: str,
    _: str = Depends(require_admin_auth),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_test(db, test_id)
    except TestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/tests/{test_id}/history", response_model=RotationHistoryResponse)
async def read_rotation_history(
    test_id: str,
    limit: int = Query(50, ge=1, le=500),
    _: str = Depends(require_admin_auth),
    db: AsyncSession = Depends(get_db),
):
    """Most recent rotation attempts for a test, newest first."""
    try:
        events = await get_rotation_history(db, test_id, limit=limit)
    except TestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return RotationHistoryResponse(
        items=[RotationEventResponse.model_validate(e) for e in events],
        total=len(events),
    )


@router.post("/tests/{test_id}/rotate", response_model=RotationResultResponse)
async def rotate_test_now(
    test_id: str,
    actor: str = Depends(require_admin_auth),
    db: AsyncSession = Depends(get_db),
):
    """Flip an active test immediately and restart its interval."""
    try:
        result = await rotate_now(db, test_id, actor=actor)
    except TestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidLifecycleTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return RotationResultResponse(**result.to_dict())


@router.post("/tests/{test_id}/{operation}", response_model=ABTestResponse)
async def change_test_status(
    test_id: str,
    operation: str = Path(..., pattern="^(start|pause|resume|complete)$"),
    _: str = Depends(require_admin_auth),
    db: AsyncSession = Depends(get_db),
):
    """Start, pause, resume or complete a test."""
    try:
        return await transition_test(db, test_id, operation)
    except TestNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidLifecycleTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
