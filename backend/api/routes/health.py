"""Health, readiness and scheduler probes."""

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from infrastructure.config import get_settings
from infrastructure.database import get_db
from services.rotation import get_due_test_ids, rotation_scheduler

logger = logging.getLogger(__name__)

router = APIRouter()
settings = get_settings()


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def _probe_db(db: AsyncSession, timeout: float = 5.0) -> str:
    try:
        await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=timeout)
        return "connected"
    except TimeoutError:
        logger.error("Health check DB timeout")
        return "error: database timeout"
    except Exception as e:
        logger.error("Health check DB error: %s", e)
        return "error: database check failed"


async def _ping_redis(timeout: float) -> None:
    import redis.asyncio as aioredis

    client = aioredis.from_url(settings.redis_url)
    try:
        await asyncio.wait_for(client.ping(), timeout=timeout)
    finally:
        await client.aclose()


@router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "app": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": _now(),
    }


@router.get("/health/db")
async def health_check_db(db: AsyncSession = Depends(get_db)):
    db_status = await _probe_db(db)
    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "timestamp": _now(),
    }


@router.get("/health/redis")
async def health_redis():
    """Rate-limit store connectivity; ``disabled`` without REDIS_URL."""
    if not settings.redis_url:
        return {"status": "disabled", "service": "redis"}
    try:
        await _ping_redis(timeout=3.0)
    except TimeoutError:
        raise HTTPException(status_code=503, detail="Redis timeout")
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Redis unavailable: {e}")
    return {"status": "healthy", "service": "redis"}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    Readiness probe.

    Only the database gates readiness. Redis degrades rate limiting to
    per-process counters, and ``lagging_tests`` counts ACTIVE tests whose
    rotation is more than two scheduler intervals overdue, which points at
    a stalled trigger rather than an unready instance.
    """
    db_ok = await _probe_db(db) == "connected"

    redis_state = "disabled"
    if settings.redis_url:
        try:
            await _ping_redis(timeout=2.0)
            redis_state = "ok"
        except Exception:
            redis_state = "degraded"

    lagging = None
    if db_ok:
        cutoff = datetime.now(UTC) - timedelta(seconds=2 * settings.rotation_check_interval)
        lagging = len(await get_due_test_ids(db, cutoff))

    return {
        "ready": db_ok,
        "database": "ok" if db_ok else "unavailable",
        "redis": redis_state,
        "lagging_tests": lagging,
    }


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}


@router.get("/health/scheduler")
async def scheduler_check():
    """State of the in-process rotation scheduler."""
    summary = rotation_scheduler.last_summary
    return {
        "enabled": settings.rotation_scheduler_enabled,
        "running": rotation_scheduler.is_running,
        "check_interval": rotation_scheduler.check_interval,
        "last_summary": summary.to_dict() if summary else None,
        "timestamp": _now(),
    }
