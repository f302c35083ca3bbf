"""Gallery Rotation Engine - Main FastAPI Application."""

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.middleware.rate_limit import limiter
from api.routes import api_router
from infrastructure.config import get_settings
from infrastructure.database import async_session_maker, close_db, init_db
from infrastructure.logging_config import request_id_ctx, setup_logging
from services.event_ingestion import backfill_event_tenants
from services.rotation import rotation_scheduler
from services.statistics import aggregate_previous_day

settings = get_settings()
logger = logging.getLogger(__name__)

_STATISTICS_INTERVAL = 86400  # 24 hours

# Tracking payloads are small; reject anything over 1MB
_MAX_BODY_SIZE = 1024 * 1024


def _init_sentry() -> None:
    """Start Sentry when a well-formed DSN is configured."""
    dsn = settings.sentry_dsn
    if not dsn:
        return
    if not dsn.startswith("https://") or "@" not in dsn:
        logger.warning("SENTRY_DSN looks malformed (%s...); Sentry disabled", dsn[:30])
        return

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.environment,
        integrations=[
            FastApiIntegration(transaction_style="url"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        # Storefront traffic is high volume; sample it down in production
        traces_sample_rate=0.05 if settings.is_production else 1.0,
        send_default_pii=False,
    )
    logger.info("Sentry initialised (env=%s)", settings.environment)


# Module level so errors during startup are captured too
_init_sentry()


async def _check_redis() -> None:
    """Log loudly when the production rate-limit store is unreachable."""
    if not (settings.is_production and settings.redis_url):
        return
    import redis.asyncio as aioredis

    client = aioredis.from_url(settings.redis_url)
    try:
        await client.ping()
        logger.info("Redis reachable for rate limiting")
    except Exception as e:
        logger.critical("Redis unreachable in production (%s); rate limits degraded", e)
    finally:
        await client.aclose()


async def _cancel(task: asyncio.Task | None, timeout: float = 30.0) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await asyncio.wait_for(task, timeout=timeout)
    except (TimeoutError, asyncio.CancelledError):
        pass


async def _statistics_loop():
    """Roll up yesterday's events once at startup, then every 24 hours."""
    while True:
        try:
            async with async_session_maker() as db:
                await backfill_event_tenants(db)
                result = await aggregate_previous_day(db)
            logger.info("Daily statistics job: %s", result.to_dict())
        except Exception as e:
            logger.error("Daily statistics job failed: %s", e, exc_info=True)
        await asyncio.sleep(_STATISTICS_INTERVAL)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the rotation and statistics jobs; stop them on shutdown."""
    setup_logging(
        json_output=settings.is_production and not settings.debug,
        level="DEBUG" if settings.debug else "INFO",
    )
    logger.info(
        "Starting %s v%s (env=%s, cors=%r)",
        settings.app_name,
        settings.app_version,
        settings.environment,
        settings.cors_origins_list,
    )
    settings.validate_production_secrets()

    if settings.is_development:
        logger.info("Development mode - creating tables")
        await init_db()

    await _check_redis()

    scheduler_task = None
    if settings.rotation_scheduler_enabled:
        scheduler_task = asyncio.create_task(rotation_scheduler.start(), name="rotation")
    statistics_task = None
    if settings.statistics_scheduler_enabled:
        statistics_task = asyncio.create_task(_statistics_loop(), name="daily-statistics")

    yield

    logger.info("Shutting down...")
    if scheduler_task is not None:
        await rotation_scheduler.stop()
    await _cancel(scheduler_task)
    await _cancel(statistics_task)
    await close_db()
    logger.info("Application stopped.")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Product gallery A/B testing with time-based rotation",
    version=settings.app_version,
    docs_url="/docs" if settings.is_development else None,
    redoc_url="/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

# Rate limiting: app.state.limiter backs the @limiter.limit decorators,
# SlowAPIMiddleware applies the global default limit.
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.middleware("http")
async def limit_request_body_size(request: Request, call_next):
    content_length = request.headers.get("content-length", "")
    if request.method == "POST" and content_length.isdigit() and int(content_length) > _MAX_BODY_SIZE:
        return JSONResponse(
            status_code=413,
            content={"detail": "Request body too large (max 1MB)"},
        )
    return await call_next(request)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    if settings.is_production:
        # Type and a truncated message only; bodies may carry session ids
        logger.error("Unhandled exception on %s: %s: %s", request.url.path, type(exc).__name__, str(exc)[:200])
    else:
        logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def _request_id_from(request: Request) -> str:
    """Caller's X-Request-ID when it is a UUID, otherwise a fresh one."""
    incoming = request.headers.get("X-Request-ID")
    if incoming:
        try:
            return str(uuid.UUID(incoming))
        except ValueError:
            pass
    return str(uuid.uuid4())


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = _request_id_from(request)
    request.state.request_id = request_id
    token = request_id_ctx.set(request_id)
    start = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        request_id_ctx.reset(token)
    duration_ms = round((time.perf_counter() - start) * 1000, 1)

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration_ms:.1f}ms"

    path = request.url.path
    # Health probes hit every few seconds
    if not path.startswith("/api/v1/health"):
        logger.info(
            "%s %s %s %.1fms",
            request.method,
            path,
            response.status_code,
            duration_ms,
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response


# The storefront script calls from shop domains; no cookies are involved
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "X-AB-Session"],
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Service banner."""
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs" if settings.is_development else "disabled",
        "health": "/api/v1/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        workers=1 if settings.is_development else settings.workers,
    )
