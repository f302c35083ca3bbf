"""Async engine, session factory and the request-scoped session dependency."""
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..config import get_settings
from .models.base import Base

settings = get_settings()


def _engine_options(url: str) -> dict:
    options = {"echo": settings.database_echo, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Single-connection pool; sizing arguments are rejected
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=10,
        pool_recycle=3600,
    )
    if settings.is_production:
        options["connect_args"] = {"ssl": "require"}
    return options


engine = create_async_engine(settings.database_url, **_engine_options(settings.database_url))

# Objects stay usable after commit; routes serialize them afterwards
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create all tables (development only; deployments run migrations)."""
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
