"""
Pytest configuration and shared fixtures for backend tests.
"""

import sys
from pathlib import Path

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest
from datetime import UTC, datetime, timedelta
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Import after path is set
from core.domain import Case, TestStatus
from infrastructure.config import settings
from infrastructure.database.connection import get_db
from infrastructure.database.models import ABTest, Base


# Database URL for testing (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

CRON_SECRET = "test-cron-secret-0123456789"
ADMIN_API_KEY = "test-admin-key-0123456789"

PRODUCT_GID = "gid://shopify/Product/1001"


@pytest.fixture
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = sessionmaker(
        db_engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 3, 10, 12, 0, tzinfo=UTC)


@pytest.fixture
def auth_settings(monkeypatch):
    """Configure the cron and admin bearer tokens."""
    monkeypatch.setattr(settings, "cron_secret", CRON_SECRET)
    monkeypatch.setattr(settings, "admin_api_key", ADMIN_API_KEY)
    return settings


@pytest.fixture
def cron_headers(auth_settings) -> dict:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def admin_headers(auth_settings) -> dict:
    return {"Authorization": f"Bearer {ADMIN_API_KEY}"}


async def create_test(db: AsyncSession, **overrides) -> ABTest:
    """Insert an ABTest with sensible defaults."""
    values = {
        "tenant_id": "shop-one.myshopify.com",
        "name": "Hero image test",
        "product_id": PRODUCT_GID,
        "status": TestStatus.ACTIVE.value,
        "current_case": Case.BASE.value,
        "traffic_split": 50,
        "rotation_hours": 1.0,
        "base_images": ["https://cdn.shopify.com/a.jpg"],
        "test_images": ["https://cdn.shopify.com/b.jpg", "https://cdn.shopify.com/c.jpg"],
    }
    values.update(overrides)
    test = ABTest(**values)
    db.add(test)
    await db.commit()
    await db.refresh(test)
    return test


@pytest.fixture
def make_test(db_session: AsyncSession):
    """Factory inserting ABTest rows: ``await make_test(status="DRAFT")``."""

    async def _make(**overrides) -> ABTest:
        return await create_test(db_session, **overrides)

    return _make


@pytest.fixture
async def active_test(db_session: AsyncSession, now: datetime) -> ABTest:
    """An ACTIVE test whose next rotation is one hour ahead."""
    return await create_test(
        db_session,
        last_rotation=now - timedelta(hours=1),
        next_rotation=now + timedelta(hours=1),
    )


@pytest.fixture
async def due_test(db_session: AsyncSession, now: datetime) -> ABTest:
    """An ACTIVE test that became due five minutes ago."""
    return await create_test(
        db_session,
        last_rotation=now - timedelta(hours=1, minutes=5),
        next_rotation=now - timedelta(minutes=5),
    )


@pytest.fixture
async def async_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing."""
    # Import app here to avoid circular imports
    from main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    # Reset rate limiter state between tests to prevent cross-test 429s
    if hasattr(app.state, "limiter"):
        app.state.limiter.reset()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Storefront fixtures
# ---------------------------------------------------------------------------

PRODUCT_URL = "https://shop-one.myshopify.com/products/linen-shirt"

DAWN_PRODUCT_HTML = """
<html>
<head><meta property="og:product:id" content="1001"></head>
<body>
<header><img class="logo" src="https://cdn.shopify.com/s/files/1/logo.png" width="40" height="40"></header>
<section id="MainProduct" data-section="main-product">
  <media-gallery>
    <ul class="product__media-list">
      <li class="product__media-item">
        <div class="product__media-wrapper"><div class="product__media">
          <img src="https://cdn.shopify.com/s/files/1/front_800x800.jpg"
               srcset="https://cdn.shopify.com/s/files/1/front_400x400.jpg 400w"
               width="800" height="800" loading="lazy">
        </div></div>
      </li>
      <li class="product__media-item">
        <div class="product__media-wrapper"><div class="product__media">
          <img src="https://cdn.shopify.com/s/files/1/back_800x800.jpg" width="800" height="800">
        </div></div>
      </li>
      <li class="product__media-item">
        <div class="product__media-wrapper"><div class="product__media">
          <img src="https://cdn.shopify.com/s/files/1/detail_800x800.jpg" width="800" height="800">
        </div></div>
      </li>
    </ul>
  </media-gallery>
  <form action="/cart/add" method="post">
    <input type="hidden" name="id" value="4242">
    <button type="submit" name="add" class="product-form__submit"><span>Add to cart</span></button>
  </form>
</section>
</body>
</html>
"""


@pytest.fixture
def dawn_html() -> str:
    return DAWN_PRODUCT_HTML


@pytest.fixture
def product_page(dawn_html):
    """A Dawn product page with a three image gallery."""
    from storefront import StorefrontPage

    return StorefrontPage(dawn_html, url=PRODUCT_URL)


# ---------------------------------------------------------------------------
# API fixtures (wall clock, since the endpoints read the current time)
# ---------------------------------------------------------------------------


@pytest.fixture
async def live_test(db_session: AsyncSession) -> ABTest:
    """An ACTIVE test not due for another hour."""
    current = datetime.now(UTC)
    return await create_test(
        db_session,
        last_rotation=current,
        next_rotation=current + timedelta(hours=1),
    )


@pytest.fixture
async def overdue_test(db_session: AsyncSession) -> ABTest:
    """An ACTIVE test whose rotation is five minutes overdue."""
    current = datetime.now(UTC)
    return await create_test(
        db_session,
        last_rotation=current - timedelta(hours=1, minutes=5),
        next_rotation=current - timedelta(minutes=5),
    )
