"""
Attribution event model.
"""

from datetime import UTC, datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class AttributionEvent(Base):
    """An impression, add-to-cart or purchase observed for a session and case."""

    __tablename__ = "attribution_events"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    test_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("ab_tests.id", ondelete="CASCADE"),
        nullable=False,
    )
    session_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)
    active_case: Mapped[str] = mapped_column(String(10), nullable=False)

    product_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    variant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    revenue: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    order_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # listener, fallback, checkout or pixel
    source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    tenant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        Index(
            "ix_attribution_events_dedup",
            "test_id",
            "session_id",
            "active_case",
            "event_type",
        ),
        Index("ix_attribution_events_tenant_created", "tenant_id", "created_at"),
        Index("ix_attribution_events_order", "order_id"),
    )

    def __repr__(self) -> str:
        return f"<AttributionEvent(type={self.event_type}, test={self.test_id}, case={self.active_case})>"
