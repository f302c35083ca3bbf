"""
Daily statistics rollup model.
"""

from datetime import date as date_type
from uuid import uuid4

from sqlalchemy import Date, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin


class DailyStatistic(Base, TimestampMixin):
    """Per-day, per-product, per-case rollup of attribution events."""

    __tablename__ = "daily_statistics"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # The case (BASE or TEST) the counts belong to
    variant: Mapped[str] = mapped_column(String(10), nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False, index=True)

    impressions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    add_to_carts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    orders: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    revenue: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    ctr: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    __table_args__ = (
        Index("ix_daily_statistics_tenant_date", "tenant_id", "date"),
        UniqueConstraint(
            "tenant_id",
            "product_id",
            "variant",
            "date",
            name="uq_daily_statistics_tenant_product_variant_date",
        ),
    )

    def __repr__(self) -> str:
        return f"<DailyStatistic(date={self.date}, product={self.product_id}, variant={self.variant}, impressions={self.impressions})>"
