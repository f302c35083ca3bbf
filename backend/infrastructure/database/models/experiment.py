"""
Experiment database models: tests, their rotation audit trail and
per-session assignments.
"""

from datetime import UTC, datetime, timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.domain import Case, TestStatus
from infrastructure.config import settings
from .base import Base, TimestampMixin


class ABTest(Base, TimestampMixin):
    """
    One image experiment for one product within one tenant.

    ``current_case`` and the rotation timestamps are only written by the
    rotation service; operators change ``status`` through the lifecycle
    operations. Rows are never deleted.
    """

    __tablename__ = "ab_tests"

    # Primary key
    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    # Owner shop. Nullable for rows created before tenants were recorded.
    tenant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    product_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TestStatus.DRAFT.value
    )
    current_case: Mapped[str] = mapped_column(
        String(10), nullable=False, default=Case.BASE.value
    )

    # Percentage of sessions assigned the treatment arm
    traffic_split: Mapped[int] = mapped_column(
        Integer, nullable=False, default=lambda: settings.default_traffic_split
    )
    rotation_hours: Mapped[float] = mapped_column(
        Float, nullable=False, default=lambda: settings.default_rotation_hours
    )

    base_images: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    test_images: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    last_rotation: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_rotation: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    rotation_events: Mapped[list["RotationEvent"]] = relationship(
        "RotationEvent",
        back_populates="test",
        lazy="raise",
        order_by="RotationEvent.created_at",
    )

    __table_args__ = (
        Index("ix_ab_tests_status_next_rotation", "status", "next_rotation"),
        Index("ix_ab_tests_product_status", "product_id", "status"),
    )

    @property
    def rotation_interval(self) -> timedelta:
        return timedelta(hours=self.rotation_hours)

    def images_for(self, case: Case | str) -> list[str]:
        """Ordered image URLs shown for a case."""
        if Case(case) is Case.TEST:
            return list(self.test_images or [])
        return list(self.base_images or [])

    def __repr__(self) -> str:
        return f"<ABTest(id={self.id}, product={self.product_id}, status={self.status}, case={self.current_case})>"


class RotationEvent(Base):
    """Append-only audit row, one per attempted case transition."""

    __tablename__ = "rotation_events"

    id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    test_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False),
        ForeignKey("ab_tests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    from_case: Mapped[str] = mapped_column(String(10), nullable=False)
    to_case: Mapped[str] = mapped_column(String(10), nullable=False)
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        index=True,
    )

    test: Mapped["ABTest"] = relationship("ABTest", back_populates="rotation_events")

    __table_args__ = (
        Index("ix_rotation_events_test_created", "test_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<RotationEvent(test={self.test_id}, {self.from_case}->{self.to_case}, success={self.success})>"


class SessionAssignment(Base):
    """The case a session was bucketed into for a test."""

    __tablename__ = "session_assignments"

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
    session_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    assigned_case: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("test_id", "session_id", name="uq_session_assignments_test_session"),
    )

    def __repr__(self) -> str:
        return f"<SessionAssignment(test={self.test_id}, session={self.session_id}, case={self.assigned_case})>"
