"""Create experiment tables

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "ab_tests",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
        sa.Column("current_case", sa.String(length=10), nullable=False, server_default="BASE"),
        sa.Column("traffic_split", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("rotation_hours", sa.Float(), nullable=False, server_default="1.0"),
        sa.Column("base_images", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("test_images", sa.JSON(), nullable=False, server_default="[]"),
        sa.Column("last_rotation", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_rotation", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ab_tests_tenant_id", "ab_tests", ["tenant_id"])
    op.create_index("ix_ab_tests_product_id", "ab_tests", ["product_id"])
    op.create_index("ix_ab_tests_status_next_rotation", "ab_tests", ["status", "next_rotation"])
    op.create_index("ix_ab_tests_product_status", "ab_tests", ["product_id", "status"])

    op.create_table(
        "rotation_events",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("test_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("from_case", sa.String(length=10), nullable=False),
        sa.Column("to_case", sa.String(length=10), nullable=False),
        sa.Column("triggered_by", sa.String(length=20), nullable=False),
        sa.Column("actor", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["test_id"], ["ab_tests.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rotation_events_test_id", "rotation_events", ["test_id"])
    op.create_index("ix_rotation_events_created_at", "rotation_events", ["created_at"])
    op.create_index("ix_rotation_events_test_created", "rotation_events", ["test_id", "created_at"])

    op.create_table(
        "session_assignments",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("test_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("session_id", sa.String(length=255), nullable=False),
        sa.Column("assigned_case", sa.String(length=10), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["test_id"], ["ab_tests.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("test_id", "session_id", name="uq_session_assignments_test_session"),
    )
    op.create_index("ix_session_assignments_session_id", "session_assignments", ["session_id"])

    op.create_table(
        "attribution_events",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("test_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("session_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=20), nullable=False),
        sa.Column("active_case", sa.String(length=10), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("variant_id", sa.String(length=255), nullable=True),
        sa.Column("revenue", sa.Float(), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=True),
        sa.Column("order_id", sa.String(length=255), nullable=True),
        sa.Column("source", sa.String(length=20), nullable=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["test_id"], ["ab_tests.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_attribution_events_product_id", "attribution_events", ["product_id"])
    op.create_index(
        "ix_attribution_events_dedup",
        "attribution_events",
        ["test_id", "session_id", "active_case", "event_type"],
    )
    op.create_index(
        "ix_attribution_events_tenant_created", "attribution_events", ["tenant_id", "created_at"]
    )
    op.create_index("ix_attribution_events_order", "attribution_events", ["order_id"])

    op.create_table(
        "daily_statistics",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=False),
        sa.Column("product_id", sa.String(length=255), nullable=False),
        sa.Column("variant", sa.String(length=10), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("impressions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("add_to_carts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("orders", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revenue", sa.Float(), nullable=False, server_default="0"),
        sa.Column("ctr", sa.Float(), nullable=False, server_default="0"),
        sa.Column("conversion_rate", sa.Float(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id",
            "product_id",
            "variant",
            "date",
            name="uq_daily_statistics_tenant_product_variant_date",
        ),
    )
    op.create_index("ix_daily_statistics_date", "daily_statistics", ["date"])
    op.create_index("ix_daily_statistics_tenant_date", "daily_statistics", ["tenant_id", "date"])


def downgrade() -> None:
    op.drop_index("ix_daily_statistics_tenant_date", table_name="daily_statistics")
    op.drop_index("ix_daily_statistics_date", table_name="daily_statistics")
    op.drop_table("daily_statistics")

    op.drop_index("ix_attribution_events_order", table_name="attribution_events")
    op.drop_index("ix_attribution_events_tenant_created", table_name="attribution_events")
    op.drop_index("ix_attribution_events_dedup", table_name="attribution_events")
    op.drop_index("ix_attribution_events_product_id", table_name="attribution_events")
    op.drop_table("attribution_events")

    op.drop_index("ix_session_assignments_session_id", table_name="session_assignments")
    op.drop_table("session_assignments")

    op.drop_index("ix_rotation_events_test_created", table_name="rotation_events")
    op.drop_index("ix_rotation_events_created_at", table_name="rotation_events")
    op.drop_index("ix_rotation_events_test_id", table_name="rotation_events")
    op.drop_table("rotation_events")

    op.drop_index("ix_ab_tests_product_status", table_name="ab_tests")
    op.drop_index("ix_ab_tests_status_next_rotation", table_name="ab_tests")
    op.drop_index("ix_ab_tests_product_id", table_name="ab_tests")
    op.drop_index("ix_ab_tests_tenant_id", table_name="ab_tests")
    op.drop_table("ab_tests")
