"""
Statistics Aggregation Service.

Rolls raw attribution events into one DailyStatistic row per
(tenant, product, case, day). A row is inserted only when none exists for
its key, so the daily job and historical backfills share one code path
and overlapping runs never double count. Only completed UTC days are
rolled up: a row written while its day is still open would be skipped by
every later run and stay short for good.
"""

import csv
import io
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain import EventType, ensure_utc
from infrastructure.database.models import AttributionEvent, DailyStatistic

logger = logging.getLogger(__name__)

EXPORT_COLUMNS = [
    "date",
    "tenant_id",
    "product_id",
    "variant",
    "impressions",
    "add_to_carts",
    "orders",
    "revenue",
    "ctr",
    "conversion_rate",
]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def default_date_range(
    start_date: date | None,
    end_date: date | None,
    days: int = 30,
) -> tuple[date, date]:
    """Return (start, end) defaulting to the last *days* days."""
    if end_date is None:
        end_date = datetime.now(UTC).date()
    if start_date is None:
        start_date = end_date - timedelta(days=days - 1)
    return start_date, end_date


def _safe_rate(numerator: float, denominator: float) -> float:
    """Return numerator/denominator, or 0.0 on zero-division."""
    if not denominator:
        return 0.0
    return round(numerator / denominator, 6)


def _day_bounds(start_date: date, end_date: date) -> tuple[datetime, datetime]:
    """Half-open UTC datetime range covering whole days."""
    start = datetime.combine(start_date, time.min, tzinfo=UTC)
    end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=UTC)
    return start, end


@dataclass
class _Counts:
    impressions: int = 0
    add_to_carts: int = 0
    revenue: float = 0.0
    anonymous_orders: int = 0
    order_ids: set[str] = field(default_factory=set)

    @property
    def orders(self) -> int:
        return len(self.order_ids) + self.anonymous_orders


@dataclass
class AggregationResult:
    start_date: date
    end_date: date
    groups: int = 0
    created: int = 0
    skipped: int = 0
    unattributed_events: int = 0
    clamped: bool = False

    def to_dict(self) -> dict:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "groups": self.groups,
            "created": self.created,
            "skipped": self.skipped,
            "unattributed_events": self.unattributed_events,
            "clamped": self.clamped,
        }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


async def aggregate_daily_statistics(
    db: AsyncSession,
    start_date: date,
    end_date: date,
    tenant_id: Optional[str] = None,
    today: Optional[date] = None,
) -> AggregationResult:
    """
    Roll events in [start_date, end_date] into daily statistics.

    Args:
        db: Database session
        start_date: First day (inclusive, UTC)
        end_date: Last day (inclusive, UTC); clamped to the day before *today*
        tenant_id: Restrict to one tenant
        today: Current UTC date, defaults to now

    Returns:
        AggregationResult with created/skipped row counts
    """
    if end_date < start_date:
        raise ValueError("end_date must not be before start_date")

    last_complete = (today or datetime.now(UTC).date()) - timedelta(days=1)
    clamped = end_date > last_complete
    if clamped:
        end_date = last_complete
        if end_date < start_date:
            logger.info("Nothing to aggregate: %s has not ended yet", start_date)
            return AggregationResult(start_date=start_date, end_date=end_date, clamped=True)

    start, end = _day_bounds(start_date, end_date)
    conditions = [
        AttributionEvent.created_at >= start,
        AttributionEvent.created_at < end,
    ]
    if tenant_id:
        conditions.append(AttributionEvent.tenant_id == tenant_id)

    result = await db.execute(
        select(
            AttributionEvent.tenant_id,
            AttributionEvent.product_id,
            AttributionEvent.active_case,
            AttributionEvent.event_type,
            AttributionEvent.revenue,
            AttributionEvent.order_id,
            AttributionEvent.created_at,
        ).where(and_(*conditions))
    )

    outcome = AggregationResult(start_date=start_date, end_date=end_date, clamped=clamped)
    groups: dict[tuple[str, str, str, date], _Counts] = defaultdict(_Counts)

    for row_tenant, product_id, case, event_type, revenue, order_id, created_at in result.all():
        if not row_tenant:
            outcome.unattributed_events += 1
            continue
        day = ensure_utc(created_at).date()
        counts = groups[(row_tenant, product_id, case, day)]
        if event_type == EventType.IMPRESSION.value:
            counts.impressions += 1
        elif event_type == EventType.ADD_TO_CART.value:
            counts.add_to_carts += 1
        elif event_type == EventType.PURCHASE.value:
            counts.revenue += revenue or 0.0
            if order_id:
                counts.order_ids.add(order_id)
            else:
                counts.anonymous_orders += 1

    outcome.groups = len(groups)
    if outcome.unattributed_events:
        logger.warning(
            "%d events without tenant skipped during aggregation", outcome.unattributed_events
        )

    for (row_tenant, product_id, case, day), counts in sorted(groups.items()):
        exists = await db.execute(
            select(DailyStatistic.id).where(
                DailyStatistic.tenant_id == row_tenant,
                DailyStatistic.product_id == product_id,
                DailyStatistic.variant == case,
                DailyStatistic.date == day,
            )
        )
        if exists.scalar_one_or_none() is not None:
            outcome.skipped += 1
            continue

        db.add(
            DailyStatistic(
                tenant_id=row_tenant,
                product_id=product_id,
                variant=case,
                date=day,
                impressions=counts.impressions,
                add_to_carts=counts.add_to_carts,
                orders=counts.orders,
                revenue=round(counts.revenue, 2),
                ctr=_safe_rate(counts.add_to_carts, counts.impressions),
                conversion_rate=_safe_rate(counts.orders, counts.impressions),
            )
        )
        outcome.created += 1

    await db.commit()
    logger.info(
        "Aggregated %s..%s: %d groups, %d created, %d already present",
        start_date,
        end_date,
        outcome.groups,
        outcome.created,
        outcome.skipped,
    )
    return outcome


async def aggregate_previous_day(db: AsyncSession, today: Optional[date] = None) -> AggregationResult:
    """Daily job entry point: roll up yesterday (UTC)."""
    today = today or datetime.now(UTC).date()
    yesterday = today - timedelta(days=1)
    return await aggregate_daily_statistics(db, yesterday, yesterday, today=today)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


async def get_daily_statistics(
    db: AsyncSession,
    tenant_id: str,
    start_date: date | None = None,
    end_date: date | None = None,
    product_id: Optional[str] = None,
) -> list[DailyStatistic]:
    start_date, end_date = default_date_range(start_date, end_date)
    conditions = [
        DailyStatistic.tenant_id == tenant_id,
        DailyStatistic.date >= start_date,
        DailyStatistic.date <= end_date,
    ]
    if product_id:
        conditions.append(DailyStatistic.product_id == product_id)

    result = await db.execute(
        select(DailyStatistic)
        .where(and_(*conditions))
        .order_by(DailyStatistic.date, DailyStatistic.product_id, DailyStatistic.variant)
    )
    return list(result.scalars().all())


def statistics_to_records(rows: list[DailyStatistic]) -> list[dict]:
    return [
        {
            "date": row.date.isoformat(),
            "tenant_id": row.tenant_id,
            "product_id": row.product_id,
            "variant": row.variant,
            "impressions": row.impressions,
            "add_to_carts": row.add_to_carts,
            "orders": row.orders,
            "revenue": row.revenue,
            "ctr": row.ctr,
            "conversion_rate": row.conversion_rate,
        }
        for row in rows
    ]


def records_to_csv(records: list[dict]) -> str:
    """Render export records as CSV with a header row."""
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for record in records:
        writer.writerow(record)
    return buf.getvalue()
