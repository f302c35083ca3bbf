"""
Unit tests for daily statistics aggregation and export.
"""

from datetime import UTC, date, datetime, timedelta

import pytest
from sqlalchemy import func, select

from infrastructure.database.models import AttributionEvent, DailyStatistic
from services.statistics import (
    EXPORT_COLUMNS,
    aggregate_daily_statistics,
    aggregate_previous_day,
    default_date_range,
    get_daily_statistics,
    records_to_csv,
    statistics_to_records,
)

TENANT = "shop-one.myshopify.com"
DAY = date(2025, 3, 9)


@pytest.fixture
def add_event(db_session, active_test):
    """Insert a raw event on DAY for the active test."""

    def _add(event_type, case="BASE", hour=10, **overrides):
        values = {
            "test_id": active_test.id,
            "session_id": f"s-{event_type}-{hour}",
            "event_type": event_type,
            "active_case": case,
            "product_id": active_test.product_id,
            "tenant_id": TENANT,
            "created_at": datetime(DAY.year, DAY.month, DAY.day, hour, tzinfo=UTC),
        }
        values.update(overrides)
        db_session.add(AttributionEvent(**values))

    return _add


async def _row_count(db):
    result = await db.execute(select(func.count()).select_from(DailyStatistic))
    return result.scalar_one()


class TestDefaultDateRange:
    def test_defaults_to_thirty_days(self):
        start, end = default_date_range(None, date(2025, 3, 30))
        assert start == date(2025, 3, 1)
        assert end == date(2025, 3, 30)

    def test_explicit_range_kept(self):
        assert default_date_range(date(2025, 1, 1), date(2025, 1, 2)) == (
            date(2025, 1, 1),
            date(2025, 1, 2),
        )


@pytest.mark.asyncio
class TestAggregation:
    async def test_rolls_up_per_case(self, db_session, add_event):
        for hour in range(4):
            add_event("IMPRESSION", hour=hour)
        add_event("ADD_TO_CART", hour=5)
        add_event("PURCHASE", hour=6, order_id="o-1", revenue=10.0)
        add_event("PURCHASE", hour=7, order_id="o-1", revenue=5.0)
        add_event("IMPRESSION", case="TEST", hour=8)
        await db_session.commit()

        result = await aggregate_daily_statistics(db_session, DAY, DAY)

        assert result.groups == 2
        assert result.created == 2
        rows = await get_daily_statistics(db_session, TENANT, DAY, DAY)
        base = next(r for r in rows if r.variant == "BASE")
        assert base.impressions == 4
        assert base.add_to_carts == 1
        assert base.orders == 1
        assert base.revenue == 15.0
        assert base.ctr == 0.25
        assert base.conversion_rate == 0.25

    async def test_second_run_skips_existing_rows(self, db_session, add_event):
        add_event("IMPRESSION")
        await db_session.commit()

        await aggregate_daily_statistics(db_session, DAY, DAY)
        add_event("IMPRESSION", hour=11)
        await db_session.commit()
        second = await aggregate_daily_statistics(db_session, DAY, DAY)

        assert second.created == 0
        assert second.skipped == 1
        rows = await get_daily_statistics(db_session, TENANT, DAY, DAY)
        assert rows[0].impressions == 1

    async def test_zero_impressions_gives_zero_rates(self, db_session, add_event):
        add_event("ADD_TO_CART")
        await db_session.commit()

        await aggregate_daily_statistics(db_session, DAY, DAY)

        rows = await get_daily_statistics(db_session, TENANT, DAY, DAY)
        assert rows[0].ctr == 0.0
        assert rows[0].conversion_rate == 0.0

    async def test_events_without_tenant_are_counted_not_rolled_up(self, db_session, add_event):
        add_event("IMPRESSION", tenant_id=None)
        await db_session.commit()

        result = await aggregate_daily_statistics(db_session, DAY, DAY)

        assert result.unattributed_events == 1
        assert result.created == 0
        assert await _row_count(db_session) == 0

    async def test_events_outside_range_ignored(self, db_session, add_event):
        add_event("IMPRESSION", created_at=datetime(2025, 3, 10, 0, 0, tzinfo=UTC))
        await db_session.commit()

        result = await aggregate_daily_statistics(db_session, DAY, DAY)

        assert result.groups == 0

    async def test_rejects_inverted_range(self, db_session):
        with pytest.raises(ValueError):
            await aggregate_daily_statistics(db_session, DAY, DAY - timedelta(days=1))

    async def test_previous_day(self, db_session, add_event):
        add_event("IMPRESSION")
        await db_session.commit()

        result = await aggregate_previous_day(db_session, today=DAY + timedelta(days=1))

        assert result.start_date == DAY
        assert result.created == 1

    async def test_open_day_is_left_for_the_daily_job(self, db_session, add_event):
        add_event("IMPRESSION", hour=8)
        await db_session.commit()

        early = await aggregate_daily_statistics(
            db_session, DAY - timedelta(days=29), DAY, today=DAY
        )

        assert early.clamped is True
        assert early.end_date == DAY - timedelta(days=1)
        assert early.created == 0

        for hour in range(9, 14):
            add_event("IMPRESSION", hour=hour)
        await db_session.commit()

        nightly = await aggregate_previous_day(db_session, today=DAY + timedelta(days=1))

        assert nightly.created == 1
        row = (await db_session.execute(select(DailyStatistic))).scalar_one()
        assert row.impressions == 6

    async def test_range_entirely_open_aggregates_nothing(self, db_session, add_event):
        add_event("IMPRESSION")
        await db_session.commit()

        result = await aggregate_daily_statistics(db_session, DAY, DAY, today=DAY)

        assert result.clamped is True
        assert result.groups == 0
        assert await _row_count(db_session) == 0

    async def test_completed_range_not_clamped(self, db_session, add_event):
        add_event("IMPRESSION")
        await db_session.commit()

        result = await aggregate_daily_statistics(
            db_session, DAY, DAY, today=DAY + timedelta(days=1)
        )

        assert result.clamped is False
        assert result.created == 1


@pytest.mark.asyncio
class TestExport:
    async def test_records_and_csv(self, db_session, add_event):
        add_event("IMPRESSION")
        add_event("IMPRESSION", case="TEST", hour=11)
        await db_session.commit()
        await aggregate_daily_statistics(db_session, DAY, DAY)

        rows = await get_daily_statistics(db_session, TENANT, DAY, DAY)
        records = statistics_to_records(rows)
        text = records_to_csv(records)

        assert [r["variant"] for r in records] == ["BASE", "TEST"]
        lines = text.strip().split("\n")
        assert lines[0] == ",".join(EXPORT_COLUMNS)
        assert lines[1].startswith("2025-03-09,shop-one.myshopify.com,gid://shopify/Product/1001,BASE,1,")

    async def test_filters_by_tenant_and_product(self, db_session, add_event):
        add_event("IMPRESSION")
        await db_session.commit()
        await aggregate_daily_statistics(db_session, DAY, DAY)

        assert await get_daily_statistics(db_session, "other.myshopify.com", DAY, DAY) == []
        assert await get_daily_statistics(db_session, TENANT, DAY, DAY, product_id="gid://shopify/Product/2") == []


def test_csv_header_only_when_empty():
    assert records_to_csv([]) == ",".join(EXPORT_COLUMNS) + "\n"
