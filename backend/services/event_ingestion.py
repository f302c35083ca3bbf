"""
Event Ingestion Service.

Validates attribution events coming from storefronts, stamps them with the
owning tenant and persists them. Impressions and fallback add-to-carts are
deduplicated per (session, test, case); purchases are deduplicated per
order line so replayed checkouts are not counted twice.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain import (
    Case,
    EventSource,
    EventType,
    TestStatus,
    is_uuid,
    normalize_product_id,
    normalize_variant_id,
    parse_case,
)
from infrastructure.database.models import ABTest, AttributionEvent
from services.assignment import find_test_for_product, get_session_case

logger = logging.getLogger(__name__)


class EventValidationError(Exception):
    """Raised when an event is malformed or inconsistent with its test."""
    pass


class UnknownTestError(EventValidationError):
    """Raised when an event references a test that does not exist."""
    pass


@dataclass
class IngestResult:
    event_id: str
    test_id: str
    active_case: str
    duplicate: bool = False


@dataclass
class CheckoutLine:
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = 1
    price: float = 0.0


# ---------------------------------------------------------------------------
# Tenant resolution
# ---------------------------------------------------------------------------


async def build_product_tenant_index(db: AsyncSession) -> dict[str, str]:
    """Map product id -> tenant id from tests that know their tenant."""
    result = await db.execute(
        select(ABTest.product_id, ABTest.tenant_id)
        .where(ABTest.tenant_id.is_not(None))
        .order_by(ABTest.created_at)
    )
    index: dict[str, str] = {}
    for product_id, tenant_id in result.all():
        index[product_id] = tenant_id
        normalized = normalize_product_id(product_id)
        if normalized:
            index[normalized] = tenant_id
    return index


async def resolve_tenant(db: AsyncSession, test: ABTest) -> Optional[str]:
    if test.tenant_id:
        return test.tenant_id
    index = await build_product_tenant_index(db)
    return index.get(test.product_id) or index.get(normalize_product_id(test.product_id) or "")


async def backfill_event_tenants(db: AsyncSession) -> dict:
    """
    Stamp stored events that have no tenant.

    Returns:
        Dict with ``updated`` and ``unresolved`` product counts.
    """
    result = await db.execute(
        select(AttributionEvent.product_id)
        .where(AttributionEvent.tenant_id.is_(None))
        .distinct()
    )
    product_ids = list(result.scalars().all())
    if not product_ids:
        return {"updated": 0, "unresolved": 0}

    index = await build_product_tenant_index(db)
    updated = 0
    unresolved = 0
    for product_id in product_ids:
        tenant_id = index.get(product_id) or index.get(normalize_product_id(product_id) or "")
        if not tenant_id:
            unresolved += 1
            logger.warning("No tenant known for product %s; events left unstamped", product_id)
            continue
        res = await db.execute(
            update(AttributionEvent)
            .where(
                AttributionEvent.product_id == product_id,
                AttributionEvent.tenant_id.is_(None),
            )
            .values(tenant_id=tenant_id)
            .execution_options(synchronize_session=False)
        )
        updated += res.rowcount or 0

    await db.commit()
    logger.info("Tenant backfill: %d events stamped, %d products unresolved", updated, unresolved)
    return {"updated": updated, "unresolved": unresolved}


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


async def _find_duplicate(
    db: AsyncSession,
    *,
    test_id: str,
    session_id: str,
    event_type: EventType,
    case: Case,
    product_id: str,
    variant_id: Optional[str],
    source: Optional[EventSource],
    order_id: Optional[str],
) -> Optional[str]:
    """Id of an already stored event this one duplicates, if any."""
    stmt = select(AttributionEvent.id).where(
        AttributionEvent.test_id == test_id,
        AttributionEvent.event_type == event_type.value,
    )
    if event_type is EventType.IMPRESSION:
        stmt = stmt.where(
            AttributionEvent.session_id == session_id,
            AttributionEvent.active_case == case.value,
        )
    elif event_type is EventType.ADD_TO_CART and source is EventSource.FALLBACK:
        stmt = stmt.where(
            AttributionEvent.session_id == session_id,
            AttributionEvent.active_case == case.value,
            AttributionEvent.source == EventSource.FALLBACK.value,
        )
    elif event_type is EventType.PURCHASE and order_id:
        stmt = stmt.where(
            AttributionEvent.order_id == order_id,
            AttributionEvent.product_id == product_id,
        )
        if variant_id:
            stmt = stmt.where(AttributionEvent.variant_id == variant_id)
        else:
            stmt = stmt.where(AttributionEvent.variant_id.is_(None))
    else:
        return None

    result = await db.execute(stmt.limit(1))
    return result.scalar_one_or_none()


async def ingest_event(
    db: AsyncSession,
    *,
    test_id: str,
    session_id: str,
    event_type: str,
    product_id: str,
    case: Optional[str] = None,
    variant_id: Optional[str] = None,
    revenue: Optional[float] = None,
    quantity: Optional[int] = None,
    source: Optional[str] = None,
    order_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IngestResult:
    """
    Validate and persist one attribution event.

    Raises:
        UnknownTestError: test id does not exist
        EventValidationError: any other inconsistency
    """
    if not session_id or not str(session_id).strip():
        raise EventValidationError("session_id is required")
    if not test_id:
        raise EventValidationError("test_id is required")

    try:
        kind = EventType(str(event_type).upper())
    except ValueError:
        raise EventValidationError(f"Unknown event type: {event_type}")

    normalized_product = normalize_product_id(product_id)
    if normalized_product is None:
        raise EventValidationError("product_id is required")

    event_source = None
    if source:
        try:
            event_source = EventSource(source)
        except ValueError:
            raise EventValidationError(f"Unknown event source: {source}")

    if revenue is not None and revenue < 0:
        raise EventValidationError("revenue must not be negative")

    test = await db.get(ABTest, test_id) if is_uuid(test_id) else None
    if test is None:
        logger.warning("Rejected %s event for unknown test %s", kind.value, test_id)
        raise UnknownTestError(f"Unknown test id: {test_id}")

    if normalize_product_id(test.product_id) != normalized_product:
        raise EventValidationError(
            f"Product {product_id} does not belong to test {test_id}"
        )

    if case:
        active_case = parse_case(case)
        if active_case is None:
            raise EventValidationError(f"Unknown case: {case}")
    else:
        active_case = Case(test.current_case)

    variant = normalize_variant_id(variant_id)

    duplicate_id = await _find_duplicate(
        db,
        test_id=test.id,
        session_id=session_id,
        event_type=kind,
        case=active_case,
        product_id=test.product_id,
        variant_id=variant,
        source=event_source,
        order_id=order_id,
    )
    if duplicate_id:
        logger.debug(
            "Duplicate %s for test %s session %s ignored", kind.value, test.id, session_id,
            extra={"test_id": test.id, "session_id": session_id},
        )
        return IngestResult(
            event_id=duplicate_id,
            test_id=test.id,
            active_case=active_case.value,
            duplicate=True,
        )

    tenant_id = await resolve_tenant(db, test)
    if tenant_id is None:
        logger.warning("Event for test %s stored without tenant", test.id)

    event = AttributionEvent(
        test_id=test.id,
        session_id=session_id,
        event_type=kind.value,
        active_case=active_case.value,
        product_id=test.product_id,
        variant_id=variant,
        revenue=revenue,
        quantity=quantity,
        order_id=order_id,
        source=event_source.value if event_source else None,
        tenant_id=tenant_id,
        created_at=now or datetime.now(UTC),
    )
    db.add(event)
    await db.commit()

    logger.info(
        f"Recorded {kind.value} for test {test.id} case {active_case.value}",
        extra={"test_id": test.id, "session_id": session_id, "tenant_id": tenant_id},
    )
    return IngestResult(event_id=event.id, test_id=test.id, active_case=active_case.value)


async def record_checkout(
    db: AsyncSession,
    *,
    session_id: str,
    order_id: str,
    line_items: list[CheckoutLine],
    now: Optional[datetime] = None,
) -> list[IngestResult]:
    """
    Attribute a completed checkout to the cases the shopper saw.

    One PURCHASE is recorded per line item whose product has a test the
    session was assigned to. Lines without a test or assignment are
    skipped; replaying the same order returns the stored events.
    """
    if not session_id:
        raise EventValidationError("session_id is required")
    if not order_id:
        raise EventValidationError("order_id is required")

    results: list[IngestResult] = []
    for line in line_items:
        test = await find_test_for_product(
            db,
            line.product_id,
            (TestStatus.ACTIVE, TestStatus.PAUSED, TestStatus.COMPLETED),
        )
        if test is None:
            continue
        case = await get_session_case(db, test.id, session_id)
        if case is None:
            logger.debug(
                "Session %s never assigned for test %s; line not attributed",
                session_id,
                test.id,
            )
            continue

        quantity = max(1, line.quantity)
        results.append(
            await ingest_event(
                db,
                test_id=test.id,
                session_id=session_id,
                event_type=EventType.PURCHASE.value,
                product_id=test.product_id,
                case=case.value,
                variant_id=line.variant_id,
                revenue=round(line.price * quantity, 2),
                quantity=quantity,
                source=EventSource.CHECKOUT.value,
                order_id=order_id,
                now=now,
            )
        )
    return results
