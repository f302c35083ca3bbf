"""
Variant Assignment Service.

Decides which case a storefront session sees for a product's active test.
The first decision for a (test, session) pair is stored, so later page
views keep the same case even after the test's control case rotates.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain import Case, TestStatus, assign_case, normalize_product_id, parse_case
from infrastructure.database.models import ABTest, SessionAssignment

logger = logging.getLogger(__name__)

_PRODUCT_GID_PREFIX = "gid://shopify/Product/"


@dataclass
class Assignment:
    """The case and images a session should see."""

    test_id: str
    product_id: str
    case: Case
    images: list[str]
    forced: bool = False

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "product_id": self.product_id,
            "case": self.case.value,
            "images": self.images,
            "forced": self.forced,
        }


def _product_id_candidates(product_id: str) -> set[str]:
    """Stored spellings a product id may match (gid and bare numeric)."""
    normalized = normalize_product_id(product_id)
    if normalized is None:
        return set()
    candidates = {normalized, product_id.strip()}
    if normalized.startswith(_PRODUCT_GID_PREFIX):
        candidates.add(normalized[len(_PRODUCT_GID_PREFIX):])
    return candidates


async def find_test_for_product(
    db: AsyncSession,
    product_id: Optional[str],
    statuses: Iterable[TestStatus] = (TestStatus.ACTIVE,),
) -> Optional[ABTest]:
    """Most recently created test for a product in one of *statuses*."""
    if not product_id:
        return None
    candidates = _product_id_candidates(product_id)
    if not candidates:
        return None

    stmt = (
        select(ABTest)
        .where(
            ABTest.product_id.in_(candidates),
            ABTest.status.in_([s.value for s in statuses]),
        )
        .order_by(ABTest.created_at.desc())
        .limit(1)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_active_test(db: AsyncSession, product_id: Optional[str]) -> Optional[ABTest]:
    return await find_test_for_product(db, product_id, (TestStatus.ACTIVE,))


async def get_session_case(
    db: AsyncSession, test_id: str, session_id: str
) -> Optional[Case]:
    """The stored case for a session, if it was ever assigned."""
    result = await db.execute(
        select(SessionAssignment.assigned_case).where(
            SessionAssignment.test_id == test_id,
            SessionAssignment.session_id == session_id,
        )
    )
    value = result.scalar_one_or_none()
    return Case(value) if value else None


async def _get_or_create_case(
    db: AsyncSession,
    test_id: str,
    session_id: str,
    traffic_split: int,
    control_case: Case,
    now: datetime,
) -> Case:
    existing = await get_session_case(db, test_id, session_id)
    if existing is not None:
        return existing

    case = assign_case(test_id, session_id, traffic_split, control_case)
    db.add(
        SessionAssignment(
            test_id=test_id,
            session_id=session_id,
            assigned_case=case.value,
            created_at=now,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent request stored the assignment first; theirs wins.
        await db.rollback()
        existing = await get_session_case(db, test_id, session_id)
        if existing is None:
            raise
        return existing

    logger.debug(
        "Assigned session %s to %s for test %s", session_id, case.value, test_id,
        extra={"test_id": test_id, "session_id": session_id},
    )
    return case


async def resolve_assignment(
    db: AsyncSession,
    product_id: Optional[str],
    session_id: Optional[str],
    force: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Assignment]:
    """
    Resolve the assignment for a product page view.

    Args:
        db: Database session
        product_id: Product identifier as detected on the storefront
        session_id: Client session identifier
        force: Optional case override (``BASE``/``TEST`` or ``a``/``b``)
        now: Clock override for tests

    Returns:
        The Assignment, or None when the product has no active test or
        the product id is unusable.
    """
    test = await find_active_test(db, product_id)
    if test is None:
        return None

    # Capture before any commit or rollback can expire the instance.
    test_id = test.id
    test_product_id = test.product_id
    images = {case: test.images_for(case) for case in Case}
    control_case = Case(test.current_case)
    traffic_split = test.traffic_split

    forced_case = parse_case(force) if force else None
    if forced_case is not None:
        logger.info("Forced case %s for test %s", forced_case.value, test_id)
        return Assignment(
            test_id=test_id,
            product_id=test_product_id,
            case=forced_case,
            images=images[forced_case],
            forced=True,
        )

    if not session_id:
        return Assignment(
            test_id=test_id,
            product_id=test_product_id,
            case=control_case,
            images=images[control_case],
        )

    case = await _get_or_create_case(
        db,
        test_id,
        session_id,
        traffic_split,
        control_case,
        now or datetime.now(UTC),
    )
    return Assignment(
        test_id=test_id,
        product_id=test_product_id,
        case=case,
        images=images[case],
    )
