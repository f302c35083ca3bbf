"""
Rotation Service.

Owns the authoritative BASE/TEST state of every test. A scheduler loop
(or the external trigger endpoint) advances every due test exactly once
per interval; operators pause, resume and complete tests through the
lifecycle helpers. Every attempted transition, successful or not, is
appended to the rotation audit trail.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.domain import (
    Case,
    TestStatus,
    TriggerSource,
    ensure_utc,
    is_uuid,
    next_rotation_after,
)
from infrastructure.config import settings
from infrastructure.database import async_session_maker
from infrastructure.database.models import ABTest, RotationEvent

logger = logging.getLogger(__name__)


class TestNotFoundError(Exception):
    """Raised when a test id does not exist."""
    __test__ = False


class InvalidLifecycleTransition(Exception):
    """Raised when a lifecycle operation is not allowed from the current status."""
    pass


class RotationError(Exception):
    """Raised when a single rotation cannot be applied."""
    pass


@dataclass
class RotationResult:
    """Outcome of one rotation attempt."""

    test_id: str
    from_case: str
    to_case: str
    success: bool
    next_rotation: Optional[datetime] = None
    error: Optional[str] = None
    # True when another run already rotated the test for this interval
    skipped: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["next_rotation"] = self.next_rotation.isoformat() if self.next_rotation else None
        return data


@dataclass
class RotationSummary:
    """Totals for one scheduler tick."""

    processed: int = 0
    successful: int = 0
    failed: int = 0
    duration_ms: int = 0
    results: list[RotationResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
            "results": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


async def get_test(db: AsyncSession, test_id: str) -> ABTest:
    # Postgres rejects malformed UUIDs outright; treat them as missing
    test = await db.get(ABTest, test_id) if is_uuid(test_id) else None
    if test is None:
        raise TestNotFoundError(f"Test {test_id} not found")
    return test


async def get_due_test_ids(db: AsyncSession, now: datetime) -> list[str]:
    """Ids of ACTIVE tests whose next rotation is at or before *now*."""
    stmt = (
        select(ABTest.id)
        .where(
            and_(
                ABTest.status == TestStatus.ACTIVE.value,
                ABTest.next_rotation.is_not(None),
                ABTest.next_rotation <= now,
            )
        )
        .order_by(ABTest.next_rotation)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_rotation_history(
    db: AsyncSession, test_id: str, limit: int = 50
) -> list[RotationEvent]:
    await get_test(db, test_id)
    stmt = (
        select(RotationEvent)
        .where(RotationEvent.test_id == test_id)
        .order_by(RotationEvent.created_at.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


async def rotate_test(
    db: AsyncSession,
    test: ABTest,
    now: Optional[datetime] = None,
    triggered_by: TriggerSource = TriggerSource.SCHEDULER,
    actor: Optional[str] = None,
) -> RotationResult:
    """
    Flip a test's current case and append a RotationEvent.

    The write of ``next_rotation`` is the commit point: the UPDATE only
    matches while the row still carries the ``next_rotation`` and case
    that were read, so a second runner racing on the same interval
    updates nothing and reports the attempt as skipped. On failure the
    row is left untouched so the next tick retries it.
    """
    now = now or datetime.now(UTC)
    started = time.perf_counter()

    # Read everything up front; a rollback expires the instance.
    test_id = test.id
    from_case = Case(test.current_case)
    to_case = from_case.opposite
    previous_due = test.next_rotation
    interval = test.rotation_interval

    if triggered_by is TriggerSource.MANUAL:
        new_next = now + interval
    else:
        new_next = next_rotation_after(previous_due, interval, now)

    try:
        if not test.images_for(to_case):
            raise RotationError(f"Test has no images for case {to_case.value}")

        stmt = update(ABTest).where(
            ABTest.id == test_id,
            ABTest.status == TestStatus.ACTIVE.value,
            ABTest.current_case == from_case.value,
        )
        if previous_due is None:
            stmt = stmt.where(ABTest.next_rotation.is_(None))
        else:
            stmt = stmt.where(ABTest.next_rotation == previous_due)
        stmt = stmt.values(
            current_case=to_case.value,
            last_rotation=now,
            next_rotation=new_next,
            updated_at=now,
        ).execution_options(synchronize_session=False)

        result = await db.execute(stmt)
        if result.rowcount != 1:
            await db.rollback()
            logger.info("Test %s already rotated for this interval, skipping", test_id)
            return RotationResult(
                test_id=test_id,
                from_case=from_case.value,
                to_case=to_case.value,
                success=False,
                skipped=True,
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        db.add(
            RotationEvent(
                test_id=test_id,
                from_case=from_case.value,
                to_case=to_case.value,
                triggered_by=triggered_by.value,
                actor=actor,
                success=True,
                duration_ms=duration_ms,
                details={
                    "previous_due": ensure_utc(previous_due).isoformat() if previous_due else None,
                    "next_rotation": new_next.isoformat(),
                },
                created_at=now,
            )
        )
        await db.commit()
        await db.refresh(test)

    except Exception as e:
        await db.rollback()
        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.error(
            f"Rotation of test {test_id} ({from_case.value} -> {to_case.value}) failed: {e}",
            extra={"test_id": test_id},
        )
        await _record_failed_rotation(
            db,
            test_id=test_id,
            from_case=from_case,
            to_case=to_case,
            triggered_by=triggered_by,
            actor=actor,
            error=str(e),
            duration_ms=duration_ms,
            now=now,
        )
        return RotationResult(
            test_id=test_id,
            from_case=from_case.value,
            to_case=to_case.value,
            success=False,
            error=str(e),
        )

    logger.info(
        "Rotated test %s: %s -> %s, next rotation %s",
        test_id,
        from_case.value,
        to_case.value,
        new_next.isoformat(),
        extra={"test_id": test_id},
    )
    return RotationResult(
        test_id=test_id,
        from_case=from_case.value,
        to_case=to_case.value,
        success=True,
        next_rotation=new_next,
    )


async def _record_failed_rotation(
    db: AsyncSession,
    *,
    test_id: str,
    from_case: Case,
    to_case: Case,
    triggered_by: TriggerSource,
    actor: Optional[str],
    error: str,
    duration_ms: int,
    now: datetime,
) -> None:
    """Append an unsuccessful audit row in its own transaction."""
    try:
        db.add(
            RotationEvent(
                test_id=test_id,
                from_case=from_case.value,
                to_case=to_case.value,
                triggered_by=triggered_by.value,
                actor=actor,
                success=False,
                error=error[:2000],
                duration_ms=duration_ms,
                created_at=now,
            )
        )
        await db.commit()
    except Exception as audit_err:
        await db.rollback()
        logger.error(
            "Could not record failed rotation for test %s: %s", test_id, audit_err
        )


async def process_due_tests(
    db: AsyncSession, now: Optional[datetime] = None
) -> RotationSummary:
    """
    Rotate every due test once.

    Tests are processed sequentially; a failure on one test is recorded
    and does not stop the others.
    """
    now = now or datetime.now(UTC)
    started = time.perf_counter()
    summary = RotationSummary()

    due_ids = await get_due_test_ids(db, now)
    if not due_ids:
        logger.debug("No tests due for rotation")
    else:
        logger.info(f"Found {len(due_ids)} tests due for rotation")

    for test_id in due_ids:
        test = await db.get(ABTest, test_id)
        if test is None:
            continue
        result = await rotate_test(db, test, now=now, triggered_by=TriggerSource.SCHEDULER)
        if result.skipped:
            continue
        summary.processed += 1
        if result.success:
            summary.successful += 1
        else:
            summary.failed += 1
        summary.results.append(result)

    summary.duration_ms = int((time.perf_counter() - started) * 1000)
    if summary.processed:
        logger.info(
            "Rotation tick finished: %d processed, %d successful, %d failed in %dms",
            summary.processed,
            summary.successful,
            summary.failed,
            summary.duration_ms,
        )
    return summary


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

# operation -> (allowed source statuses, target status)
_LIFECYCLE = {
    "start": ({TestStatus.DRAFT}, TestStatus.ACTIVE),
    "resume": ({TestStatus.PAUSED}, TestStatus.ACTIVE),
    "pause": ({TestStatus.ACTIVE}, TestStatus.PAUSED),
    "complete": ({TestStatus.ACTIVE, TestStatus.PAUSED}, TestStatus.COMPLETED),
}

LIFECYCLE_OPERATIONS = tuple(_LIFECYCLE)


async def transition_test(
    db: AsyncSession,
    test_id: str,
    operation: str,
    now: Optional[datetime] = None,
) -> ABTest:
    """
    Apply a lifecycle operation (start, resume, pause, complete).

    Activating a test schedules its first rotation one interval from now
    and requires images for both cases. Leaving ACTIVE clears the
    schedule so the scheduler ignores the test.
    """
    if operation not in _LIFECYCLE:
        raise InvalidLifecycleTransition(f"Unknown operation: {operation}")

    now = now or datetime.now(UTC)
    test = await get_test(db, test_id)
    allowed, target = _LIFECYCLE[operation]
    current = TestStatus(test.status)

    if current not in allowed:
        raise InvalidLifecycleTransition(
            f"Cannot {operation} a test in status {current.value}"
        )

    if target is TestStatus.ACTIVE:
        if not test.base_images or not test.test_images:
            raise InvalidLifecycleTransition(
                "An active test needs at least one BASE and one TEST image"
            )
        test.next_rotation = now + test.rotation_interval
    else:
        test.next_rotation = None

    test.status = target.value
    await db.commit()
    await db.refresh(test)

    logger.info(
        "Test %s %s: %s -> %s", test.id, operation, current.value, target.value,
        extra={"test_id": test.id},
    )
    return test


async def rotate_now(
    db: AsyncSession,
    test_id: str,
    actor: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RotationResult:
    """Manually flip an ACTIVE test immediately."""
    test = await get_test(db, test_id)
    if test.status != TestStatus.ACTIVE.value:
        raise InvalidLifecycleTransition(
            f"Only ACTIVE tests can be rotated (status is {test.status})"
        )
    return await rotate_test(
        db, test, now=now, triggered_by=TriggerSource.MANUAL, actor=actor
    )


# ---------------------------------------------------------------------------
# Background scheduler
# ---------------------------------------------------------------------------


class RotationSchedulerService:
    """Periodically rotates due tests in-process."""

    def __init__(self, check_interval: Optional[int] = None):
        self.is_running = False
        self.check_interval = check_interval or settings.rotation_check_interval
        self.last_summary: Optional[RotationSummary] = None

    async def start(self):
        """Start the scheduler background loop."""
        if self.is_running:
            logger.warning("Rotation scheduler is already running")
            return

        self.is_running = True
        logger.info(
            "Rotation scheduler started - checking for due tests every %d seconds",
            self.check_interval,
        )

        while self.is_running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Rotation scheduler error: {e}", exc_info=True)

            await asyncio.sleep(self.check_interval)

    async def stop(self):
        """Stop the scheduler."""
        if not self.is_running:
            return

        self.is_running = False
        logger.info("Rotation scheduler stopped")

    async def run_once(self, now: Optional[datetime] = None) -> RotationSummary:
        """Run a single tick with its own database session."""
        async with async_session_maker() as db:
            summary = await process_due_tests(db, now=now)
        self.last_summary = summary
        return summary


# Singleton instance
rotation_scheduler = RotationSchedulerService()
