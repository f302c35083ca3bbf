"""Experiment domain rules.

Pure functions and enums shared by the rotation service, the assignment
service and the storefront engine. Nothing here touches the database or
the network.
"""
import hashlib
import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


class Case(str, Enum):
    """The two arms of an experiment."""
    BASE = "BASE"
    TEST = "TEST"

    @property
    def opposite(self) -> "Case":
        return Case.TEST if self is Case.BASE else Case.BASE


class TestStatus(str, Enum):
    """Experiment lifecycle status."""
    __test__ = False

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class EventType(str, Enum):
    """Attribution event types."""
    IMPRESSION = "IMPRESSION"
    ADD_TO_CART = "ADD_TO_CART"
    PURCHASE = "PURCHASE"


class EventSource(str, Enum):
    """Where an attribution event was observed."""
    LISTENER = "listener"    # explicit add-to-cart click or submit
    FALLBACK = "fallback"    # intercepted cart-mutation request
    CHECKOUT = "checkout"    # server-side checkout attribution
    PIXEL = "pixel"          # checkout-completed payload on the storefront


class TriggerSource(str, Enum):
    """What caused a rotation attempt."""
    SCHEDULER = "scheduler"
    MANUAL = "manual"
    SYSTEM = "system"


_FORCE_ALIASES = {
    "a": Case.BASE,
    "b": Case.TEST,
    "base": Case.BASE,
    "test": Case.TEST,
}

_PRODUCT_GID_PREFIX = "gid://shopify/Product/"
_VARIANT_GID_PREFIX = "gid://shopify/ProductVariant/"
_NUMERIC = re.compile(r"^\d+$")


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_case(value: Optional[str]) -> Optional[Case]:
    """Parse a case name or a legacy ``a``/``b`` alias. Unknown values give None."""
    if not value:
        return None
    value = value.strip()
    try:
        return Case(value.upper())
    except ValueError:
        return _FORCE_ALIASES.get(value.lower())


def next_rotation_after(
    previous_due: Optional[datetime],
    interval: timedelta,
    now: datetime,
) -> datetime:
    """
    Compute the next rotation time after a rotation applied at ``now``.

    The schedule advances from the previous due time so that a tick that
    runs a little late does not drift the cadence. If the scheduler was
    down long enough for several intervals to be missed, the schedule is
    caught forward to ``now + interval`` instead of back-filling.
    """
    if previous_due is None:
        return now + interval
    candidate = ensure_utc(previous_due) + interval
    if candidate <= now:
        return now + interval
    return candidate


def bucket_for(test_id: str, session_id: str) -> float:
    """Map (test, session) to a stable point in [0, 100)."""
    digest = hashlib.sha256(f"{test_id}:{session_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / 2**64 * 100


def assign_case(
    test_id: str,
    session_id: str,
    traffic_split: int,
    control_case: Case,
) -> Case:
    """
    Deterministically bucket a session.

    Sessions whose bucket falls below ``traffic_split`` receive the
    treatment arm, which is the opposite of the control case. With the
    control at BASE this is exactly "split percent of sessions see TEST".
    """
    split = max(0, min(100, traffic_split))
    if bucket_for(test_id, session_id) < split:
        return control_case.opposite
    return control_case


def normalize_product_id(value: Optional[str]) -> Optional[str]:
    """Return a canonical product id, or None when the input is unusable."""
    if value is None:
        return None
    value = str(value).strip()
    if not value or len(value) > 255 or any(ch.isspace() for ch in value):
        return None
    if _NUMERIC.match(value):
        return f"{_PRODUCT_GID_PREFIX}{value}"
    return value


def normalize_variant_id(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    if _NUMERIC.match(value):
        return f"{_VARIANT_GID_PREFIX}{value}"
    return value


def is_uuid(value: Optional[str]) -> bool:
    """True when *value* parses as a UUID (the id format of every table)."""
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False
