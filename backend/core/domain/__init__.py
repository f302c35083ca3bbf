# Domain Entities
# Pure experiment rules with no external dependencies
from .experiment import (
    Case,
    EventSource,
    EventType,
    TestStatus,
    TriggerSource,
    assign_case,
    bucket_for,
    ensure_utc,
    is_uuid,
    next_rotation_after,
    normalize_product_id,
    normalize_variant_id,
    parse_case,
)

__all__ = [
    "Case",
    "EventSource",
    "EventType",
    "TestStatus",
    "TriggerSource",
    "assign_case",
    "bucket_for",
    "ensure_utc",
    "is_uuid",
    "next_rotation_after",
    "normalize_product_id",
    "normalize_variant_id",
    "parse_case",
]
