"""
SQLAlchemy database models.
"""

from .base import Base, TimestampMixin
from .events import AttributionEvent
from .experiment import ABTest, RotationEvent, SessionAssignment
from .statistics import DailyStatistic

__all__ = [
    "Base",
    "TimestampMixin",
    "ABTest",
    "RotationEvent",
    "SessionAssignment",
    "AttributionEvent",
    "DailyStatistic",
]
