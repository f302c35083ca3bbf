"""
Service layer for business logic.
"""

from services.rotation import RotationSchedulerService, rotation_scheduler

__all__ = [
    "RotationSchedulerService",
    "rotation_scheduler",
]
