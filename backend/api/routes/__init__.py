"""API Routes."""

from fastapi import APIRouter

from .assignment import router as assignment_router
from .health import router as health_router
from .rotation import router as rotation_router
from .statistics import router as statistics_router
from .tracking import router as tracking_router

# Create main API router
api_router = APIRouter()

# Include route modules
api_router.include_router(health_router, tags=["Health"])
api_router.include_router(assignment_router)
api_router.include_router(tracking_router)
api_router.include_router(rotation_router)
api_router.include_router(statistics_router)
