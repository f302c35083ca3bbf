"""
API dependencies for the scheduler trigger and operator endpoints.

Both use a static bearer token from settings; there are no user accounts.
"""

import hmac
import logging
from typing import Annotated, Optional

from fastapi import Header, HTTPException, status

from infrastructure.config import settings

logger = logging.getLogger(__name__)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        parts = authorization.split(" ", 1)
        return parts[1] if len(parts) > 1 and parts[1] else None
    return None


def _matches(token: str, secret: Optional[str]) -> bool:
    return bool(secret) and hmac.compare_digest(token.encode(), secret.encode())


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_cron_auth(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """
    Authorize the rotation trigger.

    Accepts the scheduler's ``CRON_SECRET`` or the operator ``ADMIN_API_KEY``
    and returns which one matched (``"cron"`` or ``"admin"``).
    """
    if not settings.cron_secret and not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Rotation trigger is not configured",
        )

    token = _bearer_token(authorization)
    if not token:
        raise _unauthorized("Not authenticated")

    if _matches(token, settings.cron_secret):
        return "cron"
    if _matches(token, settings.admin_api_key):
        return "admin"

    logger.warning("Rejected rotation trigger with invalid token")
    raise _unauthorized("Invalid token")


async def require_admin_auth(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """Authorize operator endpoints with ``ADMIN_API_KEY``."""
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Operator API is not configured",
        )

    token = _bearer_token(authorization)
    if not token:
        raise _unauthorized("Not authenticated")
    if not _matches(token, settings.admin_api_key):
        logger.warning("Rejected operator request with invalid token")
        raise _unauthorized("Invalid token")
    return "admin"
