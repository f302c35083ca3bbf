"""
Rate limiting for the experiment API (slowapi).

Two traffic classes share the app:

- storefront calls (``/variant``, ``/track``) fire once or twice per page
  view from every shopper, so they get a wide per-IP window;
- the rotation trigger is meant for one external scheduler, so it gets a
  narrow one.

Everything else falls under the global default applied by
``SlowAPIMiddleware``. Counters live in Redis when ``REDIS_URL`` is set and
in process memory otherwise.
"""

import ipaddress
import logging
from typing import Iterable, Optional

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from infrastructure.config import settings

logger = logging.getLogger(__name__)

RATE_LIMITS = {
    "storefront": "600/minute",
    "rotation_trigger": "30/minute",
    "default": "100/minute",
}

# Proxy headers checked in order; only the first hop of each is considered
_PROXY_HEADERS = ("x-forwarded-for", "x-real-ip")


def _public_ip(value: str) -> Optional[str]:
    """Return *value* when it is a routable IP address, else None.

    Private, loopback and link-local addresses in proxy headers are
    client-controlled and would let one shopper reset their own bucket.
    """
    try:
        addr = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if addr.is_private or addr.is_loopback or addr.is_link_local:
        return None
    return str(addr)


def _first_hops(request: Request, headers: Iterable[str]) -> Iterable[str]:
    for name in headers:
        raw = request.headers.get(name)
        if raw:
            yield raw.split(",")[0]


def _get_real_ip(request: Request) -> str:
    """Rate-limit key: the shopper's public IP behind the storefront proxy."""
    for hop in _first_hops(request, _PROXY_HEADERS):
        ip = _public_ip(hop)
        if ip:
            return ip
    return get_remote_address(request)


def _storage_uri() -> str:
    if settings.redis_url:
        return settings.redis_url
    if settings.is_production:
        logger.critical(
            "REDIS_URL is not set in production; storefront rate limits are per worker process"
        )
    else:
        logger.warning("Rate limiter using in-memory storage")
    return "memory://"


limiter = Limiter(
    key_func=_get_real_ip,
    storage_uri=_storage_uri(),
    default_limits=[RATE_LIMITS["default"]],
)


def get_rate_limit(endpoint: str) -> str:
    """Limit string for a traffic class, falling back to the default.

    >>> get_rate_limit("rotation_trigger")
    '30/minute'
    """
    return RATE_LIMITS.get(endpoint, RATE_LIMITS["default"])
