"""Product id detection on a storefront page."""

import logging
import re
from typing import Callable, Optional

from .page import StorefrontPage

logger = logging.getLogger(__name__)

PRODUCT_GID_PREFIX = "gid://shopify/Product/"

_HANDLE_PATH = re.compile(r"/products/([^/?#]+)")


def _from_analytics(page: StorefrontPage) -> Optional[str]:
    gid = page.runtime_value("ShopifyAnalytics", "meta", "product", "gid")
    return str(gid) if gid else None


def _from_runtime(page: StorefrontPage) -> Optional[str]:
    rid = page.runtime_value("__st", "rid")
    return f"{PRODUCT_GID_PREFIX}{rid}" if rid else None


def _from_meta_tag(page: StorefrontPage) -> Optional[str]:
    meta = page.select_one('meta[property="og:product:id"]')
    content = (meta.get("content") or "").strip() if meta is not None else ""
    return f"{PRODUCT_GID_PREFIX}{content}" if content else None


def _from_cart_form(page: StorefrontPage) -> Optional[str]:
    # The form field is usually a variant id; still better than a handle
    field = page.select_one('form[action*="/cart/add"] input[name="id"]')
    value = (field.get("value") or "").strip() if field is not None else ""
    return f"{PRODUCT_GID_PREFIX}{value}" if value else None


def _from_url(page: StorefrontPage) -> Optional[str]:
    match = _HANDLE_PATH.search(page.path)
    return f"handle:{match.group(1)}" if match else None


# Most precise first; later strategies only run when earlier ones find nothing
STRATEGIES: tuple[tuple[str, Callable[[StorefrontPage], Optional[str]]], ...] = (
    ("analytics", _from_analytics),
    ("runtime", _from_runtime),
    ("meta", _from_meta_tag),
    ("cart_form", _from_cart_form),
    ("url", _from_url),
)


def detect_product_id(page: StorefrontPage) -> Optional[str]:
    for name, strategy in STRATEGIES:
        product_id = strategy(page)
        if product_id:
            logger.debug("Product id %s detected via %s", product_id, name)
            return product_id

    logger.debug("Could not detect a product id on %s", page.path)
    return None
