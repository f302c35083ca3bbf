"""
Storefront engine.

Runs on a parsed product page: detects the product and the gallery layout,
fetches the session's case from the assignment endpoint, swaps the gallery
images and reports impressions, add-to-carts and purchases.
"""

from .engine import EngineOutcome, GalleryEngine
from .page import StorefrontPage

__all__ = ["EngineOutcome", "GalleryEngine", "StorefrontPage"]
