"""
Gallery locator.

Finds the product gallery on an unknown theme: the detected profile's
containers first, then wildcard class and data-attribute patterns, then
the closest ancestor holding most of the page's product images.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from bs4 import Tag
from soupsieve import SelectorSyntaxError

from .page import StorefrontPage
from .themes import ThemeProfile

logger = logging.getLogger(__name__)

MIN_IMAGE_SIZE = 50
MIN_GALLERY_IMAGES = 2
ANCESTOR_COVERAGE = 0.8
MAX_ANCESTOR_DEPTH = 10

# Content-delivery paths product images are served from
PRODUCT_IMAGE_PATTERNS = (
    "/products/",
    "cdn.shopify.com",
    "/cdn/shop/files/",
    ".myshopify.com/cdn/",
)

ADAPTIVE_PATTERNS = (
    "media-gallery",
    "product-gallery",
    "slider-component",
    '[class*="product"][class*="media"]',
    '[class*="product"][class*="gallery"]',
    '[class*="product"][class*="image"]',
    '[class*="product"][class*="photo"]',
    '[class*="product"][class*="slide"]',
    "[data-product-images]",
    "[data-product-gallery]",
    "[data-media-gallery]",
    "[data-gallery]",
    'ul[class*="product"]',
    'div[class*="swiper"]',
    'div[class*="slider"]',
    'div[class*="carousel"]',
)

_ITEM_CLASS = re.compile(r"item|slide|cell|wrapper|container", re.IGNORECASE)

STRATEGY_PROFILE = "profile"
STRATEGY_ADAPTIVE = "adaptive"
STRATEGY_COMMON_ANCESTOR = "common-ancestor"


@dataclass
class GalleryImage:
    img: Tag
    # Element hidden or revealed with the image; the image itself when unwrapped
    item: Tag


@dataclass
class Gallery:
    container: Tag
    images: list[GalleryImage]
    strategy: str
    profile: Optional[ThemeProfile] = None
    selector: Optional[str] = None
    items: list[Tag] = field(default_factory=list)

    @property
    def structured(self) -> bool:
        return bool(self.items)


def is_product_image(img: Tag) -> bool:
    """True for CDN-hosted images larger than an icon or swatch."""
    # Already swapped images keep their gallery slot whatever the new URL
    if img.get("data-ab-test-replaced") == "true":
        return True
    src = StorefrontPage.image_src(img)
    if not any(pattern in src for pattern in PRODUCT_IMAGE_PATTERNS):
        return False
    width, height = StorefrontPage.image_dimensions(img)
    return width > MIN_IMAGE_SIZE or height > MIN_IMAGE_SIZE


def _is_descendant(element: Tag, ancestor: Tag) -> bool:
    return any(parent is ancestor for parent in element.parents)


def find_image_item(img: Tag, container: Tag) -> Tag:
    """Outermost wrapper below *container* whose class looks like a gallery item."""
    current = img.parent
    best = img if current is None or current is container else current
    while current is not None and current is not container:
        class_name = " ".join(current.get("class") or [])
        if _ITEM_CLASS.search(class_name):
            best = current
        current = current.parent
    return best


def analyze_container(
    container: Tag, profile: Optional[ThemeProfile] = None
) -> Optional[Gallery]:
    """
    Build a gallery from the product images inside *container*.

    Uses the profile's item selectors when they match, otherwise every
    product image in the container. Returns None unless at least two
    images qualify.
    """
    images: list[GalleryImage] = []
    items: list[Tag] = []
    if profile is not None and profile.items:
        seen: set[int] = set()
        for item in container.select(", ".join(profile.items)):
            img = item.find("img")
            # Nested item selectors can match twice around one image
            if img is None or id(img) in seen:
                continue
            seen.add(id(img))
            if is_product_image(img):
                images.append(GalleryImage(img=img, item=item))
                items.append(item)

    if not images:
        for img in container.find_all("img"):
            if is_product_image(img):
                parent = img.parent
                item = parent if parent is not None and parent is not container else img
                images.append(GalleryImage(img=img, item=item))

    if len(images) < MIN_GALLERY_IMAGES:
        return None
    return Gallery(
        container=container,
        images=images,
        strategy=STRATEGY_PROFILE if profile is not None else STRATEGY_ADAPTIVE,
        profile=profile,
        items=items,
    )


def _locate_with_profile(page: StorefrontPage, profile: ThemeProfile) -> Optional[Gallery]:
    for selector, container in profile.candidate_containers(page):
        gallery = analyze_container(container, profile)
        if gallery is not None:
            gallery.selector = selector
            logger.debug("Gallery found with %s selector %s", profile.name, selector)
            return gallery
    return None


def _locate_adaptive(page: StorefrontPage) -> Optional[Gallery]:
    for pattern in ADAPTIVE_PATTERNS:
        try:
            containers = page.select(pattern)
        except SelectorSyntaxError:
            logger.debug("Skipping unsupported selector %s", pattern)
            continue
        for container in containers:
            gallery = analyze_container(container)
            if gallery is not None:
                gallery.selector = pattern
                logger.debug("Gallery found with adaptive pattern %s", pattern)
                return gallery
    return None


def _locate_common_ancestor(page: StorefrontPage) -> Optional[Gallery]:
    product_images = [img for img in page.soup.find_all("img") if is_product_image(img)]
    if len(product_images) < MIN_GALLERY_IMAGES:
        return None

    parent = product_images[0].parent
    depth = 0
    while parent is not None and depth < MAX_ANCESTOR_DEPTH:
        contained = [img for img in product_images if _is_descendant(img, parent)]
        if len(contained) >= len(product_images) * ANCESTOR_COVERAGE:
            logger.debug("Gallery inferred from common ancestor <%s>", parent.name)
            return Gallery(
                container=parent,
                images=[
                    GalleryImage(img=img, item=find_image_item(img, parent))
                    for img in contained
                ],
                strategy=STRATEGY_COMMON_ANCESTOR,
            )
        parent = parent.parent
        depth += 1
    return None


def locate_gallery(
    page: StorefrontPage, profile: Optional[ThemeProfile] = None
) -> Optional[Gallery]:
    """Find the product gallery, trying each strategy from most to least specific."""
    if profile is not None:
        gallery = _locate_with_profile(page, profile)
        if gallery is not None:
            return gallery

    gallery = _locate_adaptive(page) or _locate_common_ancestor(page)
    if gallery is None:
        logger.debug("No gallery found on %s", page.path)
    return gallery
