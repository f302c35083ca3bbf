"""
Theme profiles.

Each profile describes how one storefront theme lays out its product
gallery: what to look for when scoring the page, where the gallery lives
and how surplus images are hidden. Choosing a profile is a pure function
of the match scores.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from bs4 import Tag

from .page import StorefrontPage

logger = logging.getLogger(__name__)

SELECTOR_WEIGHT = 10
ATTRIBUTE_WEIGHT = 5
CLASS_WEIGHT = 3

# Hide targets
HIDE_ITEM = "item"
HIDE_IMAGE = "image"

# Hide methods
HIDE_DISPLAY = "display"
HIDE_VISIBILITY = "visibility"
HIDE_REMOVE = "remove"
HIDE_AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class HideStrategy:
    target: str = HIDE_ITEM
    method: str = HIDE_DISPLAY
    # Applied in order, gentlest first
    cleanup_selectors: tuple[str, ...] = ()
    # Ancestor tag hidden along with an aggressively hidden item
    slide_tag: Optional[str] = None


@dataclass(frozen=True)
class ThemeProfile:
    key: str
    name: str
    detect_selectors: tuple[str, ...] = ()
    detect_attributes: tuple[str, ...] = ()
    detect_classes: tuple[str, ...] = ()
    containers: tuple[str, ...] = ()
    items: tuple[str, ...] = ()
    images: tuple[str, ...] = ()
    hiding: HideStrategy = field(default_factory=HideStrategy)

    def score(self, page: StorefrontPage) -> int:
        """Weighted count of this profile's markers present on the page."""
        score = 0
        for selector in self.detect_selectors:
            if page.select_one(selector) is not None:
                score += SELECTOR_WEIGHT
        for attribute in self.detect_attributes:
            if page.select_one(f"[{attribute}]") is not None:
                score += ATTRIBUTE_WEIGHT
        for class_name in self.detect_classes:
            if page.has_class(class_name):
                score += CLASS_WEIGHT
        return score

    def candidate_containers(self, page: StorefrontPage) -> list[tuple[str, Tag]]:
        """First match of each container selector, in profile order."""
        found = []
        for selector in self.containers:
            container = page.select_one(selector)
            if container is not None:
                found.append((selector, container))
        return found


PROFILES: tuple[ThemeProfile, ...] = (
    ThemeProfile(
        key="dawn",
        name="Dawn",
        detect_selectors=(".product__media-list", "media-gallery", "#MainProduct"),
        detect_attributes=('data-section="main-product"',),
        detect_classes=("product__media-item", "product__media-wrapper"),
        containers=(
            ".product__media-list",
            "ul.product__media-list",
            "media-gallery .product__media-list",
        ),
        items=(".product__media-item", "li.product__media-item", ".product__media-list > li"),
        images=(".product__media img", ".product__media-item img", ".product-media-container img"),
        hiding=HideStrategy(cleanup_selectors=(".product__media-wrapper:empty", ".product__media-wrapper")),
    ),
    ThemeProfile(
        key="horizon",
        name="Horizon",
        detect_selectors=("media-gallery", "slideshow-component", "slideshow-slide"),
        detect_attributes=("data-presentation",),
        detect_classes=("media-gallery", "slideshow-slide", "product-media-container"),
        containers=("slideshow-slides", "media-gallery", "slideshow-container"),
        items=("slideshow-slide", ".product-media-container"),
        images=("slideshow-slide img", ".product-media__image", ".product-media img"),
        hiding=HideStrategy(method=HIDE_AGGRESSIVE, slide_tag="slideshow-slide"),
    ),
    ThemeProfile(
        key="debut",
        name="Debut",
        detect_selectors=(".product-single__photos", "#ProductPhoto"),
        detect_classes=("product-single__photo",),
        containers=(".product-single__photos", ".product__main-photos"),
        items=(".product-single__photo", ".product-single__photo-wrapper"),
        images=(".product-single__photo img",),
        hiding=HideStrategy(method=HIDE_VISIBILITY),
    ),
    ThemeProfile(
        key="brooklyn",
        name="Brooklyn",
        detect_selectors=(".product__slides",),
        detect_classes=("product__slide",),
        containers=(".product__slides",),
        items=(".product__slide",),
        images=(".product__slide img",),
    ),
    ThemeProfile(
        key="prestige",
        name="Prestige",
        detect_selectors=(".Product__Gallery", ".Product__Slideshow"),
        detect_classes=("Product__SlideItem",),
        containers=(".Product__Gallery", ".Product__Slideshow"),
        items=(".Product__SlideItem",),
        images=(".Product__SlideItem img", ".Image--lazyLoad"),
    ),
    ThemeProfile(
        key="impulse",
        name="Impulse",
        detect_selectors=(".product__photos",),
        detect_classes=("product__photo",),
        containers=(".product__photos",),
        items=(".product__photo",),
        images=(".product__photo img",),
    ),
    ThemeProfile(
        key="turbo",
        name="Turbo",
        detect_selectors=(".product-images", ".product-gallery"),
        detect_classes=("product-image", "gallery-cell"),
        containers=(".product-images", ".product-gallery"),
        items=(".product-image", ".gallery-cell"),
        images=(".product-image img", ".gallery-cell img"),
    ),
    ThemeProfile(
        key="narrative",
        name="Narrative",
        detect_selectors=(".product__images",),
        detect_classes=("product__image",),
        containers=(".product__images",),
        items=(".product__image",),
        images=(".product__image img",),
    ),
)

PROFILES_BY_KEY = {profile.key: profile for profile in PROFILES}


def score_profiles(page: StorefrontPage) -> dict[str, int]:
    """Scores of every profile that matched at least once."""
    scores = {}
    for profile in PROFILES:
        score = profile.score(page)
        if score > 0:
            scores[profile.key] = score
    return scores


def detect_theme(page: StorefrontPage) -> Optional[ThemeProfile]:
    """
    Pick the highest scoring profile.

    Ties go to the profile listed first. Returns None when nothing
    matched, in which case the adaptive search takes over.
    """
    best: Optional[ThemeProfile] = None
    best_score = 0
    for key, score in score_profiles(page).items():
        if score > best_score:
            best = PROFILES_BY_KEY[key]
            best_score = score

    if best is None:
        logger.debug("No theme profile matched; using adaptive detection")
    else:
        logger.debug("Theme detected: %s (score %d)", best.name, best_score)
    return best
