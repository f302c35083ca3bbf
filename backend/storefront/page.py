"""
Parsed storefront document.

Wraps a BeautifulSoup tree together with the page URL and the scripted
runtime globals the theme exposes (``ShopifyAnalytics``, ``__st``,
``Shopify``). Every attribute write made by the engine goes through
``set_attr``/``remove_attr`` so callers can tell whether a pass changed
the document at all.
"""

import logging
import re
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag

logger = logging.getLogger(__name__)

_SIZE_QUERY = re.compile(r"[?&]width=(\d+)")
_SIZE_SUFFIX = re.compile(r"_(\d+)x(\d+)?(?:_crop_\w+)?(?:@\dx)?\.\w+(?:\?|$)")


def parse_style(value: Optional[str]) -> dict[str, str]:
    """Split an inline style attribute into an ordered property map."""
    props: dict[str, str] = {}
    if not value:
        return props
    for declaration in value.split(";"):
        name, sep, prop_value = declaration.partition(":")
        if sep and name.strip():
            props[name.strip().lower()] = prop_value.strip()
    return props


def format_style(props: Mapping[str, str]) -> str:
    return "; ".join(f"{name}: {value}" for name, value in props.items())


def _to_int(value: Any) -> int:
    try:
        return int(float(str(value).strip().rstrip("px")))
    except (TypeError, ValueError):
        return 0


class StorefrontPage:
    """A product page as seen by the storefront engine."""

    def __init__(
        self,
        document: str | BeautifulSoup,
        url: str = "",
        runtime: Optional[Mapping[str, Any]] = None,
    ):
        if isinstance(document, BeautifulSoup):
            self.soup = document
        else:
            self.soup = BeautifulSoup(document, "html.parser")
        self.url = url
        self.runtime: Mapping[str, Any] = runtime or {}
        parsed = urlparse(url)
        self.path = parsed.path or "/"
        self.query = parse_qs(parsed.query)
        self.writes = 0

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def select(self, selector: str, root: Optional[Tag] = None) -> list[Tag]:
        return list((root or self.soup).select(selector))

    def select_one(self, selector: str, root: Optional[Tag] = None) -> Optional[Tag]:
        return (root or self.soup).select_one(selector)

    def has_class(self, class_name: str) -> bool:
        return self.soup.find(class_=class_name) is not None

    def query_param(self, name: str) -> Optional[str]:
        values = self.query.get(name)
        return values[0] if values else None

    def runtime_value(self, *path: str) -> Any:
        """Walk nested runtime globals, returning None on any missing key."""
        current: Any = self.runtime
        for key in path:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
            if current is None:
                return None
        return current

    @property
    def is_product_page(self) -> bool:
        return "/products/" in self.path

    @property
    def is_thank_you_page(self) -> bool:
        return "/thank_you" in self.path or "/orders/" in self.path

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    @staticmethod
    def image_src(img: Tag) -> str:
        return img.get("src") or img.get("data-src") or ""

    @staticmethod
    def image_dimensions(img: Tag) -> tuple[int, int]:
        """
        Best known (width, height) of an image.

        Natural size hints come first since hidden slides have no rendered
        size, then the width/height attributes, then the CDN size encoded
        in the URL.
        """
        width = _to_int(img.get("data-natural-width"))
        height = _to_int(img.get("data-natural-height"))
        if width or height:
            return width, height

        width = _to_int(img.get("width"))
        height = _to_int(img.get("height"))
        if width or height:
            return width, height

        style = parse_style(img.get("style"))
        width = _to_int(style.get("width"))
        height = _to_int(style.get("height"))
        if width or height:
            return width, height

        src = StorefrontPage.image_src(img)
        match = _SIZE_QUERY.search(src)
        if match:
            return int(match.group(1)), 0
        match = _SIZE_SUFFIX.search(src)
        if match:
            return int(match.group(1)), int(match.group(2) or 0)
        return 0, 0

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_attr(self, element: Tag, name: str, value: str) -> bool:
        if element.get(name) == value:
            return False
        element[name] = value
        self.writes += 1
        return True

    def remove_attr(self, element: Tag, name: str) -> bool:
        if name not in element.attrs:
            return False
        del element[name]
        self.writes += 1
        return True

    def style_of(self, element: Tag) -> dict[str, str]:
        return parse_style(element.get("style"))

    def set_style(self, element: Tag, props: Mapping[str, str]) -> bool:
        style = self.style_of(element)
        style.update(props)
        return self.set_attr(element, "style", format_style(style))

    def remove_style(self, element: Tag, names: Iterable[str]) -> bool:
        style = self.style_of(element)
        changed = False
        for name in names:
            if style.pop(name, None) is not None:
                changed = True
        if not changed:
            return False
        if style:
            return self.set_attr(element, "style", format_style(style))
        return self.remove_attr(element, "style")

    def is_hidden(self, element: Tag) -> bool:
        if element.get("data-ab-test-hidden") == "true" or element.has_attr("hidden"):
            return True
        style = self.style_of(element)
        display = style.get("display", "").replace("!important", "").strip()
        visibility = style.get("visibility", "").replace("!important", "").strip()
        return display == "none" or visibility == "hidden"

    def detach(self, element: Tag) -> None:
        element.extract()
        self.writes += 1

    def reattach(self, element: Tag, parent: Tag, position: int) -> None:
        parent.insert(min(position, len(parent.contents)), element)
        self.writes += 1
