"""
Variant applier.

Swaps the first N gallery images for the assigned URLs, hides the rest
with the theme's hide strategy and tidies wrappers left empty. A
re-entrancy guard and a per-URL-set memo keep repeated calls from
rewriting the document; ``MutationWatch`` re-applies once late images
arrive.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from bs4 import Tag

from .gallery import Gallery, GalleryImage, locate_gallery
from .page import StorefrontPage
from .themes import (
    HIDE_AGGRESSIVE,
    HIDE_IMAGE,
    HIDE_REMOVE,
    HIDE_VISIBILITY,
    HideStrategy,
    ThemeProfile,
)

logger = logging.getLogger(__name__)

ORIGINAL_SRC = "data-original-src"
ORIGINAL_SRCSET = "data-original-srcset"
ORIGINAL_DATA_SRC = "data-original-data-src"
ORIGINAL_LOADING = "data-original-loading"
REPLACED = "data-ab-test-replaced"
INDEX = "data-ab-test-index"
HIDDEN = "data-ab-test-hidden"
VISIBLE = "data-ab-test-visible"

_DEFAULT_HIDING = HideStrategy()
_AGGRESSIVE_STYLE = {"display": "none !important", "visibility": "hidden !important"}


@dataclass
class ApplyResult:
    # Images now showing an assigned URL, rewritten or already current
    matched: int = 0
    # Of those, images this call actually rewrote
    replaced: int = 0
    hidden: int = 0
    cleaned: int = 0
    # "empty", "busy", "memoized" or "no_gallery" when nothing was attempted
    skipped: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.matched > 0


@dataclass
class _HiddenRecord:
    element: Tag
    original_style: Optional[str]
    added_attrs: tuple[str, ...] = ()
    parent: Optional[Tag] = None
    position: int = 0


class VariantApplier:
    """Applies one assignment's image list to a page's gallery."""

    def __init__(self, page: StorefrontPage, profile: Optional[ThemeProfile] = None):
        self.page = page
        self.profile = profile
        self.gallery: Optional[Gallery] = None
        self._applying = False
        self._applied_keys: set[str] = set()
        self._hidden: list[_HiddenRecord] = []

    @property
    def is_applying(self) -> bool:
        return self._applying

    @property
    def hiding(self) -> HideStrategy:
        return self.profile.hiding if self.profile is not None else _DEFAULT_HIDING

    def apply(self, urls: list[str], force: bool = False) -> ApplyResult:
        """
        Replace gallery images with *urls* in order.

        Args:
            urls: Assigned image URLs
            force: Re-run even if this URL set was applied before; used
                   when late images arrive. Already correct images are
                   not rewritten.
        """
        if not urls:
            return ApplyResult(skipped="empty")
        if self._applying:
            logger.debug("Replacement already in progress")
            return ApplyResult(skipped="busy")

        key = "|".join(urls)
        if key in self._applied_keys and not force:
            return ApplyResult(skipped="memoized")

        self._applying = True
        try:
            gallery = locate_gallery(self.page, self.profile)
            if gallery is None:
                return ApplyResult(skipped="no_gallery")
            self.gallery = gallery

            result = ApplyResult()
            for index, entry in enumerate(gallery.images):
                if index < len(urls):
                    result.matched += 1
                    if self._replace(entry, urls[index], index):
                        result.replaced += 1
                elif self._hide(entry, index):
                    result.hidden += 1
            result.cleaned = self._cleanup(gallery)

            if result.matched:
                self._applied_keys.add(key)
            logger.debug(
                "Gallery (%s): %d matched, %d replaced, %d hidden, %d wrappers cleaned",
                gallery.strategy,
                result.matched,
                result.replaced,
                result.hidden,
                result.cleaned,
            )
            return result
        finally:
            self._applying = False

    # ------------------------------------------------------------------
    # Replacement
    # ------------------------------------------------------------------

    def _replace(self, entry: GalleryImage, url: str, index: int) -> bool:
        """Point one image at *url*. Returns True when the DOM changed."""
        page = self.page
        img, item = entry.img, entry.item
        writes = page.writes

        if not img.has_attr(ORIGINAL_SRC):
            page.set_attr(img, ORIGINAL_SRC, img.get("src", ""))
            if img.has_attr("srcset"):
                page.set_attr(img, ORIGINAL_SRCSET, img["srcset"])
            if img.has_attr("data-src"):
                page.set_attr(img, ORIGINAL_DATA_SRC, img["data-src"])

        page.set_attr(img, "src", url)
        page.remove_attr(img, "srcset")
        if img.has_attr("data-src"):
            page.set_attr(img, "data-src", url)

        # <picture> sources win over the img src
        if img.parent is not None and img.parent.name == "picture":
            for source in img.parent.find_all("source"):
                if source.has_attr("srcset"):
                    page.set_attr(source, ORIGINAL_SRCSET, source["srcset"])
                    page.remove_attr(source, "srcset")

        if img.get("loading") == "lazy":
            page.set_attr(img, ORIGINAL_LOADING, "lazy")
            page.set_attr(img, "loading", "eager")

        page.set_attr(img, REPLACED, "true")
        page.set_attr(img, INDEX, str(index))
        page.remove_style(img, ("display", "visibility", "opacity"))

        if item is not img:
            if item.get(HIDDEN) == "true":
                self._unhide(item)
            page.remove_style(item, ("display", "visibility"))
            page.set_attr(item, VISIBLE, "true")
        return page.writes != writes

    # ------------------------------------------------------------------
    # Hiding
    # ------------------------------------------------------------------

    def _hide(self, entry: GalleryImage, index: int) -> bool:
        hiding = self.hiding
        target = entry.img if hiding.target == HIDE_IMAGE else entry.item
        if target.get(HIDDEN) == "true":
            return False

        if hiding.method == HIDE_AGGRESSIVE:
            self._hide_element(target, index, aggressive=True)
            if hiding.slide_tag:
                slide = target.find_parent(hiding.slide_tag)
                if slide is not None and slide.get(HIDDEN) != "true":
                    self._hide_element(slide, index, aggressive=True)
        elif hiding.method == HIDE_REMOVE:
            parent = target.parent
            if parent is None:
                return False
            position = parent.index(target)
            self.page.set_attr(target, HIDDEN, "true")
            self.page.set_attr(target, INDEX, str(index))
            self._hidden.append(
                _HiddenRecord(element=target, original_style=None, parent=parent, position=position)
            )
            self.page.detach(target)
        elif hiding.method == HIDE_VISIBILITY:
            self._hide_element(
                target,
                index,
                style={"visibility": "hidden", "position": "absolute", "left": "-9999px"},
            )
        else:
            self._hide_element(target, index, style={"display": "none"})
        return True

    def _hide_element(
        self,
        element: Tag,
        index: Optional[int] = None,
        style: Optional[dict] = None,
        aggressive: bool = False,
    ) -> None:
        page = self.page
        added = []
        record = _HiddenRecord(element=element, original_style=element.get("style"))

        page.set_style(element, _AGGRESSIVE_STYLE if aggressive else style or {"display": "none"})
        if aggressive:
            for name, value in (("aria-hidden", "true"), ("hidden", "")):
                if not element.has_attr(name):
                    page.set_attr(element, name, value)
                    added.append(name)

        page.set_attr(element, HIDDEN, "true")
        if index is not None:
            page.set_attr(element, INDEX, str(index))
        record.added_attrs = tuple(added)
        self._hidden.append(record)

    def _unhide(self, element: Tag) -> None:
        for record in list(self._hidden):
            if record.element is element and record.parent is None:
                self._restore_hidden(record)
                self._hidden.remove(record)

    def _restore_hidden(self, record: _HiddenRecord) -> None:
        page = self.page
        element = record.element
        if record.parent is not None:
            page.reattach(element, record.parent, record.position)
        elif record.original_style:
            page.set_attr(element, "style", record.original_style)
        else:
            page.remove_attr(element, "style")
        for name in record.added_attrs:
            page.remove_attr(element, name)
        page.remove_attr(element, HIDDEN)
        page.remove_attr(element, INDEX)

    def _cleanup(self, gallery: Gallery) -> int:
        """Hide wrappers whose element children are all hidden."""
        candidates: list[Tag] = []
        for selector in self.hiding.cleanup_selectors:
            candidates.extend(self.page.select(selector, root=gallery.container))

        # Wrappers between each hidden element and the gallery container
        for record in self._hidden:
            parent = record.element.parent
            while parent is not None and parent is not gallery.container:
                candidates.append(parent)
                parent = parent.parent

        cleaned = 0
        seen: set[int] = set()
        for element in candidates:
            if id(element) in seen or element.get(HIDDEN) == "true":
                continue
            seen.add(id(element))
            children = [child for child in element.children if isinstance(child, Tag)]
            if all(self.page.is_hidden(child) for child in children):
                self._hide_element(element, style={"display": "none"})
                cleaned += 1
        return cleaned

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self) -> int:
        """Put the page's original images back. Returns images restored."""
        page = self.page
        for record in reversed(self._hidden):
            self._restore_hidden(record)
        self._hidden.clear()

        restored = 0
        for img in page.select(f"img[{REPLACED}]"):
            page.set_attr(img, "src", img.get(ORIGINAL_SRC, ""))
            if img.has_attr(ORIGINAL_SRCSET):
                page.set_attr(img, "srcset", img[ORIGINAL_SRCSET])
            if img.has_attr(ORIGINAL_DATA_SRC):
                page.set_attr(img, "data-src", img[ORIGINAL_DATA_SRC])
            if img.has_attr(ORIGINAL_LOADING):
                page.set_attr(img, "loading", img[ORIGINAL_LOADING])
            for name in (ORIGINAL_SRC, ORIGINAL_SRCSET, ORIGINAL_DATA_SRC, ORIGINAL_LOADING, REPLACED, INDEX):
                page.remove_attr(img, name)
            restored += 1

        for source in page.select(f"source[{ORIGINAL_SRCSET}]"):
            page.set_attr(source, "srcset", source[ORIGINAL_SRCSET])
            page.remove_attr(source, ORIGINAL_SRCSET)
        for element in page.select(f"[{VISIBLE}]"):
            page.remove_attr(element, VISIBLE)

        self._applied_keys.clear()
        self.gallery = None
        return restored


def _adds_image(node: Any) -> bool:
    if not isinstance(node, Tag):
        return False
    return node.name == "img" or node.find("img") is not None


class MutationWatch:
    """
    Bounded subscription to DOM additions.

    The host reports added nodes through ``notify``. Additions containing
    an ``<img>`` schedule one debounced trigger; the watch disposes itself
    after ``lifetime`` seconds or ``max_triggers`` triggers.
    """

    def __init__(
        self,
        on_trigger: Callable[[], Any],
        lifetime: float = 5.0,
        max_triggers: int = 3,
        debounce: float = 0.1,
        is_suppressed: Callable[[], bool] = lambda: False,
    ):
        self.on_trigger = on_trigger
        self.lifetime = lifetime
        self.max_triggers = max_triggers
        self.debounce = debounce
        self.is_suppressed = is_suppressed
        self.triggers = 0
        self.active = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Optional[asyncio.TimerHandle] = None
        self._expiry: Optional[asyncio.TimerHandle] = None

    def start(self) -> None:
        if self.active:
            return
        self._loop = asyncio.get_running_loop()
        self.active = True
        self._expiry = self._loop.call_later(self.lifetime, self.dispose)

    def notify(self, added_nodes: Iterable[Any]) -> bool:
        """Report added nodes. Returns True when a trigger was scheduled."""
        if not self.active or self._loop is None or self.is_suppressed():
            return False
        if not any(_adds_image(node) for node in added_nodes):
            return False
        if self._pending is not None:
            self._pending.cancel()
        self._pending = self._loop.call_later(self.debounce, self._fire)
        return True

    def _fire(self) -> None:
        self._pending = None
        if not self.active:
            return
        self.triggers += 1
        try:
            logger.debug("Re-applying variant after DOM mutation (%d)", self.triggers)
            self.on_trigger()
        finally:
            if self.triggers >= self.max_triggers:
                self.dispose()

    def dispose(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None
        logger.debug("Mutation watch disposed after %d triggers", self.triggers)
