"""
Storefront engine orchestration.

One ``GalleryEngine`` serves one page view: product detection, session,
assignment, gallery replacement, then tracking. Any step that comes up
empty ends the run quietly and leaves the page as the theme rendered it.
"""

import logging
from collections.abc import MutableMapping
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import httpx

from .applier import ApplyResult, MutationWatch, VariantApplier
from .assignment_client import AssignmentClient, VariantAssignment
from .page import StorefrontPage
from .product import detect_product_id
from .session import ActiveTest, ActiveTestCache, SessionManager
from .themes import ThemeProfile, detect_theme
from .tracker import ConversionTracker, EventSender

logger = logging.getLogger(__name__)

# Query parameter forcing a case for manual checks (?variant=a / ?variant=b)
FORCE_PARAM = "variant"


@dataclass
class EngineOutcome:
    status: str
    product_id: Optional[str] = None
    session_id: Optional[str] = None
    assignment: Optional[VariantAssignment] = None
    theme: Optional[str] = None
    result: Optional[ApplyResult] = None
    impression_sent: bool = False
    purchases_sent: int = 0

    @property
    def applied(self) -> bool:
        return self.status == "applied"


class GalleryEngine:
    """Runs the experiment on one storefront page view."""

    def __init__(
        self,
        page: StorefrontPage,
        assignments: AssignmentClient,
        sender: EventSender,
        local_storage: MutableMapping,
        session_storage: MutableMapping,
        host_client: Optional[httpx.AsyncClient] = None,
        watch_lifetime: float = 5.0,
        watch_max_triggers: int = 3,
        watch_debounce: float = 0.1,
    ):
        self.page = page
        self.assignments = assignments
        self.sessions = SessionManager(local_storage)
        self.active_tests = ActiveTestCache(session_storage)
        self.tracker = ConversionTracker(page, self.sessions, session_storage, sender)
        self.host_client = host_client
        self.profile: Optional[ThemeProfile] = None
        self.applier: Optional[VariantApplier] = None
        self.watch: Optional[MutationWatch] = None
        self._watch_options = {
            "lifetime": watch_lifetime,
            "max_triggers": watch_max_triggers,
            "debounce": watch_debounce,
        }

    def _forced_case(self) -> Optional[str]:
        value = (self.page.query_param(FORCE_PARAM) or "").strip().lower()
        return value if value in ("a", "b") else None

    async def run(self) -> EngineOutcome:
        if self.page.is_thank_you_page:
            sent = await self.tracker.track_checkout_page()
            return EngineOutcome(status="checkout", purchases_sent=sent)

        if not self.page.is_product_page:
            return EngineOutcome(status="not_product_page")

        product_id = detect_product_id(self.page)
        if product_id is None:
            return EngineOutcome(status="no_product")

        session_id = self.sessions.get_or_create()
        assignment = await self.assignments.fetch(
            product_id, session_id, force=self._forced_case()
        )
        if assignment is None:
            self.active_tests.clear()
            return EngineOutcome(status="no_test", product_id=product_id, session_id=session_id)

        self.profile = detect_theme(self.page)
        self.applier = VariantApplier(self.page, self.profile)
        result = self.applier.apply(assignment.images)
        outcome = EngineOutcome(
            status="applied" if result.applied else "not_applied",
            product_id=product_id,
            session_id=session_id,
            assignment=assignment,
            theme=self.profile.key if self.profile else None,
            result=result,
        )
        if not result.applied:
            self.active_tests.clear()
            logger.debug("Variant not applied on %s (%s)", product_id, result.skipped)
            return outcome

        self.active_tests.set(
            ActiveTest(
                test_id=assignment.test_id,
                product_id=assignment.product_id,
                case=assignment.case,
                images=assignment.images,
            )
        )
        self._start_watch(assignment.images)
        self.tracker.bind_listeners()
        if self.host_client is not None:
            self.tracker.install_fallback(self.host_client)
        outcome.impression_sent = await self.tracker.track_impression()

        logger.info(
            "Applied %s for test %s on %s (%d images)",
            assignment.case.value,
            assignment.test_id,
            product_id,
            len(assignment.images),
        )
        return outcome

    def _start_watch(self, images: list[str]) -> None:
        applier = self.applier
        self.watch = MutationWatch(
            on_trigger=lambda: applier.apply(images, force=True),
            is_suppressed=lambda: applier.is_applying,
            **self._watch_options,
        )
        self.watch.start()

    def on_mutation(self, added_nodes: Iterable[Any]) -> bool:
        """
        Host callback for DOM additions.

        Re-binds tracking to new cart elements and schedules a re-apply
        when images were added.
        """
        nodes = list(added_nodes)
        if self.active_tests.get() is not None:
            self.tracker.bind_listeners()
        if self.watch is None:
            return False
        return self.watch.notify(nodes)

    async def close(self) -> None:
        if self.watch is not None:
            self.watch.dispose()
        self.tracker.uninstall()
        await self.tracker.drain()
