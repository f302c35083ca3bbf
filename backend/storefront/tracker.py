"""
Conversion tracking.

Impressions, add-to-carts and purchases for the active test all go
through ``EventSender``. Add-to-carts arrive two ways: explicit listeners
bound to cart forms and buttons (throttled), and a response hook on the
host's httpx client that notices successful cart calls (deduplicated
per test and case for the session).
"""

import asyncio
import json
import logging
import re
import time
from collections.abc import MutableMapping
from typing import Any, Callable, Iterable, Mapping, Optional

import httpx
from bs4 import Tag

from core.domain import EventSource, EventType, normalize_product_id

from .page import StorefrontPage
from .session import ActiveTest, ActiveTestCache, SessionManager

logger = logging.getLogger(__name__)

ADD_TO_CART_SELECTORS = (
    'button[name="add"]',
    "button[data-add-to-cart]",
    'button[data-action="add-to-cart"]',
    "[data-add-to-cart]",
    ".add-to-cart",
    ".add-to-cart-button",
    ".product-form__submit",
    ".product-form__cart-submit",
    "#AddToCart",
    "#ProductSubmitButton",
)
CART_FORM_SELECTOR = 'form[action*="/cart/add"]'
BOUND_ATTR = "data-ab-atc-bound"

CART_ENDPOINT = re.compile(r"/cart/(add|update)")
LISTENER_THROTTLE = 0.5  # seconds

IMPRESSION_KEY_PREFIX = "ab_test_impression_"
ATC_KEY_PREFIX = "ab_test_atc_sent_"
ORDER_KEY_PREFIX = "ab_test_order_"

Beacon = Callable[[str, bytes], bool]


class EventSender:
    """
    Delivers tracking payloads to the event endpoint.

    With ``prefer_beacon`` the host's beacon transport is tried first,
    since it survives page navigation; a POST is the fallback. Failures
    are logged and reported as False, never retried.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        beacon: Optional[Beacon] = None,
        timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.beacon = beacon
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def track_url(self) -> str:
        return f"{self.base_url}/track"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Connection": "keep-alive"},
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, payload: Mapping[str, Any], prefer_beacon: bool = False) -> bool:
        body = json.dumps(payload).encode()

        if prefer_beacon and self.beacon is not None:
            try:
                if self.beacon(self.track_url, body):
                    return True
            except Exception as e:
                logger.debug("Beacon failed, falling back to POST: %s", e)

        try:
            response = await self._get_client().post(
                self.track_url,
                content=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning("Tracking %s failed: %s", payload.get("event_type"), e)
            return False

        if not response.is_success:
            logger.warning(
                "Tracking %s rejected (%d): %s",
                payload.get("event_type"),
                response.status_code,
                response.text[:200],
            )
            return False
        return True


class ConversionTracker:
    """Reports events for the test currently cached as active."""

    def __init__(
        self,
        page: StorefrontPage,
        sessions: SessionManager,
        session_storage: MutableMapping,
        sender: EventSender,
        clock: Callable[[], float] = time.monotonic,
        throttle: float = LISTENER_THROTTLE,
    ):
        self.page = page
        self.sessions = sessions
        self.storage = session_storage
        self.active_tests = ActiveTestCache(session_storage)
        self.sender = sender
        self.clock = clock
        self.throttle = throttle
        self._last_listener_send: Optional[float] = None
        self._clients: list[httpx.AsyncClient] = []
        self._pending: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _payload(self, active: ActiveTest, event_type: EventType, **extra) -> dict:
        payload = {
            "test_id": active.test_id,
            "session_id": self.sessions.get_or_create(),
            "event_type": event_type.value,
            "product_id": active.product_id,
            "case": active.case.value,
        }
        payload.update({key: value for key, value in extra.items() if value is not None})
        return payload

    async def _send(
        self, event_type: EventType, prefer_beacon: bool = False, **extra
    ) -> bool:
        active = self.active_tests.get()
        if active is None:
            logger.debug("No active test; %s not sent", event_type.value)
            return False
        payload = self._payload(active, event_type, **extra)
        return await self.sender.send(payload, prefer_beacon=prefer_beacon)

    # ------------------------------------------------------------------
    # Impressions
    # ------------------------------------------------------------------

    async def track_impression(self) -> bool:
        """Send one IMPRESSION per test and case for this session."""
        active = self.active_tests.get()
        if active is None:
            return False
        key = f"{IMPRESSION_KEY_PREFIX}{active.test_id}"
        if self.storage.get(key) == active.case.value:
            return False
        sent = await self._send(EventType.IMPRESSION)
        if sent:
            self.storage[key] = active.case.value
        return sent

    # ------------------------------------------------------------------
    # Explicit listeners
    # ------------------------------------------------------------------

    def bind_listeners(self) -> int:
        """Mark unbound cart forms and buttons. Returns newly bound elements."""
        bound = 0
        for selector in (CART_FORM_SELECTOR, ", ".join(ADD_TO_CART_SELECTORS)):
            for element in self.page.select(selector):
                if element.get(BOUND_ATTR) == "true":
                    continue
                self.page.set_attr(element, BOUND_ATTR, "true")
                bound += 1
        if bound:
            logger.debug("Bound add-to-cart tracking to %d elements", bound)
        return bound

    async def handle_dom_event(self, element: Tag, event: str) -> bool:
        """
        Entry point for host DOM events.

        ``submit`` on a bound form and ``click`` on (or inside) a bound
        button count as an add-to-cart.
        """
        target: Optional[Tag] = element
        while target is not None and target.get(BOUND_ATTR) != "true":
            target = target.parent if isinstance(target.parent, Tag) else None
        if target is None:
            return False

        if event == "submit" and target.name == "form":
            return await self.record_listener_add_to_cart("form-submit")
        if event == "click" and target.name != "form":
            return await self.record_listener_add_to_cart("button-click")
        return False

    async def record_listener_add_to_cart(self, trigger: str = "listener") -> bool:
        now = self.clock()
        if self._last_listener_send is not None and now - self._last_listener_send < self.throttle:
            logger.debug("Add to cart from %s throttled", trigger)
            return False
        self._last_listener_send = now
        return await self._send(
            EventType.ADD_TO_CART,
            prefer_beacon=True,
            source=EventSource.LISTENER.value,
        )

    # ------------------------------------------------------------------
    # Network fallback
    # ------------------------------------------------------------------

    def install_fallback(self, client: httpx.AsyncClient) -> None:
        """Watch *client*'s responses for successful cart calls."""
        if any(existing is client for existing in self._clients):
            return
        hooks = client.event_hooks
        hooks["response"] = [*hooks.get("response", []), self._on_response]
        client.event_hooks = hooks
        self._clients.append(client)

    def uninstall(self) -> None:
        for client in self._clients:
            hooks = client.event_hooks
            hooks["response"] = [h for h in hooks.get("response", []) if h != self._on_response]
            client.event_hooks = hooks
        self._clients.clear()

    def is_cart_call(self, url: httpx.URL) -> bool:
        if str(url).startswith(self.sender.track_url):
            return False
        return CART_ENDPOINT.search(url.path) is not None

    async def _on_response(self, response: httpx.Response) -> None:
        if not response.is_success or not self.is_cart_call(response.request.url):
            return
        task = asyncio.create_task(self.record_fallback_add_to_cart())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def record_fallback_add_to_cart(self) -> bool:
        active = self.active_tests.get()
        if active is None:
            return False
        key = f"{ATC_KEY_PREFIX}{active.test_id}_{active.case.value}"
        if self.storage.get(key) == "true":
            logger.debug("Fallback add to cart already sent for test %s", active.test_id)
            return False

        self.storage[key] = "true"
        sent = await self._send(
            EventType.ADD_TO_CART,
            prefer_beacon=True,
            source=EventSource.FALLBACK.value,
        )
        if not sent:
            # Let a later cart call try again
            self.storage.pop(key, None)
        return sent

    async def drain(self) -> None:
        """Wait for fallback sends scheduled by the response hook."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def track_purchase(self, order_id: str, line_items: Iterable[Mapping[str, Any]]) -> int:
        """
        Send one PURCHASE per line item of the tested product.

        Each order is reported once per session. Returns events sent.
        """
        active = self.active_tests.get()
        if active is None or not order_id:
            return 0
        order_key = f"{ORDER_KEY_PREFIX}{order_id}"
        if self.storage.get(order_key):
            return 0

        tested_product = normalize_product_id(active.product_id)
        sent = 0
        for line in line_items:
            if normalize_product_id(str(line.get("product_id") or "")) != tested_product:
                continue
            try:
                quantity = max(1, int(line.get("quantity") or 1))
                price = float(line.get("price") or 0)
            except (TypeError, ValueError):
                logger.debug("Skipping malformed line item in order %s", order_id)
                continue
            variant_id = line.get("variant_id")
            if await self._send(
                EventType.PURCHASE,
                source=EventSource.PIXEL.value,
                order_id=str(order_id),
                variant_id=str(variant_id) if variant_id else None,
                quantity=quantity,
                revenue=round(price * quantity, 2),
            ):
                sent += 1

        if sent:
            self.storage[order_key] = "true"
        return sent

    async def track_checkout_page(self) -> int:
        """Report the order shown on a thank-you page, if the runtime exposes it."""
        if not self.page.is_thank_you_page:
            return 0
        checkout = self.page.runtime_value("Shopify", "checkout")
        if not isinstance(checkout, Mapping):
            logger.debug("Thank-you page without checkout data")
            return 0
        order_id = checkout.get("order_id") or checkout.get("id")
        return await self.track_purchase(str(order_id or ""), checkout.get("line_items") or [])
