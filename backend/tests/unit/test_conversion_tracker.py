"""
Unit tests for event delivery and conversion tracking.
"""

import json

import httpx
import pytest

from core.domain import Case
from storefront import StorefrontPage
from storefront.session import ActiveTest, ActiveTestCache, SessionManager
from storefront.tracker import (
    ATC_KEY_PREFIX,
    BOUND_ATTR,
    ConversionTracker,
    EventSender,
)

pytestmark = pytest.mark.asyncio

BASE_URL = "https://ab.example.com/api/v1"
PRODUCT = "gid://shopify/Product/1001"


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def posted():
    return []


@pytest.fixture
def track_status():
    """Mutable status code returned by the fake event endpoint."""
    return {"code": 200}


@pytest.fixture
async def tracking_http(posted, track_status):
    def handler(request):
        posted.append(json.loads(request.content))
        return httpx.Response(track_status["code"], json={"success": True})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture
def session_storage():
    storage = {}
    ActiveTestCache(storage).set(ActiveTest("test-1", PRODUCT, Case.TEST, ["b.jpg"]))
    return storage


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(product_page, session_storage, tracking_http, clock):
    sender = EventSender(BASE_URL, client=tracking_http)
    sessions = SessionManager({})
    return ConversionTracker(product_page, sessions, session_storage, sender, clock=clock)


class TestEventSender:
    async def test_beacon_preferred(self, tracking_http, posted):
        beacons = []
        sender = EventSender(
            BASE_URL,
            client=tracking_http,
            beacon=lambda url, body: beacons.append((url, body)) or True,
        )

        assert await sender.send({"event_type": "ADD_TO_CART"}, prefer_beacon=True) is True
        assert beacons[0][0] == f"{BASE_URL}/track"
        assert posted == []

    async def test_beacon_failure_falls_back_to_post(self, tracking_http, posted):
        def broken_beacon(url, body):
            raise RuntimeError("no beacon")

        sender = EventSender(BASE_URL, client=tracking_http, beacon=broken_beacon)

        assert await sender.send({"event_type": "ADD_TO_CART"}, prefer_beacon=True) is True
        assert posted == [{"event_type": "ADD_TO_CART"}]

    async def test_rejected_and_network_errors(self, tracking_http, track_status):
        track_status["code"] = 400
        assert await EventSender(BASE_URL, client=tracking_http).send({}) is False

        def down(request):
            raise httpx.ConnectError("down", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(down)) as http:
            assert await EventSender(BASE_URL, client=http).send({}) is False


class TestImpressions:
    async def test_sent_once_per_case(self, tracker, posted, session_storage):
        assert await tracker.track_impression() is True
        assert await tracker.track_impression() is False

        assert posted[0]["event_type"] == "IMPRESSION"
        assert posted[0]["case"] == "TEST"
        assert posted[0]["session_id"].startswith("session_")
        assert session_storage["ab_test_impression_test-1"] == "TEST"

    async def test_case_change_sends_again(self, tracker, posted, session_storage):
        await tracker.track_impression()
        ActiveTestCache(session_storage).set(ActiveTest("test-1", PRODUCT, Case.BASE, ["a.jpg"]))

        assert await tracker.track_impression() is True
        assert [p["case"] for p in posted] == ["TEST", "BASE"]

    async def test_nothing_without_active_test(self, tracker, posted, session_storage):
        session_storage.clear()
        assert await tracker.track_impression() is False
        assert posted == []


class TestListeners:
    async def test_binds_forms_and_buttons_once(self, tracker, product_page):
        assert tracker.bind_listeners() == 2
        assert tracker.bind_listeners() == 0
        assert product_page.select_one("form")[BOUND_ATTR] == "true"

    async def test_click_inside_button_counts(self, tracker, product_page, posted):
        tracker.bind_listeners()
        span = product_page.select_one("button span")

        assert await tracker.handle_dom_event(span, "click") is True
        assert posted[0]["event_type"] == "ADD_TO_CART"
        assert posted[0]["source"] == "listener"

    async def test_submit_and_throttle(self, tracker, product_page, posted, clock):
        tracker.bind_listeners()
        form = product_page.select_one("form")

        assert await tracker.handle_dom_event(form, "submit") is True
        clock.now += 0.2
        assert await tracker.record_listener_add_to_cart() is False
        clock.now += 0.5
        assert await tracker.record_listener_add_to_cart() is True
        assert len(posted) == 2

    async def test_unbound_element_ignored(self, tracker, product_page):
        assert await tracker.handle_dom_event(product_page.select_one("img"), "click") is False


class TestFallbackHook:
    async def test_cart_call_detection(self, tracker):
        assert tracker.is_cart_call(httpx.URL("https://shop.com/cart/add.js"))
        assert tracker.is_cart_call(httpx.URL("https://shop.com/cart/update.js"))
        assert not tracker.is_cart_call(httpx.URL("https://shop.com/cart.js"))
        assert not tracker.is_cart_call(httpx.URL(f"{BASE_URL}/track"))

    async def test_hook_records_once(self, tracker, posted, session_storage):
        def shop(request):
            return httpx.Response(200, json={"items": []})

        async with httpx.AsyncClient(transport=httpx.MockTransport(shop)) as host:
            tracker.install_fallback(host)
            tracker.install_fallback(host)
            await host.post("https://shop.com/cart/add.js", json={"id": 1})
            await tracker.drain()
            await host.post("https://shop.com/cart/add.js", json={"id": 1})
            await tracker.drain()

        assert [p["source"] for p in posted] == ["fallback"]
        assert session_storage[f"{ATC_KEY_PREFIX}test-1_TEST"] == "true"

    async def test_failed_cart_call_ignored(self, tracker, posted):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(422))) as host:
            tracker.install_fallback(host)
            await host.post("https://shop.com/cart/add.js")
            await tracker.drain()

        assert posted == []

    async def test_flag_cleared_when_delivery_fails(self, tracker, track_status, session_storage):
        track_status["code"] = 500

        assert await tracker.record_fallback_add_to_cart() is False
        assert f"{ATC_KEY_PREFIX}test-1_TEST" not in session_storage

        track_status["code"] = 200
        assert await tracker.record_fallback_add_to_cart() is True

    async def test_uninstall_removes_hook(self, tracker, posted):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as host:
            tracker.install_fallback(host)
            tracker.uninstall()
            await host.post("https://shop.com/cart/add.js")
            await tracker.drain()

            assert host.event_hooks["response"] == []
        assert posted == []


class TestPurchases:
    LINES = [
        {"product_id": "1001", "variant_id": "11", "quantity": 2, "price": "12.50"},
        {"product_id": "2002", "quantity": 1, "price": 99},
    ]

    async def test_one_event_per_tested_line(self, tracker, posted):
        assert await tracker.track_purchase("order-1", self.LINES) == 1

        event = posted[0]
        assert event["event_type"] == "PURCHASE"
        assert event["revenue"] == 25.0
        assert event["quantity"] == 2
        assert event["variant_id"] == "11"
        assert event["source"] == "pixel"

    async def test_order_sent_once(self, tracker, posted):
        await tracker.track_purchase("order-1", self.LINES)
        assert await tracker.track_purchase("order-1", self.LINES) == 0
        assert len(posted) == 1

    async def test_thank_you_page(self, session_storage, tracking_http, posted):
        page = StorefrontPage(
            "",
            url="https://shop.com/checkouts/c/abc/thank_you",
            runtime={"Shopify": {"checkout": {"order_id": 77, "line_items": self.LINES}}},
        )
        tracker = ConversionTracker(
            page, SessionManager({}), session_storage, EventSender(BASE_URL, client=tracking_http)
        )

        assert await tracker.track_checkout_page() == 1
        assert posted[0]["order_id"] == "77"

    async def test_not_a_thank_you_page(self, tracker):
        assert await tracker.track_checkout_page() == 0
