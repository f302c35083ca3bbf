"""
Unit tests for the storefront engine run, end to end against mocked
HTTP endpoints.
"""

import asyncio
import json

import httpx
import pytest

from storefront import GalleryEngine, StorefrontPage
from storefront.assignment_client import AssignmentClient
from storefront.session import ACTIVE_TEST_KEY
from storefront.tracker import EventSender

pytestmark = pytest.mark.asyncio

BASE_URL = "https://ab.example.com/api/v1"
CDN = "https://cdn.shopify.com/s/files/1"
ASSIGNED = [f"{CDN}/b.jpg", f"{CDN}/c.jpg"]


class FakeBackend:
    """Answers variant lookups and records tracked events."""

    def __init__(self, payload=None):
        self.payload = payload if payload is not None else {
            "active": True,
            "test_id": "test-1",
            "product_id": "gid://shopify/Product/1001",
            "case": "TEST",
            "images": ASSIGNED,
            "forced": False,
        }
        self.variant_requests = []
        self.events = []

    def __call__(self, request):
        if request.url.path.startswith("/api/v1/variant/"):
            self.variant_requests.append(request)
            return httpx.Response(200, json=self.payload)
        if request.url.path == "/api/v1/track":
            self.events.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
async def http(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        yield client


def _engine(page, http, local=None, session=None, **kwargs):
    return GalleryEngine(
        page,
        AssignmentClient(BASE_URL, client=http, retry_delay=0),
        EventSender(BASE_URL, client=http),
        local_storage=local if local is not None else {},
        session_storage=session if session is not None else {},
        **kwargs,
    )


class TestEngineRun:
    async def test_applies_variant_and_tracks_impression(self, product_page, http, backend):
        session = {}
        engine = _engine(product_page, http, session=session)

        outcome = await engine.run()
        await engine.close()

        assert outcome.applied is True
        assert outcome.theme == "dawn"
        assert outcome.product_id == "gid://shopify/Product/1001"
        imgs = product_page.select(".product__media-list img")
        assert [img["src"] for img in imgs[:2]] == ASSIGNED
        assert product_page.is_hidden(product_page.select(".product__media-item")[2])

        assert outcome.impression_sent is True
        assert backend.events[0]["event_type"] == "IMPRESSION"
        assert backend.events[0]["case"] == "TEST"
        assert backend.events[0]["session_id"] == outcome.session_id
        assert json.loads(session[ACTIVE_TEST_KEY])["testId"] == "test-1"

    async def test_session_reused_across_page_views(self, dawn_html, http, backend):
        local = {}
        first = await _engine(StorefrontPage(dawn_html, url="https://s.com/products/a"), http, local=local).run()
        second = await _engine(StorefrontPage(dawn_html, url="https://s.com/products/a"), http, local=local).run()

        assert first.session_id == second.session_id
        assert [r.url.params["session"] for r in backend.variant_requests] == [first.session_id] * 2

    async def test_force_query_parameter(self, dawn_html, http, backend):
        page = StorefrontPage(dawn_html, url="https://s.com/products/a?variant=b")

        await _engine(page, http).run()

        assert backend.variant_requests[0].url.params["force"] == "TEST"

    async def test_no_active_test_leaves_page_alone(self, product_page, http, backend):
        backend.payload = {"active": False, "reason": "no_active_test"}
        session = {ACTIVE_TEST_KEY: "stale"}

        outcome = await _engine(product_page, http, session=session).run()

        assert outcome.status == "no_test"
        assert product_page.writes == 0
        assert ACTIVE_TEST_KEY not in session
        assert backend.events == []

    async def test_non_object_assignment_body_leaves_page_alone(self, product_page, http, backend):
        backend.payload = ["x"]

        outcome = await _engine(product_page, http).run()

        assert outcome.status == "no_test"
        assert len(backend.variant_requests) == 3
        assert product_page.writes == 0

    async def test_not_a_product_page(self, dawn_html, http, backend):
        outcome = await _engine(StorefrontPage(dawn_html, url="https://s.com/collections/all"), http).run()

        assert outcome.status == "not_product_page"
        assert backend.variant_requests == []

    async def test_no_product_id(self, http):
        page = StorefrontPage("<p></p>", url="https://s.com/products/")
        assert (await _engine(page, http).run()).status == "no_product"

    async def test_no_gallery(self, http, backend):
        page = StorefrontPage("<p>sold out</p>", url="https://s.com/products/a")

        outcome = await _engine(page, http).run()

        assert outcome.status == "not_applied"
        assert outcome.result.skipped == "no_gallery"
        assert backend.events == []

    async def test_checkout_page_reports_purchase(self, http, backend):
        session = {
            ACTIVE_TEST_KEY: json.dumps(
                {"testId": "test-1", "productId": "gid://shopify/Product/1001", "case": "TEST", "images": ASSIGNED}
            )
        }
        page = StorefrontPage(
            "",
            url="https://s.com/checkouts/c/1/thank_you",
            runtime={"Shopify": {"checkout": {"order_id": "o-9", "line_items": [
                {"product_id": "1001", "quantity": 1, "price": 30}
            ]}}},
        )

        outcome = await _engine(page, http, session=session).run()

        assert outcome.status == "checkout"
        assert outcome.purchases_sent == 1
        assert backend.events[0]["order_id"] == "o-9"


class TestLateImages:
    async def test_mutation_reapplies_new_images(self, product_page, http):
        engine = _engine(product_page, http, watch_debounce=0.01)
        await engine.run()

        gallery = product_page.select_one(".product__media-list")
        late = StorefrontPage(
            '<li class="product__media-item"><img src="https://cdn.shopify.com/s/files/1/late_800x800.jpg" width="800"></li>'
        ).soup.contents[0]
        gallery.append(late)

        assert engine.on_mutation([late]) is True
        await asyncio.sleep(0.05)
        await engine.close()

        assert product_page.is_hidden(late)
        assert engine.watch.triggers == 1

    async def test_rebinds_new_cart_buttons(self, product_page, http):
        engine = _engine(product_page, http)
        await engine.run()

        button = StorefrontPage('<button class="add-to-cart">Buy</button>').soup.contents[0]
        product_page.soup.body.append(button)
        engine.on_mutation([button])
        await engine.close()

        assert button["data-ab-atc-bound"] == "true"
