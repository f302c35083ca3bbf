"""
Unit tests for the assignment HTTP client using httpx.MockTransport.
"""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from core.domain import Case
from storefront.assignment_client import AssignmentClient

pytestmark = pytest.mark.asyncio

BASE_URL = "https://ab.example.com/api/v1"


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _active_payload(**overrides):
    payload = {
        "active": True,
        "test_id": "test-1",
        "product_id": "gid://shopify/Product/1001",
        "case": "TEST",
        "images": ["https://cdn.shopify.com/b.jpg", "https://cdn.shopify.com/c.jpg"],
        "forced": False,
    }
    payload.update(overrides)
    return payload


class TestFetch:
    async def test_request_shape_and_parse(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_active_payload())

        async with _client(handler) as http:
            client = AssignmentClient(BASE_URL, client=http)
            assignment = await client.fetch("gid://shopify/Product/1001", "session_abc")

        assert assignment.case is Case.TEST
        assert assignment.images[0] == "https://cdn.shopify.com/b.jpg"
        request = seen[0]
        assert request.url.raw_path.startswith(b"/api/v1/variant/gid%3A%2F%2Fshopify%2FProduct%2F1001")
        assert request.url.params["session"] == "session_abc"
        assert request.headers["X-AB-Session"] == "session_abc"

    async def test_force_sent_as_case(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=_active_payload(forced=True))

        async with _client(handler) as http:
            assignment = await AssignmentClient(BASE_URL, client=http).fetch("1001", "s", force="b")

        assert seen[0].url.params["force"] == "TEST"
        assert assignment.forced is True

    async def test_retries_then_succeeds(self):
        responses = [httpx.Response(503), httpx.Response(200, json=_active_payload())]

        async with _client(lambda request: responses.pop(0)) as http:
            client = AssignmentClient(BASE_URL, client=http, retry_delay=0)
            assignment = await client.fetch("1001", "s")

        assert assignment is not None
        assert responses == []

    async def test_exhausted_attempts_return_none(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("down", request=request)

        with patch("storefront.assignment_client.asyncio.sleep", new=AsyncMock()) as sleep:
            async with _client(handler) as http:
                result = await AssignmentClient(BASE_URL, client=http).fetch("1001", "s")

        assert result is None
        assert len(calls) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [pytest.approx(0.1), pytest.approx(0.2)]

    @pytest.mark.parametrize(
        "payload",
        [
            {"active": False, "reason": "no_active_test"},
            _active_payload(images=[]),
            _active_payload(case="C"),
            _active_payload(test_id=None),
        ],
    )
    async def test_inactive_or_incomplete(self, payload):
        async with _client(lambda request: httpx.Response(200, json=payload)) as http:
            assert await AssignmentClient(BASE_URL, client=http).fetch("1001", "s") is None

    async def test_invalid_json(self):
        async with _client(lambda request: httpx.Response(200, content=b"<html>")) as http:
            client = AssignmentClient(BASE_URL, client=http, max_attempts=1)
            assert await client.fetch("1001", "s") is None

    @pytest.mark.parametrize("body", [["x"], "proxy error", 42, True])
    async def test_non_object_json_body(self, body):
        async with _client(lambda request: httpx.Response(200, json=body)) as http:
            client = AssignmentClient(BASE_URL, client=http, max_attempts=1)
            assert await client.fetch("1001", "s") is None

    async def test_close_keeps_injected_client(self):
        async with _client(lambda request: httpx.Response(200, json={})) as http:
            client = AssignmentClient(BASE_URL, client=http)
            await client.close()
            assert not http.is_closed
