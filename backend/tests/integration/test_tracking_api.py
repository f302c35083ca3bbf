"""
Integration tests for event tracking and checkout attribution.
"""

import pytest
from httpx import AsyncClient

pytestmark = pytest.mark.asyncio


def _event(test_id, **overrides):
    payload = {
        "test_id": test_id,
        "session_id": "session_track",
        "event_type": "IMPRESSION",
        "product_id": "1001",
        "case": "TEST",
    }
    payload.update(overrides)
    return payload


class TestTrackEvent:
    async def test_records_event(self, async_client: AsyncClient, live_test):
        response = await async_client.post("/api/v1/track", json=_event(live_test.id))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["test_id"] == live_test.id
        assert data["active_case"] == "TEST"
        assert data["duplicate"] is False

    async def test_duplicate_impression(self, async_client: AsyncClient, live_test):
        await async_client.post("/api/v1/track", json=_event(live_test.id))
        response = await async_client.post("/api/v1/track", json=_event(live_test.id))

        assert response.status_code == 200
        assert response.json()["duplicate"] is True

    async def test_unknown_test_is_rejected(self, async_client: AsyncClient):
        response = await async_client.post(
            "/api/v1/track", json=_event("00000000-0000-0000-0000-000000000000")
        )

        assert response.status_code == 400
        assert "Unknown test" in response.json()["detail"]

    async def test_product_mismatch_is_rejected(self, async_client: AsyncClient, live_test):
        response = await async_client.post("/api/v1/track", json=_event(live_test.id, product_id="2002"))

        assert response.status_code == 400

    @pytest.mark.parametrize(
        "overrides",
        [
            {"event_type": "CLICK"},
            {"revenue": -5},
            {"quantity": 0},
            {"session_id": ""},
            {"case": "C"},
        ],
    )
    async def test_schema_violations(self, async_client: AsyncClient, live_test, overrides):
        response = await async_client.post("/api/v1/track", json=_event(live_test.id, **overrides))

        assert response.status_code == 422

    async def test_oversized_body(self, async_client: AsyncClient, live_test):
        response = await async_client.post(
            "/api/v1/track",
            content=b"{" + b" " * (1024 * 1024 + 1) + b"}",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 413


class TestTrackCheckout:
    async def test_attributes_assigned_session(self, async_client: AsyncClient, live_test):
        variant = await async_client.get("/api/v1/variant/1001", params={"session": "session_buyer"})
        case = variant.json()["case"]
        body = {
            "session_id": "session_buyer",
            "order_id": "order-1",
            "line_items": [
                {"product_id": "1001", "variant_id": "11", "quantity": 2, "price": 15.0},
                {"product_id": "2002", "quantity": 1, "price": 40.0},
            ],
        }

        response = await async_client.post("/api/v1/track/checkout", json=body)
        replay = await async_client.post("/api/v1/track/checkout", json=body)

        assert response.status_code == 200
        data = response.json()
        assert data["attributed"] == 1
        assert data["events"][0]["active_case"] == case
        assert replay.json()["events"][0]["duplicate"] is True

    async def test_unassigned_session(self, async_client: AsyncClient, live_test):
        response = await async_client.post(
            "/api/v1/track/checkout",
            json={"session_id": "nobody", "order_id": "o", "line_items": [{"product_id": "1001"}]},
        )

        assert response.json() == {"attributed": 0, "events": []}
