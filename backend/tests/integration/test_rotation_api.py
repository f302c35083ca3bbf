"""
Integration tests for the rotation trigger, rotation state and test
lifecycle endpoints.
"""

import pytest
from httpx import AsyncClient

from infrastructure.config import settings

pytestmark = pytest.mark.asyncio

MISSING_TEST_ID = "00000000-0000-0000-0000-000000000000"


class TestRotationTriggerAuth:
    async def test_unconfigured_trigger(self, async_client: AsyncClient, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", None)
        monkeypatch.setattr(settings, "admin_api_key", None)

        response = await async_client.post("/api/v1/rotation/run")

        assert response.status_code == 503

    async def test_missing_token(self, async_client: AsyncClient, auth_settings):
        response = await async_client.post("/api/v1/rotation/run")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    async def test_wrong_token(self, async_client: AsyncClient, auth_settings):
        response = await async_client.post(
            "/api/v1/rotation/run", headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401

    async def test_admin_key_also_accepted(self, async_client: AsyncClient, admin_headers):
        response = await async_client.get("/api/v1/rotation/run", headers=admin_headers)

        assert response.status_code == 200


class TestRotationRun:
    async def test_rotates_due_tests(self, async_client: AsyncClient, cron_headers, overdue_test, live_test):
        overdue_id, live_id = overdue_test.id, live_test.id

        response = await async_client.post("/api/v1/rotation/run", headers=cron_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        summary = data["summary"]
        assert (summary["processed"], summary["successful"], summary["failed"]) == (1, 1, 0)
        result = summary["results"][0]
        assert result["test_id"] == overdue_id
        assert (result["from_case"], result["to_case"]) == ("BASE", "TEST")
        assert all(r["test_id"] != live_id for r in summary["results"])

    async def test_nothing_due(self, async_client: AsyncClient, cron_headers, live_test):
        response = await async_client.get("/api/v1/rotation/run", headers=cron_headers)

        assert response.json()["summary"]["processed"] == 0

    async def test_failure_reported_in_summary(self, async_client: AsyncClient, cron_headers, make_test):
        from datetime import UTC, datetime, timedelta

        await make_test(test_images=[], next_rotation=datetime.now(UTC) - timedelta(minutes=1))

        response = await async_client.post("/api/v1/rotation/run", headers=cron_headers)

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["failed"] == 1
        assert summary["results"][0]["success"] is False
        assert summary["results"][0]["error"]


class TestRotationState:
    async def test_state_after_rotation(self, async_client: AsyncClient, cron_headers, overdue_test):
        test_id = overdue_test.id
        await async_client.post("/api/v1/rotation/run", headers=cron_headers)

        response = await async_client.get("/api/v1/rotation/state/gid://shopify/Product/1001")

        data = response.json()
        assert data["test_id"] == test_id
        assert data["current_case"] == "TEST"
        assert data["status"] == "ACTIVE"
        assert data["next_rotation"] is not None

    async def test_no_test(self, async_client: AsyncClient):
        response = await async_client.get("/api/v1/rotation/state/1001")

        assert response.status_code == 200
        assert response.json()["test_id"] is None


class TestManualRotation:
    async def test_rotate_and_history(self, async_client: AsyncClient, admin_headers, live_test):
        test_id = live_test.id

        response = await async_client.post(
            f"/api/v1/rotation/tests/{test_id}/rotate", headers=admin_headers
        )
        history = await async_client.get(
            f"/api/v1/rotation/tests/{test_id}/history", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["to_case"] == "TEST"
        items = history.json()["items"]
        assert history.json()["total"] == 1
        assert items[0]["triggered_by"] == "manual"
        assert items[0]["actor"] == "admin"

    async def test_cron_token_not_enough(self, async_client: AsyncClient, cron_headers, live_test):
        response = await async_client.post(
            f"/api/v1/rotation/tests/{live_test.id}/rotate", headers=cron_headers
        )

        assert response.status_code == 401

    async def test_inactive_test_conflict(self, async_client: AsyncClient, admin_headers, make_test):
        test = await make_test(status="DRAFT")

        response = await async_client.post(
            f"/api/v1/rotation/tests/{test.id}/rotate", headers=admin_headers
        )

        assert response.status_code == 409

    async def test_unknown_test(self, async_client: AsyncClient, admin_headers):
        response = await async_client.post(
            f"/api/v1/rotation/tests/{MISSING_TEST_ID}/rotate", headers=admin_headers
        )

        assert response.status_code == 404


class TestLifecycle:
    async def test_full_lifecycle(self, async_client: AsyncClient, admin_headers, make_test):
        test = await make_test(status="DRAFT")
        base = f"/api/v1/rotation/tests/{test.id}"

        started = await async_client.post(f"{base}/start", headers=admin_headers)
        assert started.status_code == 200
        assert started.json()["status"] == "ACTIVE"
        assert started.json()["next_rotation"] is not None

        paused = await async_client.post(f"{base}/pause", headers=admin_headers)
        assert paused.json()["status"] == "PAUSED"
        assert paused.json()["next_rotation"] is None

        assert (await async_client.post(f"{base}/pause", headers=admin_headers)).status_code == 409

        resumed = await async_client.post(f"{base}/resume", headers=admin_headers)
        assert resumed.json()["status"] == "ACTIVE"

        completed = await async_client.post(f"{base}/complete", headers=admin_headers)
        assert completed.json()["status"] == "COMPLETED"

        assert (await async_client.post(f"{base}/start", headers=admin_headers)).status_code == 409

    async def test_start_requires_images(self, async_client: AsyncClient, admin_headers, make_test):
        test = await make_test(status="DRAFT", base_images=[])

        response = await async_client.post(
            f"/api/v1/rotation/tests/{test.id}/start", headers=admin_headers
        )

        assert response.status_code == 409

    async def test_unknown_operation(self, async_client: AsyncClient, admin_headers, live_test):
        response = await async_client.post(
            f"/api/v1/rotation/tests/{live_test.id}/explode", headers=admin_headers
        )

        assert response.status_code == 422

    async def test_read_test(self, async_client: AsyncClient, admin_headers, live_test):
        response = await async_client.get(
            f"/api/v1/rotation/tests/{live_test.id}", headers=admin_headers
        )

        assert response.status_code == 200
        assert response.json()["product_id"] == "gid://shopify/Product/1001"
        missing = await async_client.get(
            f"/api/v1/rotation/tests/{MISSING_TEST_ID}", headers=admin_headers
        )
        assert missing.status_code == 404

    async def test_malformed_test_id_is_404(self, async_client: AsyncClient, admin_headers):
        for path in ("not-a-uuid", "not-a-uuid/history", "not-a-uuid/rotate", "not-a-uuid/pause"):
            method = async_client.get if path in ("not-a-uuid", "not-a-uuid/history") else async_client.post
            response = await method(f"/api/v1/rotation/tests/{path}", headers=admin_headers)
            assert response.status_code == 404, path
