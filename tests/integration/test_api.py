"""
Integration tests for the admin API.
"""

from datetime import timedelta

from httpx import AsyncClient

from sendqueue.constants import CampaignStatus
from sendqueue.types.job import utcnow


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")

        assert response.status_code == 200
        assert response.json()["alive"] is True

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")

        assert response.status_code == 200
        assert response.json()["ready"] is True

    async def test_metrics_endpoint(self, client: AsyncClient):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "send_queue_depth" in response.text


class TestCampaignEndpoints:
    """Tests for campaign send endpoints."""

    async def test_send_and_progress(
        self,
        client: AsyncClient,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(3)

        response = await client.post(f"/v1/campaigns/{campaign.id}/send")

        assert response.status_code == 202
        data = response.json()
        assert data["campaign_id"] == campaign.id
        assert data["queued"] == 3
        assert data["status"] == "sending"

        response = await client.get(f"/v1/campaigns/{campaign.id}/progress")

        assert response.status_code == 200
        progress = response.json()
        assert progress["queued_count"] == 3
        assert progress["total_count"] == 3
        assert progress["is_finished"] is False
        assert progress["completion_notice"] is None

    async def test_send_is_idempotent(
        self,
        client: AsyncClient,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(2)

        await client.post(f"/v1/campaigns/{campaign.id}/send")
        response = await client.post(f"/v1/campaigns/{campaign.id}/send")

        assert response.status_code == 202
        assert response.json()["queued"] == 0

        response = await client.get(f"/v1/campaigns/{campaign.id}")
        assert response.json()["queued_count"] == 2

    async def test_unknown_campaign(self, client: AsyncClient):
        response = await client.post("/v1/campaigns/missing/send")

        assert response.status_code == 404

        response = await client.get("/v1/campaigns/missing/progress")
        assert response.status_code == 404

    async def test_not_ready_campaign(
        self,
        client: AsyncClient,
        make_campaign,
        make_template,
    ):
        template = await make_template(subject_default=None)
        campaign = await make_campaign(template_id=template.id, subject=None)

        response = await client.post(f"/v1/campaigns/{campaign.id}/send")

        assert response.status_code == 400
        assert "Subject is required" in response.json()["detail"]

    async def test_schedule(
        self,
        client: AsyncClient,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(1)
        scheduled_at = (utcnow() + timedelta(hours=3)).replace(microsecond=0)

        response = await client.post(
            f"/v1/campaigns/{campaign.id}/schedule",
            json={"scheduled_at": scheduled_at.isoformat() + "Z"},
        )

        assert response.status_code == 202
        assert response.json()["status"] == "scheduled"

        response = await client.get(f"/v1/campaigns/{campaign.id}")
        data = response.json()
        assert data["status"] == "scheduled"
        assert data["scheduled_at"].startswith(scheduled_at.isoformat())

    async def test_pause_conflict(self, client: AsyncClient, make_campaign):
        campaign = await make_campaign(status=CampaignStatus.DRAFT)

        response = await client.post(f"/v1/campaigns/{campaign.id}/pause")

        assert response.status_code == 409

    async def test_pause_and_resume(self, client: AsyncClient, make_campaign):
        campaign = await make_campaign(status=CampaignStatus.SENDING)

        response = await client.post(f"/v1/campaigns/{campaign.id}/pause")
        assert response.status_code == 200
        assert response.json()["status"] == "paused"

        response = await client.post(f"/v1/campaigns/{campaign.id}/send")
        assert response.status_code == 409

        response = await client.post(f"/v1/campaigns/{campaign.id}/resume")
        assert response.status_code == 200
        assert response.json()["status"] == "sending"

    async def test_sandbox_without_allowlist(self, client: AsyncClient, make_campaign):
        campaign = await make_campaign()

        response = await client.post(f"/v1/campaigns/{campaign.id}/send-sandbox")

        assert response.status_code == 400

    async def test_errors_empty(self, client: AsyncClient, make_campaign):
        campaign = await make_campaign()

        response = await client.get(f"/v1/campaigns/{campaign.id}/errors?limit=5")

        assert response.status_code == 200
        assert response.json() == {"campaign_id": campaign.id, "errors": []}

    async def test_errors_limit_validation(self, client: AsyncClient, make_campaign):
        campaign = await make_campaign()

        response = await client.get(f"/v1/campaigns/{campaign.id}/errors?limit=0")

        assert response.status_code == 422


class TestSuppressionEndpoints:
    """Tests for suppression list endpoints."""

    async def test_suppression_lifecycle(self, client: AsyncClient):
        response = await client.post(
            "/v1/suppressions",
            json={"email": "Someone@Example.com", "reason": "unsubscribed"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["email"] == "someone@example.com"
        assert data["reason"] == "unsubscribed"
        assert data["source"] == "admin"

        response = await client.get("/v1/suppressions/SOMEONE@example.com")
        assert response.status_code == 200

        response = await client.delete("/v1/suppressions/someone@example.com")
        assert response.status_code == 204

        response = await client.get("/v1/suppressions/someone@example.com")
        assert response.status_code == 404

        response = await client.delete("/v1/suppressions/someone@example.com")
        assert response.status_code == 404

    async def test_suppression_is_idempotent(self, client: AsyncClient):
        payload = {"email": "bounce@example.com", "reason": "email_invalid"}

        first = await client.post("/v1/suppressions", json=payload)
        second = await client.post(
            "/v1/suppressions",
            json={"email": "bounce@example.com", "reason": "unsubscribed"},
        )

        assert first.status_code == 201
        assert second.status_code == 201
        assert second.json()["reason"] == "email_invalid"

    async def test_invalid_address(self, client: AsyncClient):
        response = await client.post("/v1/suppressions", json={"email": "nobody"})

        assert response.status_code == 422

    async def test_suppressed_address_is_not_enrolled(
        self,
        client: AsyncClient,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(2)
        await client.post("/v1/suppressions", json={"email": "sub-0@example.com"})

        response = await client.post(f"/v1/campaigns/{campaign.id}/send")

        assert response.json()["queued"] == 1
        assert response.json()["suppressed"] == 1
