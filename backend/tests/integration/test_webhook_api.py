"""
Integration tests for the billing webhook and health endpoints.
"""

import pytest

from core.domain.events import SubscriptionRenewed

WEBHOOK_URL = "/api/v1/billing/webhook"


class TestWebhookEndpoint:
    """Tests for POST /billing/webhook."""

    @pytest.mark.asyncio
    async def test_renewal(self, async_client, group_subscription, make_event, sign, captured):
        event = make_event(
            "invoice.paid",
            {"id": "in_1", "subscription": group_subscription["id"], "billing_reason": "subscription_cycle"},
        )
        payload, header = sign(event)

        response = await async_client.post(WEBHOOK_URL, content=payload, headers={"Stripe-Signature": header})

        assert response.status_code == 200
        assert response.json() == {"message": "Webhook processed successfully."}
        assert [type(e) for e in captured] == [SubscriptionRenewed]

    @pytest.mark.asyncio
    async def test_invalid_signature(self, async_client, make_event, sign):
        payload, _ = sign(make_event("invoice.paid", {"id": "in_1"}))

        response = await async_client.post(
            WEBHOOK_URL, content=payload, headers={"Stripe-Signature": "t=1,v1=bad"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"

    @pytest.mark.asyncio
    async def test_missing_signature(self, async_client, make_event, sign):
        payload, _ = sign(make_event("invoice.paid", {"id": "in_1"}))

        response = await async_client.post(WEBHOOK_URL, content=payload)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unhandled_event(self, async_client, make_event, sign):
        payload, header = sign(make_event("customer.created", {"id": "cus_1"}))

        response = await async_client.post(WEBHOOK_URL, content=payload, headers={"Stripe-Signature": header})

        assert response.status_code == 400
        assert response.json() == {"message": "Unhandled webhook"}

    @pytest.mark.asyncio
    async def test_undeclared_tier_is_server_error(self, async_client, platform, make_event, sign):
        """Test that an undeclared tier fails with 500 so the platform redelivers."""
        customer = platform.add_customer("x@example.com")
        subscription = platform.add_subscription(
            customer["id"],
            {"tierId": "platinum", "subjectId": "owner_9", "groupId": "grp_9", "isUserSub": "false"},
            [],
        )
        payload, header = sign(
            make_event(
                "invoice.paid",
                {"id": "in_1", "subscription": subscription["id"], "billing_reason": "subscription_cycle"},
            )
        )

        response = await async_client.post(WEBHOOK_URL, content=payload, headers={"Stripe-Signature": header})

        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_billing_not_initialized(self, async_client, make_event, sign):
        from main import app

        app.state.billing = None
        payload, header = sign(make_event("invoice.paid", {"id": "in_1"}))

        response = await async_client.post(WEBHOOK_URL, content=payload, headers={"Stripe-Signature": header})

        assert response.status_code == 503


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_health(self, async_client, synced_manager):
        response = await async_client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["webhook_ready"] is True
        assert data["catalog"] == {
            "tiers": len(synced_manager.config.tiers),
            "addons": len(synced_manager.config.addons),
        }
