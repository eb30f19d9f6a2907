"""
HTTP-level tests: routing, error mapping and webhook signature handling.
"""

import json
import pytest
import stripe
from fastapi.testclient import TestClient

from subscription_lifecycle.api import webhooks
from subscription_lifecycle.core.database import get_db
from subscription_lifecycle.core.exceptions import UnresolvedWebhookEventError
from subscription_lifecycle.main import app
from subscription_lifecycle.models.subscription import SubscriptionTier
from subscription_lifecycle.services.perk_usage_service import PerkUsageService

API = "/api/v1"


@pytest.fixture
def client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    # No context manager: the lifespan (scheduler, create_all) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPlansAndSubscriptions:

    def test_list_plans(self, client):
        response = client.get(f"{API}/plans")

        assert response.status_code == 200
        assert [plan["tier"] for plan in response.json()] == ["STARTER", "HOMECARE", "PRIORITY"]

    def test_get_subscription_not_found(self, client):
        response = client.get(f"{API}/subscribers/nobody/subscription")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_register_subscriber(self, client):
        response = client.post(f"{API}/subscribers", json={"email": "Owner@Example.com", "full_name": "Owner"})

        assert response.status_code == 201
        assert response.json()["email"] == "owner@example.com"

    def test_create_subscription_rejects_unknown_tier_in_body(self, client, make_subscriber):
        subscriber = make_subscriber()

        response = client.post(
            f"{API}/subscribers/{subscriber.id}/subscription",
            json={"tier": "GOLD", "billing_period": "MONTHLY"}
        )

        assert response.status_code == 422


class TestPlanChangeErrors:

    def test_blocked_downgrade_lists_restrictions(self, client, db_session, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.PRIORITY)
        PerkUsageService(db_session).track_perk_usage(subscription.subscriber_id, "emergency_service")

        response = client.post(
            f"{API}/subscriptions/{subscription.subscriber_id}/plan-change",
            json={"new_tier": "STARTER"}
        )

        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "downgrade_blocked"
        assert body["restrictions"]
        assert body["detail"].startswith("Cannot downgrade")

    def test_same_tier_conflict(self, client, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)

        response = client.post(
            f"{API}/subscriptions/{subscription.subscriber_id}/plan-change",
            json={"new_tier": "HOMECARE"}
        )

        assert response.status_code == 409
        assert response.json()["code"] == "no_op"

    def test_unknown_tier(self, client, make_subscription):
        subscription = make_subscription()

        response = client.get(
            f"{API}/subscriptions/{subscription.subscriber_id}/plan-change/preview",
            params={"new_tier": "GOLD"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_tier"

    def test_preview(self, client, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.STARTER)

        response = client.get(
            f"{API}/subscriptions/{subscription.subscriber_id}/plan-change/preview",
            params={"new_tier": "PRIORITY", "billing_cycle": "MONTHLY"}
        )

        assert response.status_code == 200
        assert response.json()["change_type"] == "upgrade"


class TestPerkRoutes:

    def test_use_perk_then_check(self, client, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)

        used = client.post(
            f"{API}/subscribers/{subscription.subscriber_id}/perks/discount/use",
            json={"amount": "20.00"}
        )
        check = client.get(f"{API}/subscribers/{subscription.subscriber_id}/perks/discount")

        assert used.status_code == 200
        assert check.json()["used"] == "20.00"

    def test_unknown_perk_type(self, client, make_subscription):
        subscription = make_subscription()

        response = client.post(f"{API}/subscribers/{subscription.subscriber_id}/perks/free_pizza/use")

        assert response.status_code == 400


class TestPauseRoutes:

    def test_invalid_duration(self, client, make_subscription):
        subscription = make_subscription()

        response = client.post(f"{API}/subscriptions/{subscription.id}/pause", json={"duration_months": 9})

        assert response.status_code == 422
        assert response.json()["code"] == "not_eligible"

    def test_resume_when_not_paused(self, client, make_subscription):
        subscription = make_subscription()

        response = client.post(f"{API}/subscriptions/{subscription.id}/resume")

        assert response.status_code == 409


class TestGatewayWebhook:

    def test_missing_signature(self, client):
        response = client.post(f"{API}/webhooks/gateway", content=b"{}")

        assert response.status_code == 400

    def test_invalid_signature(self, client, monkeypatch):
        def reject(payload, signature):
            raise stripe.SignatureVerificationError("No signatures found", signature)

        monkeypatch.setattr(webhooks.gateway_client, "construct_event", reject)

        response = client.post(
            f"{API}/webhooks/gateway",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=bad"}
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid webhook signature"

    def test_unresolved_event_is_acknowledged(self, client, monkeypatch):
        monkeypatch.setattr(webhooks.gateway_client, "construct_event", lambda payload, signature: None)

        async def unresolved(self, event):
            raise UnresolvedWebhookEventError(event["id"], "No subscriber matches gateway customer cus_x")

        monkeypatch.setattr(webhooks.WebhookReconciler, "process_event", unresolved)
        payload = {"id": "evt_1", "type": "customer.subscription.created", "data": {"object": {}}}

        response = client.post(
            f"{API}/webhooks/gateway",
            content=json.dumps(payload).encode(),
            headers={"stripe-signature": "t=1,v1=ok"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "unresolved"

    def test_processing_failure_returns_500(self, client, monkeypatch):
        monkeypatch.setattr(webhooks.gateway_client, "construct_event", lambda payload, signature: None)

        async def boom(self, event):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(webhooks.WebhookReconciler, "process_event", boom)

        response = client.post(
            f"{API}/webhooks/gateway",
            content=json.dumps({"id": "evt_2", "type": "invoice.payment_failed", "data": {"object": {}}}).encode(),
            headers={"stripe-signature": "t=1,v1=ok"}
        )

        assert response.status_code == 500
