"""
Tests for gateway webhook reconciliation.

Tests cover:
- Event-id idempotency and convergence on one subscription row
- Ownership resolution chain (metadata, gateway customer, customer email)
- Unresolved events recorded and acknowledged on replay
- Out-of-order delivery (update before create, invoice before create)
- Invoice events driving the grace period and recovery
"""

import logging
import uuid
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from subscription_lifecycle.core.exceptions import NotFoundError, UnresolvedWebhookEventError
from subscription_lifecycle.models.subscription import (
    PaymentFrequency,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookEvent,
    WebhookEventStatus,
)
from subscription_lifecycle.services.pause_service import PauseService
from subscription_lifecycle.services.webhook_reconciler import WebhookReconciler


@pytest.fixture
def reconciler(db_session, mock_gateway, mock_bookings, mock_notifier):
    pauses = PauseService(db_session, gateway=mock_gateway, bookings=mock_bookings, notifier=mock_notifier)
    return WebhookReconciler(db_session, gateway=mock_gateway, pause_service=pauses)


def gateway_subscription(
    gateway_id="sub_gw_1",
    customer="cus_test_1",
    price_id="price_homecare_monthly",
    status="active",
    metadata=None
):
    start = datetime.now(timezone.utc).replace(microsecond=0)
    return {
        "id": gateway_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata or {},
        "current_period_start": int(start.timestamp()),
        "current_period_end": int((start + timedelta(days=30)).timestamp()),
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


def event(event_type, data, event_id=None):
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "data": {"object": data},
    }


def invoice(gateway_id="sub_gw_1"):
    return {"id": f"in_{uuid.uuid4().hex[:8]}", "object": "invoice", "subscription": gateway_id}


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_replayed_event_is_acknowledged_once(self, db_session, reconciler, make_subscriber):
        subscriber = make_subscriber()
        created = event(
            "customer.subscription.created",
            gateway_subscription(metadata={"subscriber_id": subscriber.id}),
            event_id="evt_replay"
        )

        first = await reconciler.process_event(created)
        second = await reconciler.process_event(created)

        assert first["status"] == "processed"
        assert second["status"] == "duplicate"
        assert db_session.query(WebhookEvent).filter_by(event_id="evt_replay").count() == 1
        assert db_session.query(Subscription).count() == 1

    @pytest.mark.asyncio
    async def test_distinct_events_for_same_gateway_subscription_converge(
        self, db_session, reconciler, make_subscriber
    ):
        subscriber = make_subscriber()
        data = gateway_subscription(metadata={"subscriber_id": subscriber.id})

        first = await reconciler.process_event(event("customer.subscription.created", data))
        second = await reconciler.process_event(event("customer.subscription.created", data))

        assert first["result"]["created"] is True
        assert second["result"]["created"] is False
        assert db_session.query(Subscription).count() == 1

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_ignored(self, db_session, reconciler):
        result = await reconciler.process_event(event("charge.refunded", {"id": "ch_1"}))

        assert result["status"] == "ignored"
        record = db_session.query(WebhookEvent).one()
        assert record.status == WebhookEventStatus.PROCESSED


class TestOwnershipResolution:

    @pytest.mark.asyncio
    async def test_metadata_subscriber_id(self, db_session, reconciler, make_subscriber):
        subscriber = make_subscriber()

        result = await reconciler.process_event(event(
            "customer.subscription.created",
            gateway_subscription(metadata={"subscriber_id": subscriber.id, "tier": "PRIORITY"})
        ))

        assert result["result"]["resolved_by"] == "metadata"
        subscription = db_session.query(Subscription).filter_by(subscriber_id=subscriber.id).one()
        assert subscription.tier == SubscriptionTier.PRIORITY
        assert subscription.gateway_subscription_id == "sub_gw_1"
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_known_gateway_customer(self, db_session, reconciler, make_subscription):
        previous = make_subscription(
            status=SubscriptionStatus.CANCELLED,
            gateway_customer_id="cus_known",
            gateway_subscription_id="sub_gw_old"
        )

        result = await reconciler.process_event(event(
            "customer.subscription.created",
            gateway_subscription(gateway_id="sub_gw_new", customer="cus_known", price_id="price_starter_yearly")
        ))

        assert result["result"]["resolved_by"] == "gateway_customer"
        db_session.refresh(previous)
        assert previous.gateway_subscription_id == "sub_gw_new"
        assert previous.status == SubscriptionStatus.ACTIVE
        assert previous.tier == SubscriptionTier.STARTER
        assert previous.payment_frequency == PaymentFrequency.YEARLY
        assert db_session.query(Subscription).count() == 1

    @pytest.mark.asyncio
    async def test_customer_email(self, db_session, reconciler, mock_gateway, make_subscriber):
        subscriber = make_subscriber(email="homeowner@example.com")
        mock_gateway.retrieve_customer = AsyncMock(
            return_value={"id": "cus_new", "email": "HomeOwner@Example.com"}
        )

        result = await reconciler.process_event(event(
            "customer.subscription.created",
            gateway_subscription(customer="cus_new")
        ))

        assert result["result"]["resolved_by"] == "customer_email"
        mock_gateway.retrieve_customer.assert_awaited_once_with("cus_new")
        subscription = db_session.query(Subscription).filter_by(subscriber_id=subscriber.id).one()
        assert subscription.gateway_customer_id == "cus_new"

    @pytest.mark.asyncio
    async def test_unresolved_is_recorded_and_replay_acknowledged(
        self, db_session, reconciler, mock_gateway
    ):
        mock_gateway.retrieve_customer = AsyncMock(return_value={"id": "cus_ghost", "email": "ghost@example.com"})
        orphan = event(
            "customer.subscription.created",
            gateway_subscription(customer="cus_ghost"),
            event_id="evt_orphan"
        )

        with pytest.raises(UnresolvedWebhookEventError) as exc_info:
            await reconciler.process_event(orphan)

        assert exc_info.value.event_id == "evt_orphan"
        record = db_session.query(WebhookEvent).filter_by(event_id="evt_orphan").one()
        assert record.status == WebhookEventStatus.UNRESOLVED
        assert "cus_ghost" in record.last_error
        assert db_session.query(Subscription).count() == 0

        replay = await reconciler.process_event(orphan)
        assert replay["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_unknown_price_is_unresolved(self, reconciler, make_subscriber):
        subscriber = make_subscriber()

        with pytest.raises(UnresolvedWebhookEventError) as exc_info:
            await reconciler.process_event(event(
                "customer.subscription.created",
                gateway_subscription(price_id="price_legacy", metadata={"subscriber_id": subscriber.id})
            ))

        assert "price_legacy" in exc_info.value.reason


class TestSubscriptionEvents:

    @pytest.mark.asyncio
    async def test_update_before_create(self, db_session, reconciler, make_subscriber):
        subscriber = make_subscriber()

        result = await reconciler.process_event(event(
            "customer.subscription.updated",
            gateway_subscription(metadata={"subscriber_id": subscriber.id})
        ))

        assert result["result"]["created"] is True
        assert db_session.query(Subscription).filter_by(gateway_subscription_id="sub_gw_1").count() == 1

    @pytest.mark.asyncio
    async def test_update_refreshes_period_without_overriding_local_status(
        self, db_session, reconciler, make_subscription
    ):
        subscription = make_subscription(
            tier=SubscriptionTier.PRIORITY,
            status=SubscriptionStatus.PENDING_CHANGE,
            gateway_subscription_id="sub_gw_1",
            pending_tier=SubscriptionTier.HOMECARE
        )
        data = gateway_subscription(status="active")

        await reconciler.process_event(event("customer.subscription.updated", data))

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.PENDING_CHANGE
        assert int(subscription.current_period_end.timestamp()) == data["current_period_end"]

    @pytest.mark.asyncio
    async def test_update_logs_ignored_gateway_status(
        self, db_session, reconciler, make_subscription, caplog
    ):
        subscription = make_subscription(gateway_subscription_id="sub_gw_1")

        with caplog.at_level(logging.INFO, logger="subscription_lifecycle.services.webhook_reconciler"):
            await reconciler.process_event(event(
                "customer.subscription.updated", gateway_subscription(status="past_due")
            ))

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert any(
            "past_due" in record.getMessage() and record.levelno == logging.INFO
            for record in caplog.records
        )

    @pytest.mark.asyncio
    async def test_gateway_cancellation(self, db_session, reconciler, make_subscription):
        subscription = make_subscription(gateway_subscription_id="sub_gw_1")

        await reconciler.process_event(event(
            "customer.subscription.updated", gateway_subscription(status="canceled")
        ))

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_deleted_closes_open_pause(self, db_session, reconciler, make_subscription):
        subscription = make_subscription(gateway_subscription_id="sub_gw_1")
        await reconciler.process_event(event("invoice.payment_failed", invoice()))

        result = await reconciler.process_event(event("customer.subscription.deleted", {"id": "sub_gw_1"}))

        assert result["result"]["changed"] is True
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.is_paused is False

    @pytest.mark.asyncio
    async def test_deleted_for_unknown_subscription_is_ignored(self, reconciler):
        result = await reconciler.process_event(event("customer.subscription.deleted", {"id": "sub_unknown"}))

        assert result["status"] == "processed"
        assert result["result"]["changed"] is False


class TestInvoiceEvents:

    @pytest.mark.asyncio
    async def test_payment_failed_starts_grace_period(self, db_session, reconciler, make_subscription):
        subscription = make_subscription(gateway_subscription_id="sub_gw_1")

        result = await reconciler.process_event(event("invoice.payment_failed", invoice()))

        assert result["result"]["changed"] is True
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.PAST_DUE
        assert subscription.is_paused is True

    @pytest.mark.asyncio
    async def test_payment_succeeded_recovers(self, db_session, reconciler, make_subscription):
        subscription = make_subscription(gateway_subscription_id="sub_gw_1")
        await reconciler.process_event(event("invoice.payment_failed", invoice()))

        result = await reconciler.process_event(event("invoice.payment_succeeded", invoice()))

        assert result["result"]["changed"] is True
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.is_paused is False

    @pytest.mark.asyncio
    async def test_payment_succeeded_on_active_subscription_changes_nothing(
        self, reconciler, make_subscription
    ):
        make_subscription(gateway_subscription_id="sub_gw_1")

        result = await reconciler.process_event(event("invoice.payment_succeeded", invoice()))

        assert result["result"]["changed"] is False

    @pytest.mark.asyncio
    async def test_invoice_for_unknown_subscription_fails_for_retry(self, db_session, reconciler):
        with pytest.raises(NotFoundError):
            await reconciler.process_event(event("invoice.payment_failed", invoice("sub_not_yet"), "evt_early"))

        record = db_session.query(WebhookEvent).filter_by(event_id="evt_early").one()
        assert record.status == WebhookEventStatus.FAILED
        assert record.attempts == 1
        assert record.gateway_subscription_id == "sub_not_yet"
