"""
Payment gateway webhook reconciliation.

Events are applied idempotently at two levels:
- the gateway event id is recorded in webhook_events, so a replayed delivery
  of an already processed event is acknowledged without reprocessing;
- state is keyed by the gateway subscription id and written through
  `upsert_subscription`, so even a reprocessed event converges on one row.

Ownership of a new gateway subscription is resolved by an explicit chain
(metadata subscriber id, then known gateway customer, then customer email)
that yields Resolved or Unresolved. Unresolved events raise
UnresolvedWebhookEventError, which the delivery layer logs as an alarm.
Any other failure propagates so the gateway retries the delivery.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import NotFoundError, UnresolvedWebhookEventError
from ..core.redis_lock import subscription_lock
from ..models.subscription import (
    PaymentFrequency,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
    WebhookEvent,
    WebhookEventStatus,
)
from .gateway_client import GatewayClient, gateway_client as default_gateway_client
from .pause_service import PauseService
from .plan_catalog import (
    billing_period_length,
    get_plan,
    parse_billing_period,
    parse_tier,
    plan_for_price_id,
)
from .subscription_repository import (
    get_subscriber,
    get_subscriber_by_email,
    get_subscription_by_gateway_customer,
    get_subscription_by_gateway_id,
    get_subscription_by_subscriber,
    log_subscription_change,
    upsert_subscription,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"

CANCELLED_GATEWAY_STATUSES = ("canceled", "incomplete_expired")


@dataclass(frozen=True)
class Resolved:
    subscriber_id: str
    method: str  # "metadata", "gateway_customer" or "customer_email"


@dataclass(frozen=True)
class Unresolved:
    reason: str


OwnershipResolution = Union[Resolved, Unresolved]


class OwnershipResolver:
    """Works out which local subscriber a gateway subscription belongs to"""

    def __init__(self, db: Session, gateway: GatewayClient):
        self.db = db
        self.gateway = gateway

    def from_metadata(self, gateway_subscription: Dict[str, Any]) -> Optional[Resolved]:
        subscriber_id = (gateway_subscription.get("metadata") or {}).get("subscriber_id")
        if subscriber_id and get_subscriber(self.db, subscriber_id):
            return Resolved(subscriber_id=subscriber_id, method="metadata")
        return None

    def from_gateway_customer(self, gateway_subscription: Dict[str, Any]) -> Optional[Resolved]:
        existing = get_subscription_by_gateway_customer(self.db, gateway_subscription.get("customer"))
        if existing:
            return Resolved(subscriber_id=existing.subscriber_id, method="gateway_customer")
        return None

    async def from_customer_email(self, gateway_subscription: Dict[str, Any]) -> Optional[Resolved]:
        """Gateway errors propagate: a failed lookup is retryable, not unresolved"""
        customer_id = gateway_subscription.get("customer")
        if not customer_id:
            return None
        customer = await self.gateway.retrieve_customer(customer_id)
        subscriber = get_subscriber_by_email(self.db, customer.get("email"))
        if subscriber:
            return Resolved(subscriber_id=subscriber.id, method="customer_email")
        return None

    async def resolve(self, gateway_subscription: Dict[str, Any]) -> OwnershipResolution:
        resolved = (
            self.from_metadata(gateway_subscription)
            or self.from_gateway_customer(gateway_subscription)
            or await self.from_customer_email(gateway_subscription)
        )
        if resolved:
            return resolved
        return Unresolved(
            reason=f"No subscriber matches gateway customer {gateway_subscription.get('customer')}"
        )


class WebhookReconciler:
    """Applies gateway events to local subscription state"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[GatewayClient] = None,
        pause_service: Optional[PauseService] = None
    ):
        self.db = db
        self.gateway = gateway or default_gateway_client
        self.pauses = pause_service or PauseService(db, gateway=self.gateway)
        self.resolver = OwnershipResolver(db, self.gateway)
        self.handlers = {
            SUBSCRIPTION_CREATED: self.handle_subscription_created,
            SUBSCRIPTION_UPDATED: self.handle_subscription_updated,
            SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            PAYMENT_SUCCEEDED: self.handle_payment_succeeded,
            PAYMENT_FAILED: self.handle_payment_failed,
        }

    # ========================================================================
    # EVENT LOG
    # ========================================================================

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one verified gateway event.

        Raises:
            UnresolvedWebhookEventError: owner could not be determined
            Exception: anything else, after recording the failure
        """
        event_id = event["id"]
        event_type = event["type"]
        data = event["data"]["object"]

        record = self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()
        if record is not None and record.status in (WebhookEventStatus.PROCESSED, WebhookEventStatus.UNRESOLVED):
            logger.info(f"Duplicate webhook event {event_id} acknowledged", extra={"event_id": event_id})
            return {"status": "duplicate", "event_id": event_id}

        if record is None:
            record = WebhookEvent(
                event_id=event_id,
                event_type=event_type,
                attempts=0,
                gateway_subscription_id=_gateway_subscription_id(event_type, data),
                payload=event
            )
            self.db.add(record)
        record.status = WebhookEventStatus.RECEIVED
        record.attempts += 1
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Webhook event {event_id} is being processed by another delivery")
            return {"status": "duplicate", "event_id": event_id}

        handler = self.handlers.get(event_type)
        if handler is None:
            self._finish(event_id, WebhookEventStatus.PROCESSED, None)
            logger.info(f"Ignoring unhandled webhook event type {event_type}", extra={"event_id": event_id})
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        logger.info(f"Processing webhook event {event_type}", extra={"event_id": event_id})
        try:
            result = await handler(data, event_id=event_id)
        except UnresolvedWebhookEventError as e:
            self.db.rollback()
            self._finish(event_id, WebhookEventStatus.UNRESOLVED, e.reason)
            logger.error(
                f"ALERT: unresolved webhook event {event_id}: {e.reason}",
                extra={"event_id": event_id, "event_type": event_type}
            )
            raise
        except Exception as e:
            self.db.rollback()
            self._finish(event_id, WebhookEventStatus.FAILED, f"{type(e).__name__}: {str(e)[:500]}")
            logger.error(
                f"Webhook event {event_id} failed: {e}",
                exc_info=True,
                extra={"event_id": event_id, "event_type": event_type}
            )
            raise

        self._finish(event_id, WebhookEventStatus.PROCESSED, None)
        return {"status": "processed", "event_id": event_id, "event_type": event_type, "result": result}

    def _finish(self, event_id: str, status: WebhookEventStatus, error: Optional[str]) -> None:
        record = self.db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).first()
        record.status = status
        record.last_error = error
        record.processed_at = datetime.now(timezone.utc)
        self.db.commit()

    # ========================================================================
    # SUBSCRIPTION EVENTS
    # ========================================================================

    async def handle_subscription_created(self, gateway_subscription: Dict[str, Any],
                                          event_id: str = "") -> Dict[str, Any]:
        resolution = await self.resolver.resolve(gateway_subscription)
        if isinstance(resolution, Unresolved):
            raise UnresolvedWebhookEventError(event_id, resolution.reason)

        subscriber_id = resolution.subscriber_id
        gateway_id = gateway_subscription["id"]

        async with subscription_lock(subscriber_id):
            existing = (
                get_subscription_by_gateway_id(self.db, gateway_id)
                or get_subscription_by_subscriber(self.db, subscriber_id)
            )
            period_start, period_end = _period_bounds(gateway_subscription)
            values: Dict[str, Any] = {
                "gateway_customer_id": gateway_subscription.get("customer"),
                "current_period_start": period_start,
                "current_period_end": period_end,
            }

            fresh = (
                existing is None
                or existing.status == SubscriptionStatus.CANCELLED
                or (existing.gateway_subscription_id not in (None, gateway_id))
            )
            if fresh:
                tier, period = self._plan_from_event(gateway_subscription, event_id)
                values.update(
                    tier=tier,
                    payment_frequency=period,
                    next_payment_amount=get_plan(tier).price_for(period),
                    gateway_price_id=_price_id(gateway_subscription),
                    status=SubscriptionStatus.ACTIVE,
                    is_paused=False,
                    pause_start_date=None,
                    pause_end_date=None,
                    pending_tier=None,
                    pending_payment_frequency=None,
                    pending_effective_date=None,
                    cancelled_at=None,
                )
                if existing is not None:
                    self.pauses.close_open_pause(existing, "Replaced by new gateway subscription")

            subscription, created = upsert_subscription(
                self.db, subscriber_id, values, gateway_subscription_id=gateway_id
            )
            if fresh:
                log_subscription_change(
                    self.db, subscription, "created_from_gateway",
                    new_tier=subscription.tier, new_amount=subscription.next_payment_amount,
                    reason=f"Resolved by {resolution.method}"
                )
            self.db.commit()

        logger.info(
            f"Reconciled subscription created ({'new' if created else 'existing'} record)",
            extra={
                "subscriber_id": subscriber_id,
                "subscription_id": subscription.id,
                "gateway_subscription_id": gateway_id,
                "resolved_by": resolution.method
            }
        )
        return {"subscription_id": subscription.id, "created": created, "resolved_by": resolution.method}

    async def handle_subscription_updated(self, gateway_subscription: Dict[str, Any],
                                          event_id: str = "") -> Dict[str, Any]:
        """
        Refresh period bounds and gateway-side cancellation.

        Other status changes are driven by invoice events and the local state
        machine, so a gateway "active" never overrides a pending downgrade, a
        pause or a suspension.
        """
        subscription = get_subscription_by_gateway_id(self.db, gateway_subscription["id"])
        if subscription is None:
            logger.warning(
                "Update received before create, treating as creation",
                extra={"gateway_subscription_id": gateway_subscription["id"], "event_id": event_id}
            )
            return await self.handle_subscription_created(gateway_subscription, event_id=event_id)

        async with subscription_lock(subscription.subscriber_id):
            self.db.refresh(subscription)
            if gateway_subscription.get("status") in CANCELLED_GATEWAY_STATUSES:
                changed = self._mark_cancelled(subscription, "Cancelled at payment gateway")
            else:
                period_start, period_end = _period_bounds(gateway_subscription, subscription)
                subscription.current_period_start = period_start
                subscription.current_period_end = period_end
                if gateway_subscription.get("customer"):
                    subscription.gateway_customer_id = gateway_subscription["customer"]
                changed = True
                gateway_status = gateway_subscription.get("status")
                if gateway_status and gateway_status != subscription.status.value.lower():
                    logger.info(
                        f"Gateway status {gateway_status} not applied, local status is {subscription.status.value}",
                        extra={
                            "subscription_id": subscription.id,
                            "gateway_status": gateway_status,
                            "event_id": event_id
                        }
                    )
            self.db.commit()

        logger.info(
            "Reconciled subscription update",
            extra={"subscription_id": subscription.id, "status": subscription.status.value}
        )
        return {"subscription_id": subscription.id, "status": subscription.status.value, "changed": changed}

    async def handle_subscription_deleted(self, gateway_subscription: Dict[str, Any],
                                          event_id: str = "") -> Dict[str, Any]:
        subscription = get_subscription_by_gateway_id(self.db, gateway_subscription["id"])
        if subscription is None:
            logger.warning(
                "Deletion for unknown gateway subscription ignored",
                extra={"gateway_subscription_id": gateway_subscription["id"], "event_id": event_id}
            )
            return {"subscription_id": None, "changed": False}

        async with subscription_lock(subscription.subscriber_id):
            self.db.refresh(subscription)
            changed = self._mark_cancelled(subscription, "Subscription deleted at payment gateway")
            self.db.commit()

        logger.info("Reconciled subscription deletion", extra={"subscription_id": subscription.id})
        return {"subscription_id": subscription.id, "changed": changed}

    def _mark_cancelled(self, subscription: Subscription, reason: str) -> bool:
        if subscription.status == SubscriptionStatus.CANCELLED:
            return False
        self.pauses.close_open_pause(subscription, reason)
        previous_tier = subscription.tier
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.cancelled_at = datetime.now(timezone.utc)
        subscription.pending_tier = None
        subscription.pending_payment_frequency = None
        subscription.pending_effective_date = None
        log_subscription_change(self.db, subscription, "cancelled", previous_tier=previous_tier, reason=reason)
        return True

    # ========================================================================
    # INVOICE EVENTS
    # ========================================================================

    def _subscription_for_invoice(self, invoice: Dict[str, Any]) -> Optional[Subscription]:
        gateway_id = _invoice_subscription_id(invoice)
        if not gateway_id:
            return None
        subscription = get_subscription_by_gateway_id(self.db, gateway_id)
        if subscription is None:
            # Invoice can arrive before subscription.created; fail so the gateway retries
            raise NotFoundError(f"No local subscription for gateway subscription {gateway_id}")
        return subscription

    async def handle_payment_succeeded(self, invoice: Dict[str, Any], event_id: str = "") -> Dict[str, Any]:
        subscription = self._subscription_for_invoice(invoice)
        if subscription is None:
            return {"subscription_id": None, "changed": False}

        async with subscription_lock(subscription.subscriber_id):
            self.db.refresh(subscription)
            if subscription.status == SubscriptionStatus.CANCELLED:
                return {"subscription_id": subscription.id, "changed": False}

            if subscription.is_paused or subscription.status in (
                SubscriptionStatus.PAST_DUE, SubscriptionStatus.SUSPENDED
            ):
                recovery = await self.pauses.handle_payment_recovered(subscription.id)
                return {"subscription_id": subscription.id, "changed": not recovery["no_op"]}

        logger.info("Payment succeeded for active subscription", extra={"subscription_id": subscription.id})
        return {"subscription_id": subscription.id, "changed": False}

    async def handle_payment_failed(self, invoice: Dict[str, Any], event_id: str = "") -> Dict[str, Any]:
        subscription = self._subscription_for_invoice(invoice)
        if subscription is None:
            return {"subscription_id": None, "changed": False}

        result = await self.pauses.pause_for_payment_failure(
            subscription.id,
            reason=f"Invoice {invoice.get('id')} payment failed"
        )
        return {"subscription_id": subscription.id, "changed": not result["no_op"]}

    # ========================================================================
    # HELPERS
    # ========================================================================

    def _plan_from_event(self, gateway_subscription: Dict[str, Any],
                         event_id: str) -> Tuple[SubscriptionTier, PaymentFrequency]:
        metadata = gateway_subscription.get("metadata") or {}
        if metadata.get("tier"):
            tier = parse_tier(metadata["tier"])
            period = parse_billing_period(metadata.get("billing_period") or PaymentFrequency.MONTHLY)
            return tier, period

        plan = plan_for_price_id(_price_id(gateway_subscription))
        if plan is None:
            raise UnresolvedWebhookEventError(
                event_id, f"Unknown plan price {_price_id(gateway_subscription)}"
            )
        return plan


def _first_item(gateway_subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (gateway_subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _price_id(gateway_subscription: Dict[str, Any]) -> Optional[str]:
    return (_first_item(gateway_subscription).get("price") or {}).get("id")


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _period_bounds(gateway_subscription: Dict[str, Any], subscription: Optional[Subscription] = None):
    """Period bounds from the event, falling back to the item, then local state"""
    item = _first_item(gateway_subscription)
    start = _timestamp(gateway_subscription.get("current_period_start") or item.get("current_period_start"))
    end = _timestamp(gateway_subscription.get("current_period_end") or item.get("current_period_end"))

    if subscription is not None:
        return start or subscription.current_period_start, end or subscription.current_period_end

    start = start or datetime.now(timezone.utc)
    metadata = gateway_subscription.get("metadata") or {}
    period = metadata.get("billing_period") or PaymentFrequency.MONTHLY
    return start, end or start + billing_period_length(period)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    if invoice.get("subscription"):
        return invoice["subscription"]
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


def _gateway_subscription_id(event_type: str, data: Dict[str, Any]) -> Optional[str]:
    if event_type.startswith("customer.subscription."):
        return data.get("id")
    if event_type.startswith("invoice."):
        return _invoice_subscription_id(data)
    return None
