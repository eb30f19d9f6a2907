import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    CancellationBlockedError,
    InvalidStateError,
    NoOpError,
    NotFoundError,
)
from ..core.redis_lock import subscription_lock
from ..models.subscription import (
    PaymentFrequency,
    Subscriber,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from .gateway_client import GatewayClient, gateway_client as default_gateway_client
from .pause_service import PauseService
from .perk_usage_service import PerkUsageService
from .plan_catalog import (
    billing_period_length,
    gateway_price_id,
    get_plan,
    parse_billing_period,
    parse_tier,
)
from .subscription_repository import (
    get_subscriber,
    get_subscriber_by_email,
    get_subscription_by_subscriber,
    log_subscription_change,
    require_subscription_by_subscriber,
    upsert_subscription,
)

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Service for creating, reading and cancelling subscriptions"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[GatewayClient] = None,
        perks: Optional[PerkUsageService] = None,
        pauses: Optional[PauseService] = None
    ):
        self.db = db
        self.gateway = gateway or default_gateway_client
        self.perks = perks or PerkUsageService(db)
        self.pauses = pauses or PauseService(db, gateway=self.gateway)

    def register_subscriber(self, email: str, full_name: Optional[str] = None) -> Subscriber:
        """Create the subscriber account record, or return the existing one for this email"""
        email = email.strip().lower()
        existing = get_subscriber_by_email(self.db, email)
        if existing:
            return existing

        subscriber = Subscriber(email=email, full_name=full_name)
        self.db.add(subscriber)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return get_subscriber_by_email(self.db, email)

        logger.info("Registered subscriber", extra={"subscriber_id": subscriber.id})
        return subscriber

    async def create_subscription(
        self,
        subscriber_id: str,
        tier: Union[str, SubscriptionTier],
        billing_period: Union[str, PaymentFrequency] = PaymentFrequency.MONTHLY
    ) -> Dict[str, Any]:
        """
        Create the subscriber's subscription locally and at the gateway.

        Gateway errors propagate; nothing is written locally unless the
        gateway subscription exists. The gateway's own subscription-created
        webhook converges on the same row via the upsert.
        """
        tier = parse_tier(tier)
        period = parse_billing_period(billing_period)
        subscriber = get_subscriber(self.db, subscriber_id)
        if subscriber is None:
            raise NotFoundError(f"Subscriber {subscriber_id} not found")

        async with subscription_lock(subscriber_id):
            existing = get_subscription_by_subscriber(self.db, subscriber_id)
            if existing is not None and existing.status != SubscriptionStatus.CANCELLED:
                raise InvalidStateError(
                    "Subscriber already has a subscription. Change plans instead of subscribing again."
                )

            customer_id = existing.gateway_customer_id if existing else None
            if not customer_id:
                customer = await self.gateway.create_customer(
                    email=subscriber.email,
                    name=subscriber.full_name,
                    metadata={"subscriber_id": subscriber_id}
                )
                customer_id = customer["id"]

            price_id = gateway_price_id(tier, period)
            gateway_subscription = await self.gateway.create_subscription(
                customer_id,
                price_id,
                metadata={"subscriber_id": subscriber_id, "tier": tier.value, "billing_period": period.value}
            )

            now = datetime.now(timezone.utc)
            period_start = _from_timestamp(gateway_subscription.get("current_period_start")) or now
            period_end = (
                _from_timestamp(gateway_subscription.get("current_period_end"))
                or period_start + billing_period_length(period)
            )
            subscription, created = upsert_subscription(
                self.db,
                subscriber_id,
                {
                    "tier": tier,
                    "status": SubscriptionStatus.ACTIVE,
                    "payment_frequency": period,
                    "current_period_start": period_start,
                    "current_period_end": period_end,
                    "next_payment_amount": get_plan(tier).price_for(period),
                    "gateway_customer_id": customer_id,
                    "gateway_price_id": price_id,
                    "is_paused": False,
                    "pause_start_date": None,
                    "pause_end_date": None,
                    "pending_tier": None,
                    "pending_payment_frequency": None,
                    "pending_effective_date": None,
                    "cancelled_at": None,
                },
                gateway_subscription_id=gateway_subscription["id"]
            )
            log_subscription_change(
                self.db, subscription, "created",
                new_tier=tier, new_amount=subscription.next_payment_amount, effective_at=now
            )
            self.db.commit()

        logger.info(
            f"Created {tier.value} subscription",
            extra={"subscriber_id": subscriber_id, "subscription_id": subscription.id}
        )
        return {
            "success": True,
            "subscription": self._to_dict(subscription),
            "created": created,
        }

    async def cancel_subscription(self, subscriber_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Cancel the subscription.

        Raises:
            CancellationBlockedError: perks were used (or an admin blocked it)
            ExternalGatewayError: the gateway refused; nothing changes locally
        """
        async with subscription_lock(subscriber_id):
            subscription = require_subscription_by_subscriber(self.db, subscriber_id)
            self.db.refresh(subscription)

            if subscription.status == SubscriptionStatus.CANCELLED:
                raise NoOpError("Subscription is already cancelled")
            if not subscription.can_cancel:
                raise CancellationBlockedError(
                    f"Subscription cannot be cancelled: {subscription.cancellation_blocked_reason}. "
                    "Please contact support."
                )

            if subscription.gateway_subscription_id:
                await self.gateway.cancel_subscription(subscription.gateway_subscription_id)

            now = datetime.now(timezone.utc)
            self.pauses.close_open_pause(subscription, "Subscription cancelled")
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancelled_at = now
            subscription.pending_tier = None
            subscription.pending_payment_frequency = None
            subscription.pending_effective_date = None
            log_subscription_change(
                self.db, subscription, "cancelled",
                previous_tier=subscription.tier, reason=reason, effective_at=now
            )
            self.db.commit()

        logger.info("Subscription cancelled", extra={"subscriber_id": subscriber_id})
        return {"success": True, "subscription": self._to_dict(subscription)}

    def get_subscription(self, subscriber_id: str) -> Dict[str, Any]:
        subscription = require_subscription_by_subscriber(self.db, subscriber_id)
        result = self._to_dict(subscription)
        result["plan"] = get_plan(subscription.tier).to_dict()
        result["usage"] = self.perks.get_usage_summary(subscriber_id)
        return result

    def _to_dict(self, subscription: Subscription) -> Dict[str, Any]:
        return {
            "id": subscription.id,
            "subscriber_id": subscription.subscriber_id,
            "tier": subscription.tier.value,
            "status": subscription.status.value,
            "payment_frequency": subscription.payment_frequency.value,
            "current_period_start": subscription.current_period_start.isoformat(),
            "current_period_end": subscription.current_period_end.isoformat(),
            "next_payment_amount": str(subscription.next_payment_amount),
            "currency": subscription.currency,
            "is_paused": subscription.is_paused,
            "pause_start_date": _iso(subscription.pause_start_date),
            "pause_end_date": _iso(subscription.pause_end_date),
            "can_cancel": subscription.can_cancel,
            "cancellation_blocked_reason": subscription.cancellation_blocked_reason,
            "pending_tier": subscription.pending_tier.value if subscription.pending_tier else None,
            "pending_effective_date": _iso(subscription.pending_effective_date),
            "gateway_subscription_id": subscription.gateway_subscription_id,
            "churn_risk_score": subscription.churn_risk_score,
        }


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
