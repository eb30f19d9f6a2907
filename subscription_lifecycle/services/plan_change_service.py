"""
Plan change orchestration.

Upgrades apply immediately and push the new price to the gateway with
proration. Downgrades are scheduled: the subscription moves to PENDING_CHANGE
with the target tier in the pending_* columns, and `process_period_renewals`
flips the tier when the current period ends. Gateway failures never undo the
committed local change.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ..core.exceptions import DowngradeBlockedError, InvalidStateError, NoOpError
from ..core.redis_lock import subscription_lock
from ..models.subscription import (
    PaymentFrequency,
    PerkType,
    PerkUsage,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from .batch import BatchResult, process_each
from .carryover import CarryoverResult, calculate_carryover
from .gateway_client import (
    GatewayCallOutcome,
    GatewayClient,
    best_effort,
    gateway_client as default_gateway_client,
    skipped_outcome,
)
from .notification_publisher import (
    NotificationPublisher,
    NotificationType,
    notification_publisher as default_notification_publisher,
)
from .perk_usage_service import PerkUsageService
from .plan_catalog import (
    billing_period_length,
    gateway_price_id,
    get_plan,
    is_upgrade,
    parse_billing_period,
    parse_tier,
)
from .proration import ProrationResult, calculate_proration
from .subscription_repository import (
    log_subscription_change,
    require_subscription,
    require_subscription_by_subscriber,
)

logger = logging.getLogger(__name__)

# Perks that block a downgrade when the new tier has no quota for them
ZERO_QUOTA_RESTRICTIONS = {
    PerkType.PRIORITY_BOOKING: "Priority bookings have been used this billing cycle",
    PerkType.DISCOUNT: "Service discounts have been used this billing cycle",
    PerkType.FREE_SERVICE: "Free services have been used this billing cycle",
    PerkType.EMERGENCY_SERVICE: "Same-week emergency service has been used this billing cycle",
}

EXCEEDED_QUOTA_LABELS = {
    PerkType.PRIORITY_BOOKING: "Priority bookings",
    PerkType.DISCOUNT: "Service discounts",
    PerkType.FREE_SERVICE: "Free services",
    PerkType.EMERGENCY_SERVICE: "Emergency services",
}


def validate_downgrade(usage: Optional[PerkUsage], new_tier: Union[str, SubscriptionTier]) -> List[str]:
    """
    Restrictions preventing a move to new_tier this cycle.

    A perk blocks the downgrade when this cycle's consumption exceeds what the
    new tier allows. An empty list means the downgrade is allowed.
    """
    if usage is None:
        return []

    plan = get_plan(new_tier)
    consumed = {
        PerkType.PRIORITY_BOOKING: usage.priority_booking_count or 0,
        PerkType.DISCOUNT: Decimal(str(usage.discount_amount_used or 0)),
        PerkType.FREE_SERVICE: usage.free_service_count or 0,
        PerkType.EMERGENCY_SERVICE: usage.emergency_service_count or 0,
    }

    restrictions = []
    for perk_type, used in consumed.items():
        limit = plan.perks.limit_for(perk_type)
        if used <= limit:
            continue
        if not limit:
            restrictions.append(ZERO_QUOTA_RESTRICTIONS[perk_type])
        else:
            restrictions.append(
                f"{EXCEEDED_QUOTA_LABELS[perk_type]} used this billing cycle ({used}) "
                f"exceed the {plan.name} plan limit ({limit})"
            )
    return restrictions


class PlanChangeService:
    """Service for tier changes and the period-end renewal sweep"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[GatewayClient] = None,
        notifier: Optional[NotificationPublisher] = None,
        perks: Optional[PerkUsageService] = None
    ):
        self.db = db
        self.gateway = gateway or default_gateway_client
        self.notifier = notifier or default_notification_publisher
        self.perks = perks or PerkUsageService(db)

    # ========================================================================
    # PREVIEW
    # ========================================================================

    def _plan_change(
        self,
        subscription: Subscription,
        new_tier: SubscriptionTier,
        billing_cycle: PaymentFrequency,
        now: datetime
    ) -> Dict[str, Any]:
        """Validate preconditions and compute the change without side effects"""
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidStateError(
                f"Plan changes require an active subscription (current status: {subscription.status.value})"
            )
        if subscription.is_paused:
            raise InvalidStateError("Resume your subscription before changing plans")
        if new_tier == subscription.tier:
            raise NoOpError(f"Subscription is already on the {get_plan(new_tier).name} plan")

        upgrade = is_upgrade(subscription.tier, new_tier)
        usage = self.perks.get_usage(subscription.subscriber_id)

        proration: ProrationResult = calculate_proration(
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            current_price=get_plan(subscription.tier).price_for(billing_cycle),
            new_price=get_plan(new_tier).price_for(billing_cycle),
            now=now,
            billing_cycle=billing_cycle,
        )
        carryover: CarryoverResult = calculate_carryover(
            subscriber_id=subscription.subscriber_id,
            current_tier=subscription.tier,
            new_tier=new_tier,
            used_visits=usage.priority_booking_count if usage else 0,
        )
        restrictions = [] if upgrade else validate_downgrade(usage, new_tier)

        return {
            "subscriber_id": subscription.subscriber_id,
            "subscription_id": subscription.id,
            "change_type": "upgrade" if upgrade else "downgrade",
            "current_tier": subscription.tier.value,
            "new_tier": new_tier.value,
            "billing_cycle": billing_cycle.value,
            "effective_date": (now if upgrade else subscription.current_period_end).isoformat(),
            "proration": proration,
            "carryover": carryover,
            "restrictions": restrictions,
            "allowed": not restrictions,
        }

    def get_change_preview(
        self,
        subscriber_id: str,
        new_tier: Union[str, SubscriptionTier],
        billing_cycle: Optional[Union[str, PaymentFrequency]] = None
    ) -> Dict[str, Any]:
        """Same computation as change_plan, with nothing persisted or pushed"""
        new_tier = parse_tier(new_tier)
        subscription = require_subscription_by_subscriber(self.db, subscriber_id)
        cycle = parse_billing_period(billing_cycle) if billing_cycle else subscription.payment_frequency

        change = self._plan_change(subscription, new_tier, cycle, datetime.now(timezone.utc))
        return _serialize(change)

    # ========================================================================
    # CHANGE
    # ========================================================================

    async def change_plan(
        self,
        subscriber_id: str,
        new_tier: Union[str, SubscriptionTier],
        billing_cycle: Optional[Union[str, PaymentFrequency]] = None
    ) -> Dict[str, Any]:
        """
        Change the subscriber's tier.

        Raises:
            InvalidTierError / InvalidBillingPeriodError: bad input
            NotFoundError: no subscription
            InvalidStateError: subscription not ACTIVE (or paused)
            NoOpError: already on new_tier
            DowngradeBlockedError: perks used this cycle that new_tier lacks
        """
        new_tier = parse_tier(new_tier)
        cycle = parse_billing_period(billing_cycle) if billing_cycle else None

        async with subscription_lock(subscriber_id):
            subscription = require_subscription_by_subscriber(self.db, subscriber_id)
            self.db.refresh(subscription)
            cycle = cycle or subscription.payment_frequency
            now = datetime.now(timezone.utc)

            change = self._plan_change(subscription, new_tier, cycle, now)
            if change["restrictions"]:
                raise DowngradeBlockedError(change["restrictions"])

            proration: ProrationResult = change["proration"]
            carryover: CarryoverResult = change["carryover"]
            previous_tier = subscription.tier
            previous_amount = subscription.next_payment_amount
            upgrade = change["change_type"] == "upgrade"

            if upgrade:
                subscription.tier = new_tier
                subscription.payment_frequency = cycle
                subscription.next_payment_amount = proration.next_amount
                subscription.gateway_price_id = gateway_price_id(new_tier, cycle)
                self.perks.apply_tier_quotas(subscription)
            else:
                subscription.status = SubscriptionStatus.PENDING_CHANGE
                subscription.pending_tier = new_tier
                subscription.pending_payment_frequency = cycle
                subscription.pending_effective_date = subscription.current_period_end
                subscription.next_payment_amount = proration.next_amount

            if carryover.carryover_visits > 0:
                self.perks.apply_visit_carryover(subscription, carryover.carryover_visits)

            log_subscription_change(
                self.db,
                subscription,
                change_type=change["change_type"] if upgrade else "downgrade_scheduled",
                previous_tier=previous_tier,
                new_tier=new_tier,
                previous_amount=previous_amount,
                new_amount=proration.next_amount,
                prorated_amount=proration.prorated_difference,
                effective_at=now if upgrade else subscription.current_period_end
            )
            self.db.commit()
            self.perks.cache.invalidate(subscriber_id)

        if upgrade:
            gateway_outcome = await self._push_upgrade(subscription, new_tier, cycle)
        else:
            gateway_outcome = skipped_outcome("update_subscription", "Downgrade applies at period end")

        logger.info(
            f"Plan {change['change_type']}: {previous_tier.value} -> {new_tier.value}",
            extra={
                "subscriber_id": subscriber_id,
                "subscription_id": subscription.id,
                "immediate_charge": str(proration.immediate_charge),
                "carryover_visits": carryover.carryover_visits
            }
        )
        self.notifier.publish(
            NotificationType.PLAN_CHANGED,
            subscriber_id=subscriber_id,
            subscription_id=subscription.id,
            data={
                "change_type": change["change_type"],
                "previous_tier": previous_tier.value,
                "new_tier": new_tier.value,
                "effective_date": change["effective_date"],
                "immediate_charge": str(proration.immediate_charge),
                "credit_amount": str(proration.credit_amount)
            }
        )

        result = _serialize(change)
        result.update(
            success=True,
            status=subscription.status.value,
            message=(
                f"Upgraded to {get_plan(new_tier).name}"
                if upgrade
                else f"Downgrade to {get_plan(new_tier).name} scheduled for {change['effective_date']}"
            ),
            gateway=gateway_outcome.to_dict(),
        )
        return result

    async def _push_upgrade(
        self,
        subscription: Subscription,
        new_tier: SubscriptionTier,
        cycle: PaymentFrequency
    ) -> GatewayCallOutcome:
        if not subscription.gateway_subscription_id:
            return skipped_outcome("update_subscription", "No gateway subscription")
        return await best_effort(
            "update_subscription",
            self.gateway.update_subscription,
            subscription.gateway_subscription_id,
            gateway_price_id(new_tier, cycle),
            prorate=True
        )

    # ========================================================================
    # RENEWALS
    # ========================================================================

    async def process_period_renewals(self, now: Optional[datetime] = None) -> BatchResult:
        """
        Roll every ended billing period forward.

        Applies scheduled downgrades, advances the period and starts a fresh
        perk usage cycle with carryover folded in. Paused, past-due, suspended
        and cancelled subscriptions are not renewed here.
        """
        now = now or datetime.now(timezone.utc)
        candidate_ids = [row.id for row in self.db.query(Subscription.id).filter(
            and_(
                Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CHANGE]),
                Subscription.is_paused.is_(False),
                Subscription.current_period_end <= now
            )
        ).all()]

        async def renew(subscription_id: str) -> bool:
            subscription = require_subscription(self.db, subscription_id)
            async with subscription_lock(subscription.subscriber_id):
                self.db.refresh(subscription)
                if (
                    subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CHANGE)
                    or subscription.is_paused
                    or subscription.current_period_end > now
                ):
                    return False

                applied_tier = self._apply_pending_downgrade(subscription, now)

                period = billing_period_length(subscription.payment_frequency)
                while subscription.current_period_end <= now:
                    subscription.current_period_start = subscription.current_period_end
                    subscription.current_period_end = subscription.current_period_end + period

                self.perks.reset_for_new_cycle(
                    subscription, subscription.current_period_start, subscription.current_period_end
                )
                self.db.commit()
                self.perks.cache.invalidate(subscription.subscriber_id)

            if applied_tier is not None:
                await self._sync_applied_downgrade(subscription)
                self.notifier.publish(
                    NotificationType.PLAN_CHANGE_APPLIED,
                    subscriber_id=subscription.subscriber_id,
                    subscription_id=subscription.id,
                    data={"new_tier": applied_tier.value}
                )

            logger.info(
                "Billing period renewed",
                extra={
                    "subscription_id": subscription.id,
                    "subscriber_id": subscription.subscriber_id,
                    "period_end": subscription.current_period_end.isoformat()
                }
            )
            return True

        return await process_each(self.db, "process_period_renewals", candidate_ids, renew)

    def _apply_pending_downgrade(self, subscription: Subscription, now: datetime) -> Optional[SubscriptionTier]:
        if subscription.status != SubscriptionStatus.PENDING_CHANGE or subscription.pending_tier is None:
            return None

        previous_tier = subscription.tier
        previous_amount = subscription.next_payment_amount
        new_tier = subscription.pending_tier
        cycle = subscription.pending_payment_frequency or subscription.payment_frequency

        subscription.tier = new_tier
        subscription.payment_frequency = cycle
        subscription.next_payment_amount = get_plan(new_tier).price_for(cycle)
        subscription.gateway_price_id = gateway_price_id(new_tier, cycle)
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.pending_tier = None
        subscription.pending_payment_frequency = None
        subscription.pending_effective_date = None

        log_subscription_change(
            self.db,
            subscription,
            change_type="downgrade_applied",
            previous_tier=previous_tier,
            new_tier=new_tier,
            previous_amount=previous_amount,
            new_amount=subscription.next_payment_amount,
            reason="Scheduled downgrade applied at period end",
            effective_at=now
        )
        return new_tier

    async def _sync_applied_downgrade(self, subscription: Subscription) -> GatewayCallOutcome:
        if not subscription.gateway_subscription_id:
            return skipped_outcome("update_subscription", "No gateway subscription")
        return await best_effort(
            "update_subscription",
            self.gateway.update_subscription,
            subscription.gateway_subscription_id,
            subscription.gateway_price_id,
            prorate=False
        )


def _serialize(change: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(change)
    result["proration"] = change["proration"].to_dict()
    result["carryover"] = change["carryover"].to_dict()
    return result
