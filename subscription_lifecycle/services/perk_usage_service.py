"""
Perk usage ledger.

One PerkUsage row per subscriber tracks consumption for the current billing
cycle against quotas copied from the tier. Consuming any perk locks
self-service cancellation for good; only an administrator can lift it.

The usage summary is cached in Redis in front of the table. The table is the
source of truth and every write drops the subscriber's cache key.
"""
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

import redis
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import EligibilityError, InvalidPerkTypeError, InvalidStateError
from ..core.redis_lock import blocking_subscription_lock, get_redis_client
from ..models.subscription import PerkType, PerkUsage, Subscription, SubscriptionStatus
from .plan_catalog import get_plan
from .subscription_repository import require_subscription_by_subscriber

logger = logging.getLogger(__name__)

PERKS_USED_REASON = "Perks have been used"

PERK_LABELS = {
    PerkType.PRIORITY_BOOKING: "Priority booking",
    PerkType.DISCOUNT: "Service discount",
    PerkType.FREE_SERVICE: "Free service",
    PerkType.EMERGENCY_SERVICE: "Same-week emergency service",
}

PERK_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.PENDING_CHANGE)


def parse_perk_type(value: Union[str, PerkType]) -> PerkType:
    if isinstance(value, PerkType):
        return value
    normalized = str(value).strip().lower()
    for perk_type in PerkType:
        if normalized in (perk_type.value, perk_type.name.lower()):
            return perk_type
    raise InvalidPerkTypeError(
        f"Unknown perk type '{value}'. Choose one of: {', '.join(p.value for p in PerkType)}"
    )


class UsageCache:
    """Read-through cache for usage summaries; Redis failures are logged and ignored"""

    def __init__(self, ttl: Optional[int] = None):
        self.ttl = ttl or settings.USAGE_CACHE_TTL_SECONDS

    @staticmethod
    def _key(subscriber_id: str) -> str:
        return f"perk_usage:{subscriber_id}"

    def get(self, subscriber_id: str) -> Optional[Dict[str, Any]]:
        try:
            cached = get_redis_client().get(self._key(subscriber_id))
        except redis.exceptions.RedisError as e:
            logger.error(f"Error reading usage cache: {e}", extra={"subscriber_id": subscriber_id})
            return None
        return json.loads(cached) if cached else None

    def set(self, subscriber_id: str, summary: Dict[str, Any]) -> None:
        try:
            get_redis_client().setex(self._key(subscriber_id), self.ttl, json.dumps(summary, default=str))
        except redis.exceptions.RedisError as e:
            logger.error(f"Error writing usage cache: {e}", extra={"subscriber_id": subscriber_id})

    def invalidate(self, subscriber_id: str) -> None:
        try:
            get_redis_client().delete(self._key(subscriber_id))
        except redis.exceptions.RedisError as e:
            logger.error(f"Error invalidating usage cache: {e}", extra={"subscriber_id": subscriber_id})


class PerkUsageService:
    """Service for perk consumption and the cancellation lock"""

    def __init__(self, db: Session, cache: Optional[UsageCache] = None):
        self.db = db
        self.cache = cache or UsageCache()

    # ========================================================================
    # LEDGER RECORDS
    # ========================================================================

    def get_usage(self, subscriber_id: str) -> Optional[PerkUsage]:
        return self.db.query(PerkUsage).filter(PerkUsage.subscriber_id == subscriber_id).first()

    def get_or_create_usage(self, subscription: Subscription) -> PerkUsage:
        """Lazily create the cycle's usage row with quotas from the current tier"""
        usage = self.get_usage(subscription.subscriber_id)
        if usage is not None:
            return usage

        plan = get_plan(subscription.tier)
        usage = PerkUsage(
            subscriber_id=subscription.subscriber_id,
            subscription_id=subscription.id,
            tier=subscription.tier,
            priority_booking_count=0,
            discount_amount_used=Decimal("0.00"),
            free_service_count=0,
            emergency_service_count=0,
            max_priority_bookings=plan.perks.priority_bookings,
            max_discount_amount=plan.perks.discount_amount,
            max_free_services=plan.perks.free_services,
            max_emergency_services=plan.perks.emergency_services,
            visit_allowance=plan.visits_per_month,
            carryover_visits=0,
            cycle_start=subscription.current_period_start,
            cycle_end=subscription.current_period_end,
        )
        self.db.add(usage)
        self.db.flush()
        return usage

    def get_used_visits(self, subscriber_id: str) -> int:
        usage = self.get_usage(subscriber_id)
        return usage.priority_booking_count if usage else 0

    # ========================================================================
    # CONSUMPTION
    # ========================================================================

    def track_perk_usage(
        self,
        subscriber_id: str,
        perk_type: Union[str, PerkType],
        amount: Optional[Decimal] = None,
        service_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record one use of a perk and lock cancellation.

        Raises:
            NotFoundError: subscriber has no subscription
            InvalidPerkTypeError: unknown perk type
            EligibilityError: perk not available or quota exhausted
        """
        perk_type = parse_perk_type(perk_type)
        if perk_type == PerkType.DISCOUNT:
            if amount is None or Decimal(str(amount)) <= 0:
                raise EligibilityError("A positive discount amount is required")
            amount = Decimal(str(amount))

        with blocking_subscription_lock(subscriber_id):
            subscription = require_subscription_by_subscriber(self.db, subscriber_id)
            if subscription.status not in PERK_STATUSES or subscription.is_paused:
                raise InvalidStateError("Perks are only available on an active subscription")

            usage = self.get_or_create_usage(subscription)
            check = self._evaluate(usage, perk_type, amount)
            if not check["can_use"]:
                raise EligibilityError(check["reason"])

            now = datetime.now(timezone.utc)
            if perk_type == PerkType.PRIORITY_BOOKING:
                usage.priority_booking_count += 1
                usage.priority_booking_last_used_at = now
            elif perk_type == PerkType.DISCOUNT:
                usage.discount_amount_used = (usage.discount_amount_used or Decimal("0")) + amount
                usage.discount_last_used_at = now
            elif perk_type == PerkType.FREE_SERVICE:
                usage.free_service_count += 1
                usage.free_service_type = service_type
                usage.free_service_used_at = now
            else:
                usage.emergency_service_count += 1
                usage.emergency_service_used_at = now

            self._lock_cancellation(subscription, PERKS_USED_REASON, now)
            self.db.commit()

        self.cache.invalidate(subscriber_id)

        logger.info(
            f"Tracked {perk_type.value} usage",
            extra={"subscriber_id": subscriber_id, "perk_type": perk_type.value}
        )
        return {
            "success": True,
            "perk_type": perk_type.value,
            "usage": self._summarize(subscription, usage),
        }

    def can_use_perk(self, subscriber_id: str, perk_type: Union[str, PerkType]) -> Dict[str, Any]:
        try:
            perk_type = parse_perk_type(perk_type)
        except InvalidPerkTypeError as e:
            return {"can_use": False, "reason": e.message, "used": None, "limit": None}

        subscription = require_subscription_by_subscriber(self.db, subscriber_id)
        if subscription.status not in PERK_STATUSES or subscription.is_paused:
            return {
                "can_use": False,
                "reason": "Perks are only available on an active subscription",
                "used": None,
                "limit": None,
            }

        usage = self.get_usage(subscriber_id)
        if usage is None:
            plan = get_plan(subscription.tier)
            limit = plan.perks.limit_for(perk_type)
            used = Decimal("0.00") if perk_type == PerkType.DISCOUNT else 0
            if not limit:
                return {
                    "can_use": False,
                    "reason": f"{PERK_LABELS[perk_type]} is not included in the {plan.name} plan",
                    "used": _jsonable(used),
                    "limit": _jsonable(limit),
                }
            return {"can_use": True, "reason": None, "used": _jsonable(used), "limit": _jsonable(limit)}

        return self._evaluate(usage, perk_type)

    def _evaluate(self, usage: PerkUsage, perk_type: PerkType,
                  amount: Optional[Decimal] = None) -> Dict[str, Any]:
        used, limit = _used_and_limit(usage, perk_type)
        label = PERK_LABELS[perk_type]
        result = {"can_use": True, "reason": None, "used": _jsonable(used), "limit": _jsonable(limit)}

        if not limit:
            result.update(can_use=False, reason=f"{label} is not included in your current plan")
        elif perk_type == PerkType.DISCOUNT:
            requested = amount if amount is not None else Decimal("0.01")
            if used + requested > limit:
                remaining = max(Decimal("0.00"), limit - used)
                result.update(
                    can_use=False,
                    reason=f"{label} limit reached for this billing cycle ({remaining} remaining)"
                )
        elif used >= limit:
            result.update(can_use=False, reason=f"{label} limit reached for this billing cycle")

        return result

    # ========================================================================
    # SUMMARY
    # ========================================================================

    def get_usage_summary(self, subscriber_id: str) -> Dict[str, Any]:
        cached = self.cache.get(subscriber_id)
        if cached is not None:
            return cached

        subscription = require_subscription_by_subscriber(self.db, subscriber_id)
        summary = self._summarize(subscription, self.get_usage(subscriber_id))
        self.cache.set(subscriber_id, summary)
        return summary

    def _summarize(self, subscription: Subscription, usage: Optional[PerkUsage]) -> Dict[str, Any]:
        plan = get_plan(subscription.tier)
        perks = {}
        for perk_type in PerkType:
            if usage is not None:
                used, limit = _used_and_limit(usage, perk_type)
            else:
                used = Decimal("0.00") if perk_type == PerkType.DISCOUNT else 0
                limit = plan.perks.limit_for(perk_type)
            perks[perk_type.value] = {
                "used": _jsonable(used),
                "limit": _jsonable(limit),
                "remaining": _jsonable(max(limit - used, 0)),
            }
        if usage is not None and usage.free_service_type:
            perks[PerkType.FREE_SERVICE.value]["service_type"] = usage.free_service_type

        return {
            "subscriber_id": subscription.subscriber_id,
            "tier": subscription.tier.value,
            "cycle_start": _iso(usage.cycle_start if usage else subscription.current_period_start),
            "cycle_end": _iso(usage.cycle_end if usage else subscription.current_period_end),
            "perks": perks,
            "visit_allowance": usage.visit_allowance if usage else plan.visits_per_month,
            "pending_carryover_visits": usage.carryover_visits if usage else 0,
            "can_cancel": subscription.can_cancel,
            "cancellation_blocked_reason": subscription.cancellation_blocked_reason,
        }

    # ========================================================================
    # CANCELLATION LOCK
    # ========================================================================

    def _lock_cancellation(self, subscription: Subscription, reason: str, now: datetime) -> None:
        if subscription.can_cancel or not subscription.cancellation_blocked_reason:
            subscription.can_cancel = False
            subscription.cancellation_blocked_reason = reason
            subscription.cancellation_blocked_at = now
            logger.info(
                "Cancellation locked",
                extra={"subscriber_id": subscription.subscriber_id, "reason": reason}
            )

    def block_cancellation(self, subscriber_id: str, reason: str) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise EligibilityError("A reason is required to block cancellation")

        with blocking_subscription_lock(subscriber_id):
            subscription = require_subscription_by_subscriber(self.db, subscriber_id)
            subscription.can_cancel = False
            subscription.cancellation_blocked_reason = reason.strip()
            subscription.cancellation_blocked_at = datetime.now(timezone.utc)
            self.db.commit()

        self.cache.invalidate(subscriber_id)
        logger.info("Cancellation blocked", extra={"subscriber_id": subscriber_id, "reason": reason})
        return {"success": True, "can_cancel": False, "reason": subscription.cancellation_blocked_reason}

    def allow_cancellation(self, subscriber_id: str) -> Dict[str, Any]:
        """Administrative override; nothing calls this automatically"""
        with blocking_subscription_lock(subscriber_id):
            subscription = require_subscription_by_subscriber(self.db, subscriber_id)
            subscription.can_cancel = True
            subscription.cancellation_blocked_reason = None
            subscription.cancellation_blocked_at = None
            self.db.commit()

        self.cache.invalidate(subscriber_id)
        logger.warning("Cancellation lock lifted by override", extra={"subscriber_id": subscriber_id})
        return {"success": True, "can_cancel": True}

    # ========================================================================
    # CYCLE MAINTENANCE (caller holds the subscription lock and drops the
    # cache after its commit)
    # ========================================================================

    def apply_visit_carryover(self, subscription: Subscription, visits: int) -> PerkUsage:
        """Record carryover to be folded into the next cycle's visit allowance"""
        usage = self.get_or_create_usage(subscription)
        usage.carryover_visits = max(0, min(int(visits), settings.MAX_CARRYOVER_VISITS))
        return usage

    def apply_tier_quotas(self, subscription: Subscription) -> Optional[PerkUsage]:
        """Raise the current cycle's quotas to the subscription's (new) tier"""
        usage = self.get_usage(subscription.subscriber_id)
        if usage is None:
            return None
        plan = get_plan(subscription.tier)
        usage.tier = subscription.tier
        usage.max_priority_bookings = plan.perks.priority_bookings
        usage.max_discount_amount = plan.perks.discount_amount
        usage.max_free_services = plan.perks.free_services
        usage.max_emergency_services = plan.perks.emergency_services
        usage.visit_allowance = max(usage.visit_allowance or 0, plan.visits_per_month)
        return usage

    def reset_for_new_cycle(self, subscription: Subscription,
                            cycle_start: datetime, cycle_end: datetime) -> PerkUsage:
        """Zero counters, re-derive quotas from the tier and fold in carryover"""
        usage = self.get_or_create_usage(subscription)
        plan = get_plan(subscription.tier)

        usage.tier = subscription.tier
        usage.priority_booking_count = 0
        usage.discount_amount_used = Decimal("0.00")
        usage.free_service_count = 0
        usage.free_service_type = None
        usage.emergency_service_count = 0
        usage.priority_booking_last_used_at = None
        usage.discount_last_used_at = None
        usage.free_service_used_at = None
        usage.emergency_service_used_at = None
        usage.max_priority_bookings = plan.perks.priority_bookings
        usage.max_discount_amount = plan.perks.discount_amount
        usage.max_free_services = plan.perks.free_services
        usage.max_emergency_services = plan.perks.emergency_services
        usage.visit_allowance = plan.visits_per_month + (usage.carryover_visits or 0)
        usage.carryover_visits = 0
        usage.cycle_start = cycle_start
        usage.cycle_end = cycle_end
        return usage


def _used_and_limit(usage: PerkUsage, perk_type: PerkType):
    if perk_type == PerkType.PRIORITY_BOOKING:
        return usage.priority_booking_count or 0, usage.max_priority_bookings or 0
    if perk_type == PerkType.DISCOUNT:
        return (
            Decimal(str(usage.discount_amount_used or 0)),
            Decimal(str(usage.max_discount_amount or 0)),
        )
    if perk_type == PerkType.FREE_SERVICE:
        return usage.free_service_count or 0, usage.max_free_services or 0
    return usage.emergency_service_count or 0, usage.max_emergency_services or 0


def _jsonable(value):
    if isinstance(value, Decimal):
        return str(value.quantize(Decimal("0.01")))
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
