"""
Static plan catalog.

Tiers are ordered by rank; upgrade/downgrade decisions compare ranks only.
Gateway price ids come from settings so each environment can point at its own
gateway products.
"""
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Union

from ..core.config import settings
from ..core.exceptions import InvalidBillingPeriodError, InvalidTierError
from ..models.subscription import PaymentFrequency, PerkType, SubscriptionTier


@dataclass(frozen=True)
class PerkQuota:
    priority_bookings: int
    discount_amount: Decimal
    free_services: int
    emergency_services: int

    def limit_for(self, perk_type: PerkType):
        return {
            PerkType.PRIORITY_BOOKING: self.priority_bookings,
            PerkType.DISCOUNT: self.discount_amount,
            PerkType.FREE_SERVICE: self.free_services,
            PerkType.EMERGENCY_SERVICE: self.emergency_services,
        }[perk_type]


@dataclass(frozen=True)
class Plan:
    tier: SubscriptionTier
    name: str
    rank: int
    monthly_price: Decimal
    yearly_price: Decimal
    visits_per_month: int
    perks: PerkQuota

    def price_for(self, period: PaymentFrequency) -> Decimal:
        if period == PaymentFrequency.YEARLY:
            return self.yearly_price
        return self.monthly_price

    def to_dict(self) -> Dict:
        return {
            "tier": self.tier.value,
            "name": self.name,
            "rank": self.rank,
            "prices": {
                PaymentFrequency.MONTHLY.value: str(self.monthly_price),
                PaymentFrequency.YEARLY.value: str(self.yearly_price),
            },
            "visits_per_month": self.visits_per_month,
            "perks": {
                "priority_bookings": self.perks.priority_bookings,
                "discount_amount": str(self.perks.discount_amount),
                "free_services": self.perks.free_services,
                "emergency_services": self.perks.emergency_services,
            },
        }


PLANS: Dict[SubscriptionTier, Plan] = {
    SubscriptionTier.STARTER: Plan(
        tier=SubscriptionTier.STARTER,
        name="Starter",
        rank=1,
        monthly_price=Decimal("21.99"),
        yearly_price=Decimal("237.49"),
        visits_per_month=1,
        perks=PerkQuota(0, Decimal("0.00"), 0, 0),
    ),
    SubscriptionTier.HOMECARE: Plan(
        tier=SubscriptionTier.HOMECARE,
        name="HomeCare",
        rank=2,
        monthly_price=Decimal("54.99"),
        yearly_price=Decimal("593.89"),
        visits_per_month=1,
        perks=PerkQuota(2, Decimal("50.00"), 1, 0),
    ),
    SubscriptionTier.PRIORITY: Plan(
        tier=SubscriptionTier.PRIORITY,
        name="Priority",
        rank=3,
        monthly_price=Decimal("120.99"),
        yearly_price=Decimal("1306.69"),
        visits_per_month=2,
        perks=PerkQuota(5, Decimal("100.00"), 2, 1),
    ),
}


def parse_tier(value: Union[str, SubscriptionTier]) -> SubscriptionTier:
    if isinstance(value, SubscriptionTier):
        return value
    try:
        return SubscriptionTier(str(value).strip().upper())
    except ValueError:
        raise InvalidTierError(
            f"Unknown plan tier '{value}'. Choose one of: "
            f"{', '.join(t.value for t in SubscriptionTier)}"
        )


def parse_billing_period(value: Union[str, PaymentFrequency]) -> PaymentFrequency:
    if isinstance(value, PaymentFrequency):
        return value
    try:
        return PaymentFrequency(str(value).strip().upper())
    except ValueError:
        raise InvalidBillingPeriodError(
            f"Unknown billing period '{value}'. Choose MONTHLY or YEARLY"
        )


def get_plan(tier: Union[str, SubscriptionTier]) -> Plan:
    return PLANS[parse_tier(tier)]


def list_plans() -> List[Plan]:
    return sorted(PLANS.values(), key=lambda plan: plan.rank)


def price_for(tier: Union[str, SubscriptionTier], period: Union[str, PaymentFrequency]) -> Decimal:
    return get_plan(tier).price_for(parse_billing_period(period))


def gateway_price_id(tier: Union[str, SubscriptionTier], period: Union[str, PaymentFrequency]) -> str:
    """Gateway price id configured for a tier/billing period pair"""
    tier = parse_tier(tier)
    period = parse_billing_period(period)
    return getattr(settings, f"STRIPE_PRICE_{tier.value}_{period.value}")


def is_upgrade(current_tier: Union[str, SubscriptionTier], new_tier: Union[str, SubscriptionTier]) -> bool:
    """True only when new_tier ranks strictly above current_tier"""
    return get_plan(new_tier).rank > get_plan(current_tier).rank


def billing_period_length(period: Union[str, PaymentFrequency]) -> timedelta:
    if parse_billing_period(period) == PaymentFrequency.YEARLY:
        return timedelta(days=365)
    return timedelta(days=30)


def plan_for_price_id(price_id: Optional[str]) -> Optional[Tuple[SubscriptionTier, PaymentFrequency]]:
    """Reverse lookup of a gateway price id"""
    if not price_id:
        return None
    for tier in SubscriptionTier:
        for period in PaymentFrequency:
            if gateway_price_id(tier, period) == price_id:
                return tier, period
    return None
