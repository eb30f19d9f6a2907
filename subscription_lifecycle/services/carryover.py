"""Unused visit credits that follow a subscriber across a tier change"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..core.config import settings
from ..models.subscription import SubscriptionTier
from .plan_catalog import get_plan


@dataclass(frozen=True)
class CarryoverResult:
    subscriber_id: str
    current_visits_per_month: int
    new_visits_per_month: int
    used_visits: int
    unused_visits: int
    carryover_visits: int
    total_visits_next_period: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriber_id": self.subscriber_id,
            "current_visits_per_month": self.current_visits_per_month,
            "new_visits_per_month": self.new_visits_per_month,
            "used_visits": self.used_visits,
            "unused_visits": self.unused_visits,
            "carryover_visits": self.carryover_visits,
            "total_visits_next_period": self.total_visits_next_period,
        }


def calculate_carryover(
    subscriber_id: str,
    current_tier: Union[str, SubscriptionTier],
    new_tier: Union[str, SubscriptionTier],
    used_visits: int,
    max_carryover: Optional[int] = None
) -> CarryoverResult:
    """Carryover is capped at MAX_CARRYOVER_VISITS whatever the tiers involved."""
    if max_carryover is None:
        max_carryover = settings.MAX_CARRYOVER_VISITS

    current_visits = get_plan(current_tier).visits_per_month
    new_visits = get_plan(new_tier).visits_per_month
    used_visits = max(0, int(used_visits or 0))

    unused = max(0, current_visits - used_visits)
    carryover = min(max_carryover, unused)

    return CarryoverResult(
        subscriber_id=subscriber_id,
        current_visits_per_month=current_visits,
        new_visits_per_month=new_visits,
        used_visits=used_visits,
        unused_visits=unused,
        carryover_visits=carryover,
        total_visits_next_period=new_visits + carryover,
    )
