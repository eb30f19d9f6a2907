"""Mid-cycle proration for tier changes"""
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from ..models.subscription import PaymentFrequency

CENTS = Decimal("0.01")
SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ProrationResult:
    current_price: Decimal
    new_price: Decimal
    prorated_difference: Decimal
    immediate_charge: Decimal
    credit_amount: Decimal
    next_amount: Decimal
    remaining_days: int
    total_days: int
    billing_cycle: Optional[PaymentFrequency] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        if self.billing_cycle is not None:
            data["billing_cycle"] = self.billing_cycle.value
        return data


def _ceil_days(delta_seconds: float) -> int:
    return math.ceil(delta_seconds / SECONDS_PER_DAY)


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def calculate_proration(
    period_start: datetime,
    period_end: datetime,
    current_price: Decimal,
    new_price: Decimal,
    now: Optional[datetime] = None,
    billing_cycle: Optional[PaymentFrequency] = None
) -> ProrationResult:
    """
    Price difference for the rest of the current period.

    A positive difference is charged now; a negative one becomes a credit on
    the next invoice. The period is never treated as shorter than one day and
    a change after period end has no remaining days.
    """
    now = now or datetime.now(timezone.utc)
    current_price = Decimal(str(current_price))
    new_price = Decimal(str(new_price))

    total_days = max(1, _ceil_days((period_end - period_start).total_seconds()))
    remaining_days = max(0, _ceil_days((period_end - now).total_seconds()))
    remaining_days = min(remaining_days, total_days)

    daily_current = current_price / total_days
    daily_new = new_price / total_days
    difference = _money((daily_new - daily_current) * remaining_days)

    return ProrationResult(
        current_price=_money(current_price),
        new_price=_money(new_price),
        prorated_difference=difference,
        immediate_charge=difference if difference > 0 else Decimal("0.00"),
        credit_amount=-difference if difference < 0 else Decimal("0.00"),
        next_amount=_money(new_price),
        remaining_days=remaining_days,
        total_days=total_days,
        billing_cycle=billing_cycle,
    )
