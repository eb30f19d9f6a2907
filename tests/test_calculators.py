"""
Unit tests for the plan catalog, proration and carryover calculators.

These are pure functions: no database, no gateway.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from subscription_lifecycle.core.exceptions import InvalidBillingPeriodError, InvalidTierError
from subscription_lifecycle.models.subscription import PaymentFrequency, PerkType, SubscriptionTier
from subscription_lifecycle.services.carryover import calculate_carryover
from subscription_lifecycle.services.plan_catalog import (
    billing_period_length,
    gateway_price_id,
    get_plan,
    is_upgrade,
    list_plans,
    parse_billing_period,
    parse_tier,
    plan_for_price_id,
    price_for,
)
from subscription_lifecycle.services.proration import calculate_proration

STARTER = SubscriptionTier.STARTER
HOMECARE = SubscriptionTier.HOMECARE
PRIORITY = SubscriptionTier.PRIORITY


class TestPlanCatalog:
    """Tier ordering, prices and parsing"""

    def test_upgrade_ordering(self):
        assert is_upgrade(STARTER, HOMECARE)
        assert is_upgrade(HOMECARE, PRIORITY)
        assert is_upgrade(STARTER, PRIORITY)

        assert not is_upgrade(HOMECARE, STARTER)
        assert not is_upgrade(PRIORITY, HOMECARE)
        assert not is_upgrade(PRIORITY, STARTER)

    @pytest.mark.parametrize("tier", list(SubscriptionTier))
    def test_same_tier_is_not_upgrade(self, tier):
        assert not is_upgrade(tier, tier)

    def test_prices(self):
        assert price_for(STARTER, PaymentFrequency.MONTHLY) == Decimal("21.99")
        assert price_for(HOMECARE, "monthly") == Decimal("54.99")
        assert price_for(PRIORITY, "YEARLY") == Decimal("1306.69")

    def test_visits_and_perk_quotas(self):
        assert get_plan(STARTER).visits_per_month == 1
        assert get_plan(PRIORITY).visits_per_month == 2
        assert get_plan(HOMECARE).perks.limit_for(PerkType.EMERGENCY_SERVICE) == 0
        assert get_plan(PRIORITY).perks.limit_for(PerkType.EMERGENCY_SERVICE) == 1
        assert get_plan(HOMECARE).perks.limit_for(PerkType.DISCOUNT) == Decimal("50.00")

    def test_list_plans_sorted_by_rank(self):
        assert [plan.tier for plan in list_plans()] == [STARTER, HOMECARE, PRIORITY]

    def test_parse_tier_is_case_insensitive(self):
        assert parse_tier(" homecare ") == HOMECARE

    def test_unknown_tier_rejected(self):
        with pytest.raises(InvalidTierError) as exc_info:
            parse_tier("PLATINUM")
        assert "PLATINUM" in exc_info.value.message

    def test_unknown_billing_period_rejected(self):
        with pytest.raises(InvalidBillingPeriodError):
            parse_billing_period("weekly")

    def test_billing_period_lengths(self):
        assert billing_period_length("MONTHLY").days == 30
        assert billing_period_length(PaymentFrequency.YEARLY).days == 365

    def test_price_id_reverse_lookup(self):
        price_id = gateway_price_id(PRIORITY, PaymentFrequency.YEARLY)
        assert plan_for_price_id(price_id) == (PRIORITY, PaymentFrequency.YEARLY)
        assert plan_for_price_id("price_unknown") is None
        assert plan_for_price_id(None) is None


class TestProration:
    """Mid-cycle price deltas"""

    period_start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    period_end = datetime(2024, 2, 1, tzinfo=timezone.utc)

    def test_mid_cycle_upgrade_charges_now(self):
        result = calculate_proration(
            self.period_start, self.period_end,
            Decimal("21.99"), Decimal("54.99"),
            now=datetime(2024, 1, 16, tzinfo=timezone.utc)
        )

        assert result.total_days == 31
        assert result.remaining_days == 16
        assert result.prorated_difference > 0
        assert result.immediate_charge == Decimal("17.03")
        assert result.credit_amount == Decimal("0.00")
        assert result.new_price == Decimal("54.99")
        assert result.next_amount == Decimal("54.99")

    def test_mid_cycle_downgrade_credits_next_invoice(self):
        result = calculate_proration(
            self.period_start, self.period_end,
            Decimal("54.99"), Decimal("21.99"),
            now=datetime(2024, 1, 16, tzinfo=timezone.utc)
        )

        assert result.prorated_difference < 0
        assert result.immediate_charge == Decimal("0.00")
        assert result.credit_amount == Decimal("17.03")
        assert result.next_amount == Decimal("21.99")

    def test_same_day_period_never_divides_by_zero(self):
        result = calculate_proration(
            self.period_start, self.period_start,
            Decimal("21.99"), Decimal("54.99"),
            now=self.period_start
        )

        assert result.total_days == 1
        assert result.remaining_days == 0
        assert result.prorated_difference == Decimal("0.00")

    def test_change_after_period_end_has_no_remaining_days(self):
        result = calculate_proration(
            self.period_start, self.period_end,
            Decimal("21.99"), Decimal("54.99"),
            now=datetime(2024, 3, 1, tzinfo=timezone.utc)
        )

        assert result.remaining_days == 0
        assert result.immediate_charge == Decimal("0.00")
        assert result.credit_amount == Decimal("0.00")

    def test_to_dict_serializes_money_as_strings(self):
        result = calculate_proration(
            self.period_start, self.period_end,
            Decimal("21.99"), Decimal("54.99"),
            now=datetime(2024, 1, 16, tzinfo=timezone.utc),
            billing_cycle=PaymentFrequency.MONTHLY
        )
        data = result.to_dict()

        assert data["immediate_charge"] == "17.03"
        assert data["billing_cycle"] == "MONTHLY"


class TestCarryover:
    """Unused visit credits across tier changes"""

    def test_priority_to_homecare_with_one_used_visit(self):
        result = calculate_carryover("subscriber-1", PRIORITY, HOMECARE, used_visits=1)

        assert result.unused_visits == 1
        assert result.carryover_visits == 1
        assert result.total_visits_next_period == 2

    def test_carryover_capped_at_two(self):
        result = calculate_carryover("subscriber-1", PRIORITY, STARTER, used_visits=0)

        assert result.unused_visits == 2
        assert result.carryover_visits == 2
        assert result.total_visits_next_period == 3

    def test_explicit_cap_overrides_setting(self):
        result = calculate_carryover("subscriber-1", PRIORITY, STARTER, used_visits=0, max_carryover=1)
        assert result.carryover_visits == 1

    def test_overused_allowance_carries_nothing(self):
        result = calculate_carryover("subscriber-1", HOMECARE, STARTER, used_visits=3)

        assert result.unused_visits == 0
        assert result.carryover_visits == 0
        assert result.total_visits_next_period == 1
