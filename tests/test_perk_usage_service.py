"""
Tests for the perk usage ledger and the cancellation lock.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

from subscription_lifecycle.core.exceptions import (
    EligibilityError,
    InvalidPerkTypeError,
    InvalidStateError,
    NotFoundError,
)
from subscription_lifecycle.models.subscription import PerkType, PerkUsage, SubscriptionTier
from subscription_lifecycle.services.perk_usage_service import PERKS_USED_REASON, PerkUsageService


@pytest.fixture
def mock_cache():
    cache = MagicMock()
    cache.get.return_value = None
    return cache


@pytest.fixture
def perk_service(db_session, mock_cache):
    return PerkUsageService(db_session, cache=mock_cache)


class TestTrackPerkUsage:
    """Consumption against tier quotas"""

    def test_first_use_creates_record_and_locks_cancellation(self, db_session, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)

        result = perk_service.track_perk_usage(subscription.subscriber_id, "priority_booking")

        assert result["success"] is True
        usage = db_session.query(PerkUsage).filter_by(subscriber_id=subscription.subscriber_id).one()
        assert usage.priority_booking_count == 1
        assert usage.priority_booking_last_used_at is not None
        assert usage.max_priority_bookings == 2

        db_session.refresh(subscription)
        assert subscription.can_cancel is False
        assert subscription.cancellation_blocked_reason == PERKS_USED_REASON
        assert subscription.cancellation_blocked_at is not None

    def test_write_invalidates_cached_summary(self, perk_service, mock_cache, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)

        perk_service.track_perk_usage(subscription.subscriber_id, PerkType.PRIORITY_BOOKING)

        mock_cache.invalidate.assert_called_with(subscription.subscriber_id)

    def test_free_service_quota_enforced(self, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)
        perk_service.track_perk_usage(subscription.subscriber_id, "free_service", service_type="gutter_cleaning")

        with pytest.raises(EligibilityError) as exc_info:
            perk_service.track_perk_usage(subscription.subscriber_id, "free_service")

        assert "limit reached" in exc_info.value.message

    def test_discount_amount_cannot_exceed_quota(self, db_session, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)
        perk_service.track_perk_usage(subscription.subscriber_id, "discount", amount=Decimal("30.00"))

        with pytest.raises(EligibilityError):
            perk_service.track_perk_usage(subscription.subscriber_id, "discount", amount=Decimal("30.00"))

        usage = perk_service.get_usage(subscription.subscriber_id)
        db_session.refresh(usage)
        assert usage.discount_amount_used == Decimal("30.00")

    def test_discount_requires_positive_amount(self, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)

        with pytest.raises(EligibilityError):
            perk_service.track_perk_usage(subscription.subscriber_id, "discount")

    def test_perk_not_in_plan_is_rejected(self, db_session, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.STARTER)

        with pytest.raises(EligibilityError) as exc_info:
            perk_service.track_perk_usage(subscription.subscriber_id, "emergency_service")

        assert "not included" in exc_info.value.message
        db_session.refresh(subscription)
        assert subscription.can_cancel is True

    def test_unknown_perk_type(self, perk_service, make_subscription):
        subscription = make_subscription()

        with pytest.raises(InvalidPerkTypeError):
            perk_service.track_perk_usage(subscription.subscriber_id, "free_pizza")

    def test_no_subscription(self, perk_service):
        with pytest.raises(NotFoundError):
            perk_service.track_perk_usage("missing-subscriber", "priority_booking")

    def test_paused_subscription_cannot_use_perks(self, perk_service, make_subscription):
        subscription = make_subscription(is_paused=True)

        with pytest.raises(InvalidStateError):
            perk_service.track_perk_usage(subscription.subscriber_id, "priority_booking")


class TestCanUsePerk:

    def test_unknown_type_returns_reason_instead_of_raising(self, perk_service, make_subscription):
        subscription = make_subscription()

        result = perk_service.can_use_perk(subscription.subscriber_id, "free_pizza")

        assert result["can_use"] is False
        assert "free_pizza" in result["reason"]

    def test_before_first_use_reports_tier_quota(self, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.PRIORITY)

        result = perk_service.can_use_perk(subscription.subscriber_id, "emergency_service")

        assert result == {"can_use": True, "reason": None, "used": 0, "limit": 1}

    def test_exhausted_quota(self, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.PRIORITY)
        perk_service.track_perk_usage(subscription.subscriber_id, "emergency_service")

        result = perk_service.can_use_perk(subscription.subscriber_id, "emergency_service")

        assert result["can_use"] is False
        assert result["used"] == 1


class TestCancellationLock:

    def test_lock_survives_new_cycle(self, db_session, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)
        perk_service.track_perk_usage(subscription.subscriber_id, "priority_booking")

        now = datetime.now(timezone.utc)
        perk_service.reset_for_new_cycle(subscription, now, now + timedelta(days=30))
        db_session.commit()

        db_session.refresh(subscription)
        usage = perk_service.get_usage(subscription.subscriber_id)
        assert usage.priority_booking_count == 0
        assert subscription.can_cancel is False

    def test_only_explicit_override_lifts_lock(self, db_session, perk_service, make_subscription):
        subscription = make_subscription()
        perk_service.block_cancellation(subscription.subscriber_id, "Disputed charge under review")

        db_session.refresh(subscription)
        assert subscription.can_cancel is False
        assert subscription.cancellation_blocked_reason == "Disputed charge under review"

        perk_service.allow_cancellation(subscription.subscriber_id)

        db_session.refresh(subscription)
        assert subscription.can_cancel is True
        assert subscription.cancellation_blocked_reason is None

    def test_block_requires_reason(self, perk_service, make_subscription):
        subscription = make_subscription()

        with pytest.raises(EligibilityError):
            perk_service.block_cancellation(subscription.subscriber_id, "  ")


class TestCycleMaintenance:

    def test_carryover_folded_into_next_cycle(self, db_session, perk_service, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.HOMECARE)
        perk_service.apply_visit_carryover(subscription, 5)
        db_session.commit()

        usage = perk_service.get_usage(subscription.subscriber_id)
        assert usage.carryover_visits == 2

        now = datetime.now(timezone.utc)
        perk_service.reset_for_new_cycle(subscription, now, now + timedelta(days=30))
        db_session.commit()

        db_session.refresh(usage)
        assert usage.visit_allowance == 3
        assert usage.carryover_visits == 0

    def test_summary_is_cached(self, perk_service, mock_cache, make_subscription):
        subscription = make_subscription(tier=SubscriptionTier.PRIORITY)

        summary = perk_service.get_usage_summary(subscription.subscriber_id)

        assert summary["perks"]["discount"] == {"used": "0.00", "limit": "100.00", "remaining": "100.00"}
        assert summary["visit_allowance"] == 2
        mock_cache.set.assert_called_once_with(subscription.subscriber_id, summary)
