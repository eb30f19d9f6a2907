"""Custom exceptions for the subscription lifecycle service"""
from typing import List, Optional


class SubscriptionLifecycleError(Exception):
    """Base exception for subscription lifecycle errors.

    `message` is shown to the caller as-is, so it should say what to do next.
    """

    code = "subscription_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(SubscriptionLifecycleError):
    """Subscriber or subscription not found"""
    code = "not_found"


class InvalidStateError(SubscriptionLifecycleError):
    """Action is not valid for the subscription's current status"""
    code = "invalid_state"


class InvalidTierError(SubscriptionLifecycleError):
    """Unknown plan tier"""
    code = "invalid_tier"


class InvalidBillingPeriodError(SubscriptionLifecycleError):
    """Unknown billing period"""
    code = "invalid_billing_period"


class InvalidPerkTypeError(SubscriptionLifecycleError):
    """Unknown perk type"""
    code = "invalid_perk_type"


class NoOpError(SubscriptionLifecycleError):
    """Requested change would leave the subscription unchanged"""
    code = "no_op"


class DowngradeBlockedError(SubscriptionLifecycleError):
    """Downgrade rejected because tier-exclusive perks were used this cycle"""
    code = "downgrade_blocked"

    def __init__(self, restrictions: List[str]):
        self.restrictions = list(restrictions)
        message = (
            f"Cannot downgrade: {'; '.join(self.restrictions)}. "
            "Please wait until next billing cycle."
        )
        super().__init__(message)


class EligibilityError(SubscriptionLifecycleError):
    """Subscriber is not eligible for the requested action"""
    code = "not_eligible"


class CancellationBlockedError(SubscriptionLifecycleError):
    """Self-service cancellation is locked"""
    code = "cancellation_blocked"


class ExternalGatewayError(SubscriptionLifecycleError):
    """Payment gateway call failed or timed out"""
    code = "gateway_error"

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class BookingServiceError(SubscriptionLifecycleError):
    """Booking service could not answer an appointment lookup"""
    code = "booking_service_error"


class UnresolvedWebhookEventError(SubscriptionLifecycleError):
    """Webhook event could not be attributed to a local subscriber"""
    code = "unresolved_webhook_event"

    def __init__(self, event_id: str, reason: str):
        super().__init__(f"Could not resolve owner for webhook event {event_id}: {reason}")
        self.event_id = event_id
        self.reason = reason
