"""Database models for the subscription lifecycle service"""
from .subscription import (
    Subscriber,
    Subscription,
    SubscriptionPause,
    PerkUsage,
    SubscriptionChange,
    WebhookEvent,
    SubscriptionTier,
    SubscriptionStatus,
    PaymentFrequency,
    PauseReason,
    PauseStatus,
    PerkType,
    WebhookEventStatus
)

__all__ = [
    "Subscriber",
    "Subscription",
    "SubscriptionPause",
    "PerkUsage",
    "SubscriptionChange",
    "WebhookEvent",
    "SubscriptionTier",
    "SubscriptionStatus",
    "PaymentFrequency",
    "PauseReason",
    "PauseStatus",
    "PerkType",
    "WebhookEventStatus"
]
