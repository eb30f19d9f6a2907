"""Business logic services for the subscription lifecycle"""

from .subscription_service import SubscriptionService
from .plan_change_service import PlanChangeService
from .pause_service import PauseService
from .perk_usage_service import PerkUsageService, UsageCache
from .webhook_reconciler import WebhookReconciler, OwnershipResolver
from .gateway_client import GatewayClient, gateway_client
from .booking_client import BookingClient, booking_client
from .notification_publisher import NotificationPublisher, NotificationType, notification_publisher

__all__ = [
    "SubscriptionService",
    "PlanChangeService",
    "PauseService",
    "PerkUsageService",
    "UsageCache",
    "WebhookReconciler",
    "OwnershipResolver",
    "GatewayClient",
    "gateway_client",
    "BookingClient",
    "booking_client",
    "NotificationPublisher",
    "NotificationType",
    "notification_publisher",
]
