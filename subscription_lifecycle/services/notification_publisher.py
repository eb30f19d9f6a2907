"""
Subscriber notifications over RabbitMQ.

The communications service consumes ``notification.send`` messages from the
topic exchange and renders the email/SMS. Publishing is fire-and-forget: a
broker problem is logged and reported as ``False`` but never fails the
lifecycle operation that triggered it.
"""
import logging
import json
import uuid
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import pika
from pika.exceptions import AMQPError

from ..core.config import settings

logger = logging.getLogger(__name__)


class NotificationType:
    GRACE_PERIOD_STARTED = "grace_period_started"
    PAYMENT_RECOVERED = "payment_recovered"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    PAUSE_CONFIRMED = "pause_confirmed"
    RESUME_CONFIRMED = "resume_confirmed"
    PLAN_CHANGED = "plan_changed"
    PLAN_CHANGE_APPLIED = "plan_change_applied"


def build_message(
    notification_type: str,
    subscriber_id: str,
    subscription_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {
        "message_id": str(uuid.uuid4()),
        "notification_type": notification_type,
        "subscriber_id": subscriber_id,
        "subscription_id": subscription_id,
        "data": data or {},
        "queued_at": datetime.now(timezone.utc).isoformat()
    }


class NotificationPublisher:
    """Lazily connected publisher; one blocking connection per process."""

    def __init__(self, exchange: str = None, routing_key: str = None):
        self.exchange = exchange or settings.NOTIFICATION_EXCHANGE
        self.routing_key = routing_key or settings.NOTIFICATION_ROUTING_KEY
        self.connection = None
        self.channel = None

    def _connection_parameters(self) -> pika.ConnectionParameters:
        return pika.ConnectionParameters(
            host=settings.RABBITMQ_HOST,
            port=settings.RABBITMQ_PORT,
            virtual_host=settings.RABBITMQ_VHOST,
            credentials=pika.PlainCredentials(settings.RABBITMQ_USERNAME, settings.RABBITMQ_PASSWORD),
            heartbeat=600,
            blocked_connection_timeout=300
        )

    def _reset(self) -> None:
        self.connection = None
        self.channel = None

    def _ensure_channel(self) -> bool:
        if self.connection is not None and not self.connection.is_closed:
            return True

        self._reset()
        try:
            self.connection = pika.BlockingConnection(self._connection_parameters())
            self.channel = self.connection.channel()
            self.channel.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)
        except AMQPError as e:
            logger.error(f"RabbitMQ unreachable at {settings.RABBITMQ_HOST}:{settings.RABBITMQ_PORT}: {e}")
            self._reset()
            return False

        logger.info(f"Notification publisher connected to exchange {self.exchange}")
        return True

    def publish(
        self,
        notification_type: str,
        subscriber_id: str,
        subscription_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Returns True once the broker has accepted the message."""
        extra = {
            "notification_type": notification_type,
            "subscriber_id": subscriber_id,
            "subscription_id": subscription_id
        }

        if not self._ensure_channel():
            logger.warning(f"Dropped {notification_type} notification, broker unavailable", extra=extra)
            return False

        message = build_message(notification_type, subscriber_id, subscription_id, data)
        try:
            self.channel.basic_publish(
                exchange=self.exchange,
                routing_key=self.routing_key,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(delivery_mode=2, content_type="application/json")
            )
        except AMQPError as e:
            logger.error(f"Publishing {notification_type} failed: {e}", extra=extra, exc_info=True)
            self._reset()
            return False

        logger.info(f"Queued {notification_type} notification", extra=extra)
        return True

    def close(self) -> None:
        if self.connection is not None and not self.connection.is_closed:
            try:
                self.connection.close()
            except AMQPError as e:
                logger.warning(f"RabbitMQ close failed: {e}")
        self._reset()


notification_publisher = NotificationPublisher()
