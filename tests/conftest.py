"""
Pytest configuration and shared fixtures for subscription lifecycle tests
"""

import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

# Point the module-level engine at SQLite before the package is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy.orm import sessionmaker  # noqa: E402

from subscription_lifecycle.core import redis_lock  # noqa: E402
from subscription_lifecycle.core.database import Base, build_engine  # noqa: E402
from subscription_lifecycle.models.subscription import (  # noqa: E402
    PaymentFrequency,
    Subscriber,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from subscription_lifecycle.services.notification_publisher import notification_publisher  # noqa: E402
from subscription_lifecycle.services.plan_catalog import get_plan  # noqa: E402


@pytest.fixture
def db_session():
    """In-memory SQLite session with all tables created"""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """Redis stand-in: every lock is acquired and the cache is always cold"""
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True
    client.get.return_value = None
    monkeypatch.setattr(redis_lock, "redis_client", client)
    return client


@pytest.fixture(autouse=True)
def fake_async_redis(monkeypatch):
    """asyncio Redis stand-in for subscription_lock: every lock is acquired"""
    client = MagicMock()
    client.lock.return_value.acquire = AsyncMock(return_value=True)
    client.lock.return_value.release = AsyncMock()
    monkeypatch.setattr(redis_lock, "get_async_redis_client", lambda: client)
    return client


@pytest.fixture(autouse=True)
def silent_publisher(monkeypatch):
    """Keep the shared RabbitMQ publisher from connecting"""
    publish = MagicMock(return_value=True)
    monkeypatch.setattr(notification_publisher, "publish", publish)
    return publish


@pytest.fixture
def mock_gateway():
    """Payment gateway client with async methods"""
    gateway = MagicMock()
    gateway.create_customer = AsyncMock(return_value={"id": "cus_test_1"})
    gateway.retrieve_customer = AsyncMock(return_value={"id": "cus_test_1", "email": None})
    gateway.create_subscription = AsyncMock()
    gateway.retrieve_subscription = AsyncMock()
    gateway.update_subscription = AsyncMock(return_value={"id": "sub_gw_1"})
    gateway.cancel_subscription = AsyncMock(return_value={"id": "sub_gw_1", "status": "canceled"})
    gateway.pause_subscription = AsyncMock(return_value={"id": "sub_gw_1"})
    gateway.resume_subscription = AsyncMock(return_value={"id": "sub_gw_1"})
    return gateway


@pytest.fixture
def mock_bookings():
    """Booking service client with no upcoming appointments"""
    bookings = MagicMock()
    bookings.has_active_appointments = AsyncMock(return_value=False)
    return bookings


@pytest.fixture
def mock_notifier():
    notifier = MagicMock()
    notifier.publish.return_value = True
    return notifier


@pytest.fixture
def make_subscriber(db_session):
    def _make(email=None, full_name="Test Homeowner"):
        subscriber = Subscriber(
            email=email or f"{uuid.uuid4().hex[:10]}@example.com",
            full_name=full_name
        )
        db_session.add(subscriber)
        db_session.commit()
        return subscriber

    return _make


@pytest.fixture
def make_subscription(db_session, make_subscriber):
    """Create a subscriber with a subscription mid-way through a monthly period"""
    def _make(
        tier=SubscriptionTier.HOMECARE,
        status=SubscriptionStatus.ACTIVE,
        period_start=None,
        period_end=None,
        gateway_subscription_id=None,
        gateway_customer_id=None,
        subscriber=None,
        **overrides
    ):
        subscriber = subscriber or make_subscriber()
        now = datetime.now(timezone.utc)
        subscription = Subscription(
            subscriber_id=subscriber.id,
            tier=tier,
            status=status,
            payment_frequency=PaymentFrequency.MONTHLY,
            current_period_start=period_start or now - timedelta(days=10),
            current_period_end=period_end or now + timedelta(days=20),
            next_payment_amount=Decimal(get_plan(tier).monthly_price),
            gateway_subscription_id=gateway_subscription_id,
            gateway_customer_id=gateway_customer_id,
            **overrides
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make
