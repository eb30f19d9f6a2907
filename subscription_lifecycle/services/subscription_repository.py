"""
Persistence helpers shared by the lifecycle services.

Lookups are keyed by subscriber id, subscription id or gateway subscription
id. `upsert_subscription` is the single place where a subscription row is
created, so the local create path and the gateway webhook path converge on
one row per subscriber.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import NotFoundError
from ..models.subscription import (
    Subscriber,
    Subscription,
    SubscriptionChange,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)


def get_subscriber(db: Session, subscriber_id: str) -> Optional[Subscriber]:
    return db.query(Subscriber).filter(Subscriber.id == subscriber_id).first()


def get_subscriber_by_email(db: Session, email: str) -> Optional[Subscriber]:
    if not email:
        return None
    return db.query(Subscriber).filter(Subscriber.email == email.strip().lower()).first()


def get_subscription_by_subscriber(db: Session, subscriber_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.subscriber_id == subscriber_id).first()


def get_subscription(db: Session, subscription_id: str) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.id == subscription_id).first()


def get_subscription_by_gateway_id(db: Session, gateway_subscription_id: str) -> Optional[Subscription]:
    if not gateway_subscription_id:
        return None
    return db.query(Subscription).filter(
        Subscription.gateway_subscription_id == gateway_subscription_id
    ).first()


def get_subscription_by_gateway_customer(db: Session, gateway_customer_id: str) -> Optional[Subscription]:
    if not gateway_customer_id:
        return None
    return db.query(Subscription).filter(
        Subscription.gateway_customer_id == gateway_customer_id
    ).first()


def require_subscription_by_subscriber(db: Session, subscriber_id: str) -> Subscription:
    subscription = get_subscription_by_subscriber(db, subscriber_id)
    if not subscription:
        raise NotFoundError(f"No subscription found for subscriber {subscriber_id}")
    return subscription


def require_subscription(db: Session, subscription_id: str) -> Subscription:
    subscription = get_subscription(db, subscription_id)
    if not subscription:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


def _apply(subscription: Subscription, values: Dict[str, Any]) -> None:
    for key, value in values.items():
        setattr(subscription, key, value)


def upsert_subscription(
    db: Session,
    subscriber_id: str,
    values: Dict[str, Any],
    gateway_subscription_id: Optional[str] = None
) -> Tuple[Subscription, bool]:
    """
    Create or update the subscriber's subscription.

    Looks up by gateway subscription id first, then by subscriber id. If a
    concurrent writer inserts the same subscriber between our read and our
    insert, the unique constraint fires and we re-read and update instead.
    Call this before making other changes in the session: the race path
    rolls the session back.

    Returns:
        (subscription, created)
    """
    if gateway_subscription_id:
        values = {**values, "gateway_subscription_id": gateway_subscription_id}

    subscription = get_subscription_by_gateway_id(db, gateway_subscription_id)
    if subscription is None:
        subscription = get_subscription_by_subscriber(db, subscriber_id)

    if subscription is not None:
        _apply(subscription, values)
        db.flush()
        return subscription, False

    subscription = Subscription(subscriber_id=subscriber_id, **values)
    db.add(subscription)
    try:
        db.flush()
        return subscription, True
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Concurrent subscription insert detected, updating existing row",
            extra={"subscriber_id": subscriber_id, "gateway_subscription_id": gateway_subscription_id}
        )

    subscription = (
        get_subscription_by_gateway_id(db, gateway_subscription_id)
        or get_subscription_by_subscriber(db, subscriber_id)
    )
    if subscription is None:
        raise NotFoundError(f"Subscription for subscriber {subscriber_id} vanished during upsert")
    _apply(subscription, values)
    db.flush()
    return subscription, False


def log_subscription_change(
    db: Session,
    subscription: Subscription,
    change_type: str,
    previous_tier: Optional[SubscriptionTier] = None,
    new_tier: Optional[SubscriptionTier] = None,
    previous_amount: Optional[Decimal] = None,
    new_amount: Optional[Decimal] = None,
    prorated_amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
    effective_at: Optional[datetime] = None
) -> SubscriptionChange:
    """Log a subscription change for audit trail"""
    change = SubscriptionChange(
        subscription_id=subscription.id,
        subscriber_id=subscription.subscriber_id,
        change_type=change_type,
        previous_tier=previous_tier,
        new_tier=new_tier,
        previous_amount=previous_amount,
        new_amount=new_amount,
        prorated_amount=prorated_amount,
        reason=reason,
        effective_at=effective_at or datetime.now(timezone.utc)
    )
    db.add(change)
    return change
