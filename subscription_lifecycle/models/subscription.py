import enum
import uuid

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Enum, Float, ForeignKey, Index, Integer, JSON, Numeric, String, Text
)
from sqlalchemy.orm import relationship

from ..core.database import Base, UTCDateTime, utcnow


class SubscriptionTier(str, enum.Enum):
    STARTER = "STARTER"
    HOMECARE = "HOMECARE"
    PRIORITY = "PRIORITY"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    PENDING_CHANGE = "PENDING_CHANGE"  # Downgrade scheduled for period end
    SUSPENDED = "SUSPENDED"  # Grace period expired without payment
    CANCELLED = "CANCELLED"


class PaymentFrequency(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class PauseReason(str, enum.Enum):
    MANUAL_PAUSE = "MANUAL_PAUSE"
    PAYMENT_FAILED = "PAYMENT_FAILED"


class PauseStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class PerkType(str, enum.Enum):
    PRIORITY_BOOKING = "priority_booking"
    DISCOUNT = "discount"
    FREE_SERVICE = "free_service"
    EMERGENCY_SERVICE = "emergency_service"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    UNRESOLVED = "unresolved"


class Subscriber(Base):
    """A homeowner account that can hold one subscription"""
    __tablename__ = "subscribers"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), nullable=False, unique=True, index=True)
    full_name = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="subscriber", uselist=False)


class Subscription(Base):
    """One subscriber's billing relationship"""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    subscriber_id = Column(String(36), ForeignKey("subscribers.id"), nullable=False, unique=True, index=True)

    tier = Column(Enum(SubscriptionTier), nullable=False)
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE, index=True)
    payment_frequency = Column(Enum(PaymentFrequency), nullable=False, default=PaymentFrequency.MONTHLY)

    # Billing period
    current_period_start = Column(UTCDateTime(), nullable=False)
    current_period_end = Column(UTCDateTime(), nullable=False, index=True)
    next_payment_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    # Pause window (set while a pause record is ACTIVE)
    is_paused = Column(Boolean, nullable=False, default=False)
    pause_start_date = Column(UTCDateTime(), nullable=True)
    pause_end_date = Column(UTCDateTime(), nullable=True)

    # Cancellation lock
    can_cancel = Column(Boolean, nullable=False, default=True)
    cancellation_blocked_reason = Column(String(255), nullable=True)
    cancellation_blocked_at = Column(UTCDateTime(), nullable=True)

    # Payment gateway references (null until first payment setup)
    gateway_customer_id = Column(String(255), nullable=True, index=True)
    gateway_subscription_id = Column(String(255), nullable=True, unique=True, index=True)
    gateway_price_id = Column(String(255), nullable=True)

    # Deferred downgrade, applied by the renewal sweep
    pending_tier = Column(Enum(SubscriptionTier), nullable=True)
    pending_payment_frequency = Column(Enum(PaymentFrequency), nullable=True)
    pending_effective_date = Column(UTCDateTime(), nullable=True)

    churn_risk_score = Column(Float, nullable=False, default=0.0)  # 0-1, written by analytics

    cancelled_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    # Optimistic concurrency
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        CheckConstraint("churn_risk_score >= 0 AND churn_risk_score <= 1", name="ck_subscriptions_churn_risk_range"),
    )

    subscriber = relationship("Subscriber", back_populates="subscription")
    pauses = relationship(
        "SubscriptionPause",
        back_populates="subscription",
        order_by="SubscriptionPause.start_date.desc()"
    )


class SubscriptionPause(Base):
    """One pause episode; append-only once COMPLETED"""
    __tablename__ = "subscription_pauses"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    subscriber_id = Column(String(36), nullable=False, index=True)

    reason = Column(Enum(PauseReason), nullable=False)
    status = Column(Enum(PauseStatus), nullable=False, default=PauseStatus.ACTIVE)
    notes = Column(Text, nullable=True)

    start_date = Column(UTCDateTime(), nullable=False)
    scheduled_end_date = Column(UTCDateTime(), nullable=True)
    end_date = Column(UTCDateTime(), nullable=True)  # Set when the pause is resolved

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)

    subscription = relationship("Subscription", back_populates="pauses")

    __table_args__ = (
        # At most one open pause per subscription
        Index(
            "uq_subscription_pauses_one_active",
            "subscription_id",
            unique=True,
            postgresql_where=(status == PauseStatus.ACTIVE),
            sqlite_where=(status == PauseStatus.ACTIVE),
        ),
    )


class PerkUsage(Base):
    """Perk consumption for the subscriber's current billing cycle"""
    __tablename__ = "perk_usage"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    subscriber_id = Column(String(36), nullable=False, unique=True, index=True)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
    tier = Column(Enum(SubscriptionTier), nullable=False)

    # Consumption (monotonic within a cycle)
    priority_booking_count = Column(Integer, nullable=False, default=0)
    discount_amount_used = Column(Numeric(10, 2), nullable=False, default=0)
    free_service_count = Column(Integer, nullable=False, default=0)
    free_service_type = Column(String(100), nullable=True)
    emergency_service_count = Column(Integer, nullable=False, default=0)

    priority_booking_last_used_at = Column(UTCDateTime(), nullable=True)
    discount_last_used_at = Column(UTCDateTime(), nullable=True)
    free_service_used_at = Column(UTCDateTime(), nullable=True)
    emergency_service_used_at = Column(UTCDateTime(), nullable=True)

    # Quotas copied from the tier when the cycle started
    max_priority_bookings = Column(Integer, nullable=False, default=0)
    max_discount_amount = Column(Numeric(10, 2), nullable=False, default=0)
    max_free_services = Column(Integer, nullable=False, default=0)
    max_emergency_services = Column(Integer, nullable=False, default=0)

    # Visit credits
    visit_allowance = Column(Integer, nullable=False, default=0)
    carryover_visits = Column(Integer, nullable=False, default=0)  # Pending, folded in at next cycle

    cycle_start = Column(UTCDateTime(), nullable=True)
    cycle_end = Column(UTCDateTime(), nullable=True)

    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def free_service_used(self) -> bool:
        return (self.free_service_count or 0) > 0

    @property
    def emergency_service_used(self) -> bool:
        return (self.emergency_service_count or 0) > 0

    @property
    def any_perk_used(self) -> bool:
        return (
            (self.priority_booking_count or 0) > 0
            or (self.discount_amount_used or 0) > 0
            or self.free_service_used
            or self.emergency_service_used
        )


class SubscriptionChange(Base):
    """Audit trail of tier changes and lifecycle transitions"""
    __tablename__ = "subscription_changes"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)
    subscriber_id = Column(String(36), nullable=False, index=True)

    change_type = Column(String(50), nullable=False)  # upgrade, downgrade, downgrade_applied, ...
    previous_tier = Column(Enum(SubscriptionTier), nullable=True)
    new_tier = Column(Enum(SubscriptionTier), nullable=True)
    previous_amount = Column(Numeric(10, 2), nullable=True)
    new_amount = Column(Numeric(10, 2), nullable=True)
    prorated_amount = Column(Numeric(10, 2), nullable=True)
    reason = Column(Text, nullable=True)

    effective_at = Column(UTCDateTime(), nullable=False)
    created_at = Column(UTCDateTime(), default=utcnow, nullable=False)


class WebhookEvent(Base):
    """Delivery log for payment gateway events; the event id makes replays detectable"""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, index=True, default=lambda: str(uuid.uuid4()))
    event_id = Column(String(255), nullable=False, unique=True, index=True)
    event_type = Column(String(100), nullable=False)
    status = Column(Enum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.RECEIVED)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    gateway_subscription_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=True)

    received_at = Column(UTCDateTime(), default=utcnow, nullable=False)
    processed_at = Column(UTCDateTime(), nullable=True)
