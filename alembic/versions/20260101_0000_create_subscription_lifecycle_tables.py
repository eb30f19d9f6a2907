"""create subscription lifecycle tables

Revision ID: 20260101_0000
Revises:
Create Date: 2026-01-01 00:00:00.000000

Base migration creating subscribers, subscriptions, pauses, perk usage,
the change audit trail and the webhook event log.

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '20260101_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


subscription_tier = postgresql.ENUM(
    'STARTER', 'HOMECARE', 'PRIORITY', name='subscriptiontier', create_type=False
)
subscription_status = postgresql.ENUM(
    'ACTIVE', 'PAST_DUE', 'PENDING_CHANGE', 'SUSPENDED', 'CANCELLED',
    name='subscriptionstatus', create_type=False
)
payment_frequency = postgresql.ENUM('MONTHLY', 'YEARLY', name='paymentfrequency', create_type=False)
pause_reason = postgresql.ENUM('MANUAL_PAUSE', 'PAYMENT_FAILED', name='pausereason', create_type=False)
pause_status = postgresql.ENUM('ACTIVE', 'COMPLETED', name='pausestatus', create_type=False)
webhook_event_status = postgresql.ENUM(
    'RECEIVED', 'PROCESSED', 'FAILED', 'UNRESOLVED', name='webhookeventstatus', create_type=False
)

ENUMS = (
    subscription_tier, subscription_status, payment_frequency,
    pause_reason, pause_status, webhook_event_status,
)


def upgrade() -> None:
    """Create all subscription lifecycle tables"""
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        'subscribers',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_subscribers_id', 'subscribers', ['id'])
    op.create_index('ix_subscribers_email', 'subscribers', ['email'], unique=True)

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscriber_id', sa.String(36), sa.ForeignKey('subscribers.id'), nullable=False),
        sa.Column('tier', subscription_tier, nullable=False),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('payment_frequency', payment_frequency, nullable=False),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_payment_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('is_paused', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('pause_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('pause_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('can_cancel', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('cancellation_blocked_reason', sa.String(255), nullable=True),
        sa.Column('cancellation_blocked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('gateway_customer_id', sa.String(255), nullable=True),
        sa.Column('gateway_subscription_id', sa.String(255), nullable=True),
        sa.Column('gateway_price_id', sa.String(255), nullable=True),
        sa.Column('pending_tier', subscription_tier, nullable=True),
        sa.Column('pending_payment_frequency', payment_frequency, nullable=True),
        sa.Column('pending_effective_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('churn_risk_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.CheckConstraint(
            'churn_risk_score >= 0 AND churn_risk_score <= 1', name='ck_subscriptions_churn_risk_range'
        ),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_subscriber_id', 'subscriptions', ['subscriber_id'], unique=True)
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])
    op.create_index('ix_subscriptions_gateway_customer_id', 'subscriptions', ['gateway_customer_id'])
    op.create_index(
        'ix_subscriptions_gateway_subscription_id', 'subscriptions', ['gateway_subscription_id'], unique=True
    )

    op.create_table(
        'subscription_pauses',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('subscriber_id', sa.String(36), nullable=False),
        sa.Column('reason', pause_reason, nullable=False),
        sa.Column('status', pause_status, nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('scheduled_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_subscription_pauses_id', 'subscription_pauses', ['id'])
    op.create_index('ix_subscription_pauses_subscription_id', 'subscription_pauses', ['subscription_id'])
    op.create_index('ix_subscription_pauses_subscriber_id', 'subscription_pauses', ['subscriber_id'])
    # At most one open pause per subscription
    op.create_index(
        'uq_subscription_pauses_one_active',
        'subscription_pauses',
        ['subscription_id'],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'")
    )

    op.create_table(
        'perk_usage',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscriber_id', sa.String(36), nullable=False),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('tier', subscription_tier, nullable=False),
        sa.Column('priority_booking_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('discount_amount_used', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('free_service_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('free_service_type', sa.String(100), nullable=True),
        sa.Column('emergency_service_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('priority_booking_last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('discount_last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('free_service_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('emergency_service_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('max_priority_bookings', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_discount_amount', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('max_free_services', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_emergency_services', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('visit_allowance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('carryover_visits', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cycle_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cycle_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_perk_usage_id', 'perk_usage', ['id'])
    op.create_index('ix_perk_usage_subscriber_id', 'perk_usage', ['subscriber_id'], unique=True)

    op.create_table(
        'subscription_changes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=False),
        sa.Column('subscriber_id', sa.String(36), nullable=False),
        sa.Column('change_type', sa.String(50), nullable=False),
        sa.Column('previous_tier', subscription_tier, nullable=True),
        sa.Column('new_tier', subscription_tier, nullable=True),
        sa.Column('previous_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('new_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('prorated_amount', sa.Numeric(10, 2), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('effective_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_subscription_changes_id', 'subscription_changes', ['id'])
    op.create_index('ix_subscription_changes_subscription_id', 'subscription_changes', ['subscription_id'])
    op.create_index('ix_subscription_changes_subscriber_id', 'subscription_changes', ['subscriber_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('status', webhook_event_status, nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('gateway_subscription_id', sa.String(255), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=True)
    op.create_index('ix_webhook_events_gateway_subscription_id', 'webhook_events', ['gateway_subscription_id'])


def downgrade() -> None:
    """Drop all subscription lifecycle tables"""
    op.drop_table('webhook_events')
    op.drop_table('subscription_changes')
    op.drop_table('perk_usage')
    op.drop_index('uq_subscription_pauses_one_active', table_name='subscription_pauses')
    op.drop_table('subscription_pauses')
    op.drop_table('subscriptions')
    op.drop_table('subscribers')

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
