"""
Pause/resume state machine.

    ACTIVE --pause_manually--> ACTIVE + paused --resume--> ACTIVE
    ACTIVE --payment failure--> PAST_DUE + paused (grace period)
        --payment recovered or resume--> ACTIVE
        --grace period elapsed--> SUSPENDED --payment recovered--> ACTIVE

A subscription is paused exactly when it has an ACTIVE SubscriptionPause.
Gateway pause/resume calls are best-effort: the local record decides whether
service is available, the gateway catches up.
"""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import EligibilityError, InvalidStateError, NoOpError
from ..core.redis_lock import subscription_lock
from ..models.subscription import (
    PauseReason,
    PauseStatus,
    Subscription,
    SubscriptionPause,
    SubscriptionStatus,
)
from .batch import BatchResult, process_each
from .booking_client import BookingClient, booking_client as default_booking_client
from .gateway_client import (
    GatewayClient,
    best_effort,
    gateway_client as default_gateway_client,
    skipped_outcome,
)
from .notification_publisher import (
    NotificationPublisher,
    NotificationType,
    notification_publisher as default_notification_publisher,
)
from .subscription_repository import log_subscription_change, require_subscription

logger = logging.getLogger(__name__)

DAYS_PER_PAUSE_MONTH = 30
ACTIVE_APPOINTMENT_MESSAGE = (
    "Cannot pause subscription with active service appointments. "
    "Please reschedule or complete pending services first."
)


class PauseService:
    """Service for manual pauses, payment-failure grace periods and resumes"""

    def __init__(
        self,
        db: Session,
        gateway: Optional[GatewayClient] = None,
        bookings: Optional[BookingClient] = None,
        notifier: Optional[NotificationPublisher] = None
    ):
        self.db = db
        self.gateway = gateway or default_gateway_client
        self.bookings = bookings or default_booking_client
        self.notifier = notifier or default_notification_publisher

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_active_pause(self, subscription_id: str) -> Optional[SubscriptionPause]:
        return self.db.query(SubscriptionPause).filter(
            and_(
                SubscriptionPause.subscription_id == subscription_id,
                SubscriptionPause.status == PauseStatus.ACTIVE
            )
        ).first()

    def get_pause_status(self, subscription_id: str) -> Dict[str, Any]:
        subscription = require_subscription(self.db, subscription_id)
        now = datetime.now(timezone.utc)

        current = self.get_active_pause(subscription.id) if subscription.is_paused else None
        history = self.db.query(SubscriptionPause).filter(
            SubscriptionPause.subscription_id == subscription.id
        ).order_by(SubscriptionPause.start_date.desc()).limit(5).all()

        current_pause = None
        if current is not None:
            current_pause = _pause_to_dict(current, now)
            end = subscription.pause_end_date
            current_pause["days_remaining"] = (
                max(0, math.ceil((end - now).total_seconds() / 86400)) if end else None
            )

        return {
            "subscription_id": subscription.id,
            "status": subscription.status.value,
            "is_paused": subscription.is_paused,
            "current_pause": current_pause,
            "history": [_pause_to_dict(pause, now) for pause in history],
            "can_pause": not subscription.is_paused and subscription.status == SubscriptionStatus.ACTIVE,
        }

    def get_pause_statistics(self) -> Dict[str, Any]:
        total = self.db.query(func.count(SubscriptionPause.id)).scalar() or 0
        active = self.db.query(func.count(SubscriptionPause.id)).filter(
            SubscriptionPause.status == PauseStatus.ACTIVE
        ).scalar() or 0

        by_reason = {reason.value: 0 for reason in PauseReason}
        for reason, count in self.db.query(
            SubscriptionPause.reason, func.count(SubscriptionPause.id)
        ).group_by(SubscriptionPause.reason).all():
            by_reason[reason.value] = count

        completed = self.db.query(SubscriptionPause).filter(
            SubscriptionPause.status == PauseStatus.COMPLETED,
            SubscriptionPause.end_date.isnot(None)
        ).all()
        durations = [(p.end_date - p.start_date).total_seconds() / 86400 for p in completed]
        average = round(sum(durations) / len(durations), 1) if durations else 0

        return {
            "total_pauses": total,
            "active_pauses": active,
            "completed_pauses": len(completed),
            "by_reason": by_reason,
            "average_duration_days": average,
        }

    # ========================================================================
    # PAYMENT FAILURE
    # ========================================================================

    async def pause_for_payment_failure(
        self,
        subscription_id: str,
        reason: str = "Payment failed",
        grace_period_days: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Open a grace-period pause after a failed payment.

        Repeated failures are safe: an already paused (or cancelled/suspended)
        subscription is left alone and an informational result is returned.
        The gateway is not called; its own dunning owns payment retries.
        """
        if grace_period_days is None:
            grace_period_days = settings.PAYMENT_FAILURE_GRACE_PERIOD_DAYS

        subscription = require_subscription(self.db, subscription_id)
        async with subscription_lock(subscription.subscriber_id):
            self.db.refresh(subscription)

            if subscription.is_paused:
                return {"success": True, "no_op": True, "message": "Subscription already paused"}
            if subscription.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.SUSPENDED):
                return {
                    "success": True,
                    "no_op": True,
                    "message": f"Subscription is {subscription.status.value.lower()}, grace period not started"
                }

            now = datetime.now(timezone.utc)
            grace_end = now + timedelta(days=grace_period_days)
            pause = self._open_pause(subscription, PauseReason.PAYMENT_FAILED, now, grace_end, reason)
            subscription.status = SubscriptionStatus.PAST_DUE
            log_subscription_change(
                self.db, subscription, "payment_failed_grace_started",
                reason=reason, effective_at=now
            )
            self.db.commit()

        logger.info(
            f"Grace period started for {grace_period_days} days",
            extra={"subscription_id": subscription.id, "subscriber_id": subscription.subscriber_id}
        )
        self.notifier.publish(
            NotificationType.GRACE_PERIOD_STARTED,
            subscriber_id=subscription.subscriber_id,
            subscription_id=subscription.id,
            data={"grace_period_ends": grace_end.isoformat(), "grace_period_days": grace_period_days}
        )

        return {
            "success": True,
            "no_op": False,
            "message": f"Subscription paused for {grace_period_days}-day grace period",
            "subscription_id": subscription.id,
            "pause": _pause_to_dict(pause, now),
        }

    async def handle_payment_recovered(self, subscription_id: str) -> Dict[str, Any]:
        """
        Recovery path for a successful payment.

        Only a PAYMENT_FAILED pause or a suspension is recovered; a manual
        pause is left untouched.
        """
        subscription = require_subscription(self.db, subscription_id)
        async with subscription_lock(subscription.subscriber_id):
            self.db.refresh(subscription)
            now = datetime.now(timezone.utc)

            if subscription.is_paused:
                pause = self.get_active_pause(subscription.id)
                if pause is None or pause.reason != PauseReason.PAYMENT_FAILED:
                    return {"success": True, "no_op": True, "message": "Subscription not paused for payment failure"}
                self._close_pause(subscription, pause, now, "Payment recovered")
            elif subscription.status not in (SubscriptionStatus.SUSPENDED, SubscriptionStatus.PAST_DUE):
                return {"success": True, "no_op": True, "message": "Subscription does not need recovery"}

            subscription.status = _restored_status(subscription)
            log_subscription_change(
                self.db, subscription, "payment_recovered",
                reason="Payment succeeded", effective_at=now
            )
            self.db.commit()

        logger.info(
            "Subscription recovered after payment",
            extra={"subscription_id": subscription.id, "subscriber_id": subscription.subscriber_id}
        )
        self.notifier.publish(
            NotificationType.PAYMENT_RECOVERED,
            subscriber_id=subscription.subscriber_id,
            subscription_id=subscription.id
        )
        return {"success": True, "no_op": False, "message": "Subscription reactivated after payment"}

    # ========================================================================
    # MANUAL PAUSE / RESUME
    # ========================================================================

    async def pause_manually(
        self,
        subscription_id: str,
        duration_months: int,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Pause an active subscription for 1-6 months.

        Raises:
            EligibilityError: bad duration, or an appointment is scheduled
            NoOpError: already paused
            InvalidStateError: subscription is not ACTIVE
            BookingServiceError: appointments could not be checked
        """
        # bool is an int subclass; True must not become a one-month pause
        if isinstance(duration_months, bool) or not isinstance(duration_months, int) or not (
            settings.MIN_PAUSE_MONTHS <= duration_months <= settings.MAX_PAUSE_MONTHS
        ):
            raise EligibilityError(
                f"Pause duration must be between {settings.MIN_PAUSE_MONTHS} "
                f"and {settings.MAX_PAUSE_MONTHS} months"
            )

        subscription = require_subscription(self.db, subscription_id)
        async with subscription_lock(subscription.subscriber_id):
            self.db.refresh(subscription)

            if subscription.is_paused:
                raise NoOpError("Subscription is already paused")
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise InvalidStateError(
                    f"Only active subscriptions can be paused (current status: {subscription.status.value})"
                )

            now = datetime.now(timezone.utc)
            if await self.bookings.has_active_appointments(subscription.subscriber_id, now=now):
                raise EligibilityError(ACTIVE_APPOINTMENT_MESSAGE)

            pause_end = now + timedelta(days=DAYS_PER_PAUSE_MONTH * duration_months)
            pause = self._open_pause(subscription, PauseReason.MANUAL_PAUSE, now, pause_end, reason)
            log_subscription_change(
                self.db, subscription, "paused",
                reason=reason or f"Manual pause for {duration_months} months", effective_at=now
            )
            self.db.commit()

        if subscription.gateway_subscription_id:
            gateway_outcome = await best_effort(
                "pause_subscription",
                self.gateway.pause_subscription,
                subscription.gateway_subscription_id,
                behavior="void",
                resumes_at=pause_end
            )
        else:
            gateway_outcome = skipped_outcome("pause_subscription", "No gateway subscription")

        logger.info(
            f"Subscription paused for {duration_months} months",
            extra={"subscription_id": subscription.id, "subscriber_id": subscription.subscriber_id}
        )
        self.notifier.publish(
            NotificationType.PAUSE_CONFIRMED,
            subscriber_id=subscription.subscriber_id,
            subscription_id=subscription.id,
            data={"pause_end_date": pause_end.isoformat(), "duration_months": duration_months}
        )

        return {
            "success": True,
            "message": f"Subscription paused until {pause_end.date().isoformat()}",
            "subscription_id": subscription.id,
            "pause": _pause_to_dict(pause, now),
            "gateway": gateway_outcome.to_dict(),
        }

    async def resume(self, subscription_id: str, notes: Optional[str] = None) -> Dict[str, Any]:
        """
        End the open pause, whatever opened it.

        Closing a grace-period pause this way also lifts PAST_DUE; it is the
        caller's decision, e.g. after the payment was settled outside the
        gateway.
        """
        subscription = require_subscription(self.db, subscription_id)
        async with subscription_lock(subscription.subscriber_id):
            self.db.refresh(subscription)

            pause = self.get_active_pause(subscription.id) if subscription.is_paused else None
            if pause is None:
                raise NoOpError("Subscription is not paused")

            now = datetime.now(timezone.utc)
            self._close_pause(subscription, pause, now, notes or "Resumed")
            subscription.status = _restored_status(subscription)
            log_subscription_change(self.db, subscription, "resumed", reason=notes, effective_at=now)
            self.db.commit()

        if subscription.gateway_subscription_id:
            gateway_outcome = await best_effort(
                "resume_subscription",
                self.gateway.resume_subscription,
                subscription.gateway_subscription_id
            )
        else:
            gateway_outcome = skipped_outcome("resume_subscription", "No gateway subscription")

        logger.info(
            "Subscription resumed",
            extra={"subscription_id": subscription.id, "subscriber_id": subscription.subscriber_id}
        )
        self.notifier.publish(
            NotificationType.RESUME_CONFIRMED,
            subscriber_id=subscription.subscriber_id,
            subscription_id=subscription.id
        )

        return {
            "success": True,
            "message": "Subscription resumed",
            "subscription_id": subscription.id,
            "pause": _pause_to_dict(pause, now),
            "gateway": gateway_outcome.to_dict(),
        }

    # ========================================================================
    # SWEEPS
    # ========================================================================

    async def process_grace_period_expirations(self, now: Optional[datetime] = None) -> BatchResult:
        """Suspend PAST_DUE subscriptions whose grace period elapsed without payment"""
        now = now or datetime.now(timezone.utc)
        candidate_ids = [row.id for row in self.db.query(Subscription.id).filter(
            and_(
                Subscription.status == SubscriptionStatus.PAST_DUE,
                Subscription.is_paused.is_(True),
                Subscription.pause_end_date <= now
            )
        ).all()]

        async def suspend(subscription_id: str) -> bool:
            subscription = require_subscription(self.db, subscription_id)
            async with subscription_lock(subscription.subscriber_id):
                self.db.refresh(subscription)
                pause = self.get_active_pause(subscription.id)
                if (
                    subscription.status != SubscriptionStatus.PAST_DUE
                    or pause is None
                    or pause.reason != PauseReason.PAYMENT_FAILED
                    or subscription.pause_end_date > now
                ):
                    return False

                self._close_pause(subscription, pause, now, "Grace period expired")
                subscription.status = SubscriptionStatus.SUSPENDED
                log_subscription_change(
                    self.db, subscription, "suspended",
                    reason="Grace period expired without payment", effective_at=now
                )
                self.db.commit()

            logger.info(
                "Subscription suspended after grace period",
                extra={"subscription_id": subscription.id, "subscriber_id": subscription.subscriber_id}
            )
            self.notifier.publish(
                NotificationType.SUBSCRIPTION_SUSPENDED,
                subscriber_id=subscription.subscriber_id,
                subscription_id=subscription.id
            )
            return True

        return await process_each(self.db, "process_grace_period_expirations", candidate_ids, suspend)

    async def process_automatic_resumes(self, now: Optional[datetime] = None) -> BatchResult:
        """Resume paused subscriptions whose window elapsed, excluding grace-period pauses"""
        now = now or datetime.now(timezone.utc)
        candidate_ids = [row.id for row in self.db.query(Subscription.id).join(
            SubscriptionPause,
            and_(
                SubscriptionPause.subscription_id == Subscription.id,
                SubscriptionPause.status == PauseStatus.ACTIVE
            )
        ).filter(
            and_(
                Subscription.is_paused.is_(True),
                Subscription.status != SubscriptionStatus.PAST_DUE,
                SubscriptionPause.reason != PauseReason.PAYMENT_FAILED,
                Subscription.pause_end_date <= now
            )
        ).all()]

        async def auto_resume(subscription_id: str) -> bool:
            subscription = require_subscription(self.db, subscription_id)
            if not subscription.is_paused or subscription.pause_end_date > now:
                return False
            try:
                await self.resume(subscription_id, notes="Automatic resume at end of pause window")
            except NoOpError:
                return False
            return True

        return await process_each(self.db, "process_automatic_resumes", candidate_ids, auto_resume)

    # ========================================================================
    # HELPERS (caller holds the subscription lock and commits)
    # ========================================================================

    def _open_pause(
        self,
        subscription: Subscription,
        reason: PauseReason,
        start: datetime,
        end: datetime,
        notes: Optional[str]
    ) -> SubscriptionPause:
        pause = SubscriptionPause(
            subscription_id=subscription.id,
            subscriber_id=subscription.subscriber_id,
            reason=reason,
            status=PauseStatus.ACTIVE,
            start_date=start,
            scheduled_end_date=end,
            notes=notes
        )
        self.db.add(pause)
        subscription.is_paused = True
        subscription.pause_start_date = start
        subscription.pause_end_date = end
        return pause

    def close_open_pause(self, subscription: Subscription, notes: str) -> Optional[SubscriptionPause]:
        """Close any open pause, e.g. when the subscription is cancelled"""
        pause = self.get_active_pause(subscription.id)
        if pause is None and not subscription.is_paused:
            return None
        self._close_pause(subscription, pause, datetime.now(timezone.utc), notes)
        return pause

    def _close_pause(
        self,
        subscription: Subscription,
        pause: Optional[SubscriptionPause],
        now: datetime,
        notes: str
    ) -> None:
        if pause is not None:
            pause.status = PauseStatus.COMPLETED
            pause.end_date = now
            pause.notes = f"{pause.notes}; {notes}" if pause.notes else notes
        subscription.is_paused = False
        subscription.pause_start_date = None
        subscription.pause_end_date = None


def _pause_to_dict(pause: SubscriptionPause, now: datetime) -> Dict[str, Any]:
    end = pause.end_date or now
    return {
        "id": pause.id,
        "reason": pause.reason.value,
        "status": pause.status.value,
        "start_date": pause.start_date.isoformat() if pause.start_date else None,
        "scheduled_end_date": pause.scheduled_end_date.isoformat() if pause.scheduled_end_date else None,
        "end_date": pause.end_date.isoformat() if pause.end_date else None,
        "duration_days": (end - pause.start_date).days if pause.start_date else None,
        "notes": pause.notes,
    }


def _restored_status(subscription: Subscription) -> SubscriptionStatus:
    """Status after a pause or suspension ends; a scheduled downgrade stays pending"""
    if subscription.pending_tier is not None:
        return SubscriptionStatus.PENDING_CHANGE
    return SubscriptionStatus.ACTIVE
