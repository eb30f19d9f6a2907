from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..models.subscription import PaymentFrequency, SubscriptionTier
from ..services.pause_service import PauseService
from ..services.plan_catalog import list_plans
from ..services.plan_change_service import PlanChangeService
from ..services.subscription_service import SubscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


# Pydantic models for request/response
class SubscriberCreateRequest(BaseModel):
    email: str = Field(..., description="Subscriber email address")
    full_name: Optional[str] = Field(None, description="Subscriber display name")


class SubscriptionCreateRequest(BaseModel):
    tier: SubscriptionTier = Field(..., description="Plan tier to subscribe to")
    billing_period: PaymentFrequency = Field(PaymentFrequency.MONTHLY, description="Billing period")


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the subscriber is leaving")


class PlanChangeRequest(BaseModel):
    new_tier: str = Field(..., description="Target plan tier")
    billing_cycle: Optional[str] = Field(None, description="MONTHLY or YEARLY; defaults to the current cycle")


class PauseRequest(BaseModel):
    duration_months: int = Field(..., description="Pause length in months (1-6)")
    reason: Optional[str] = Field(None, description="Reason for pausing")


class ResumeRequest(BaseModel):
    notes: Optional[str] = Field(None, description="Notes recorded on the pause")


# ============================================================================
# PLANS & SUBSCRIBERS
# ============================================================================

@router.get("/plans", response_model=List[Dict[str, Any]])
async def get_plans() -> List[Dict[str, Any]]:
    """List the plan catalog"""
    return [plan.to_dict() for plan in list_plans()]


@router.post("/subscribers", status_code=status.HTTP_201_CREATED, response_model=Dict[str, Any])
async def register_subscriber(
    request: SubscriberCreateRequest,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    subscriber = SubscriptionService(db).register_subscriber(request.email, request.full_name)
    return {"id": subscriber.id, "email": subscriber.email, "full_name": subscriber.full_name}


@router.post(
    "/subscribers/{subscriber_id}/subscription",
    status_code=status.HTTP_201_CREATED,
    response_model=Dict[str, Any]
)
async def create_subscription(
    subscriber_id: str,
    request: SubscriptionCreateRequest,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return await SubscriptionService(db).create_subscription(
        subscriber_id, request.tier, request.billing_period
    )


@router.get("/subscribers/{subscriber_id}/subscription", response_model=Dict[str, Any])
async def get_subscription(subscriber_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Current subscription with plan details and perk usage"""
    return SubscriptionService(db).get_subscription(subscriber_id)


@router.post("/subscribers/{subscriber_id}/subscription/cancel", response_model=Dict[str, Any])
async def cancel_subscription(
    subscriber_id: str,
    request: CancelRequest,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return await SubscriptionService(db).cancel_subscription(subscriber_id, reason=request.reason)


# ============================================================================
# PLAN CHANGES
# ============================================================================

@router.get("/subscriptions/{subscriber_id}/plan-change/preview", response_model=Dict[str, Any])
async def preview_plan_change(
    subscriber_id: str,
    new_tier: str = Query(..., description="Target plan tier"),
    billing_cycle: Optional[str] = Query(None, description="MONTHLY or YEARLY"),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """
    Preview proration, carryover and restrictions for a plan change.

    Nothing is persisted and the gateway is not called.
    """
    return PlanChangeService(db).get_change_preview(subscriber_id, new_tier, billing_cycle)


@router.post("/subscriptions/{subscriber_id}/plan-change", response_model=Dict[str, Any])
async def change_plan(
    subscriber_id: str,
    request: PlanChangeRequest,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """
    Upgrade immediately or schedule a downgrade for the end of the period.

    Returns 422 with the list of restrictions when perks used this cycle
    block the downgrade.
    """
    return await PlanChangeService(db).change_plan(subscriber_id, request.new_tier, request.billing_cycle)


# ============================================================================
# PAUSE / RESUME
# ============================================================================

@router.post("/subscriptions/{subscription_id}/pause", response_model=Dict[str, Any])
async def pause_subscription(
    subscription_id: str,
    request: PauseRequest,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return await PauseService(db).pause_manually(
        subscription_id, duration_months=request.duration_months, reason=request.reason
    )


@router.post("/subscriptions/{subscription_id}/resume", response_model=Dict[str, Any])
async def resume_subscription(
    subscription_id: str,
    request: Optional[ResumeRequest] = None,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return await PauseService(db).resume(subscription_id, notes=request.notes if request else None)


@router.get("/subscriptions/{subscription_id}/pause-status", response_model=Dict[str, Any])
async def get_pause_status(subscription_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return PauseService(db).get_pause_status(subscription_id)


@router.get("/pauses/statistics", response_model=Dict[str, Any])
async def get_pause_statistics(db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Aggregate pause counts and average duration"""
    return PauseService(db).get_pause_statistics()
