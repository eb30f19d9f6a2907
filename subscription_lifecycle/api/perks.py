"""
Perk ledger routes.

The ledger is synchronous (blocking Redis lock and cache), so these are plain
``def`` handlers that FastAPI runs in its threadpool, off the event loop.
"""
from decimal import Decimal
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..services.perk_usage_service import PerkUsageService

router = APIRouter()
logger = logging.getLogger(__name__)


class PerkUseRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, description="Discount amount (discount perk only)")
    service_type: Optional[str] = Field(None, description="Service redeemed (free service perk only)")


class CancellationBlockRequest(BaseModel):
    reason: str = Field(..., description="Why self-service cancellation is blocked")


@router.get("/subscribers/{subscriber_id}/perks", response_model=Dict[str, Any])
def get_usage_summary(subscriber_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Perk consumption for the current billing cycle"""
    return PerkUsageService(db).get_usage_summary(subscriber_id)


@router.get("/subscribers/{subscriber_id}/perks/{perk_type}", response_model=Dict[str, Any])
def check_perk(subscriber_id: str, perk_type: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Whether the subscriber can use the perk now"""
    return PerkUsageService(db).can_use_perk(subscriber_id, perk_type)


@router.post("/subscribers/{subscriber_id}/perks/{perk_type}/use", response_model=Dict[str, Any])
def use_perk(
    subscriber_id: str,
    perk_type: str,
    request: Optional[PerkUseRequest] = None,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    """Record one use of a perk; this locks self-service cancellation"""
    request = request or PerkUseRequest()
    return PerkUsageService(db).track_perk_usage(
        subscriber_id, perk_type, amount=request.amount, service_type=request.service_type
    )


@router.post("/subscribers/{subscriber_id}/cancellation-lock", response_model=Dict[str, Any])
def block_cancellation(
    subscriber_id: str,
    request: CancellationBlockRequest,
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    return PerkUsageService(db).block_cancellation(subscriber_id, request.reason)


@router.delete("/subscribers/{subscriber_id}/cancellation-lock", response_model=Dict[str, Any])
def allow_cancellation(subscriber_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Administrative override of the cancellation lock"""
    return PerkUsageService(db).allow_cancellation(subscriber_id)
