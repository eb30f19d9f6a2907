"""
Scheduled lifecycle sweeps.

These jobs run periodically to:
- Suspend subscriptions whose payment-failure grace period elapsed
- Resume manual pauses whose window elapsed
- Roll ended billing periods forward, applying scheduled downgrades

Each job runs under a distributed lock so only one instance sweeps at a time,
and opens its own database session.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from ..core.database import SessionLocal
from ..core.redis_lock import distributed_lock
from ..services.pause_service import PauseService
from ..services.plan_change_service import PlanChangeService

logger = logging.getLogger(__name__)


def process_grace_period_expirations() -> Optional[Dict[str, Any]]:
    """
    Suspend PAST_DUE subscriptions whose grace period has elapsed.

    Runs: Hourly at :05
    """
    with distributed_lock("process_grace_period_expirations", timeout=1800) as acquired:
        if not acquired:
            logger.info("Grace period expiration sweep already running on another instance")
            return None

        logger.info("Starting grace period expiration sweep")
        db = SessionLocal()
        try:
            result = asyncio.run(PauseService(db).process_grace_period_expirations())
            logger.info(
                f"Grace period expirations processed: {result.succeeded} suspended, {result.failed} failed",
                extra=result.to_dict()
            )
            return result.to_dict()
        finally:
            db.close()


def process_automatic_resumes() -> Optional[Dict[str, Any]]:
    """
    Resume manually paused subscriptions whose pause window has elapsed.

    Runs: Hourly at :35
    """
    with distributed_lock("process_automatic_resumes", timeout=1800) as acquired:
        if not acquired:
            logger.info("Automatic resume sweep already running on another instance")
            return None

        logger.info("Starting automatic resume sweep")
        db = SessionLocal()
        try:
            result = asyncio.run(PauseService(db).process_automatic_resumes())
            logger.info(
                f"Automatic resumes processed: {result.succeeded} resumed, {result.failed} failed",
                extra=result.to_dict()
            )
            return result.to_dict()
        finally:
            db.close()


def process_period_renewals() -> Optional[Dict[str, Any]]:
    """
    Roll ended billing periods forward and apply scheduled downgrades.

    Runs: Daily at 00:30 AM UTC
    """
    with distributed_lock("process_period_renewals", timeout=3600) as acquired:
        if not acquired:
            logger.info("Period renewal sweep already running on another instance")
            return None

        logger.info("Starting period renewal sweep")
        db = SessionLocal()
        try:
            result = asyncio.run(PlanChangeService(db).process_period_renewals())
            logger.info(
                f"Period renewals processed: {result.succeeded} renewed, {result.failed} failed",
                extra=result.to_dict()
            )
            return result.to_dict()
        finally:
            db.close()
