"""
Background scheduling of the subscription lifecycle sweeps.

Every instance runs the same BackgroundScheduler; the jobs themselves take a
Redis lock so only one instance performs each sweep.
"""
import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_EXECUTED, EVENT_JOB_ERROR

from ..core.config import settings
from ..jobs.lifecycle_jobs import (
    process_grace_period_expirations,
    process_automatic_resumes,
    process_period_renewals
)

logger = logging.getLogger(__name__)

# (job id, callable, cron fields, description); all times UTC
LIFECYCLE_SCHEDULE = (
    ("process_grace_period_expirations", process_grace_period_expirations,
     {"minute": 5}, "Suspend subscriptions after grace period"),
    ("process_automatic_resumes", process_automatic_resumes,
     {"minute": 35}, "Resume elapsed pauses"),
    ("process_period_renewals", process_period_renewals,
     {"hour": 0, "minute": 30}, "Renew billing periods"),
)

scheduler = None


def _on_job_event(event):
    if event.exception:
        logger.error(
            f"Lifecycle job {event.job_id} raised: {event.exception}",
            extra={"job_id": event.job_id}
        )
    else:
        logger.info(f"Lifecycle job {event.job_id} finished", extra={"job_id": event.job_id})


def init_scheduler():
    """Build the scheduler and register the lifecycle sweeps. Idempotent."""
    global scheduler

    if scheduler is not None:
        return scheduler

    scheduler = BackgroundScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": settings.SCHEDULER_MISFIRE_GRACE_SECONDS,
        }
    )
    scheduler.add_listener(_on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    for job_id, func, cron, description in LIFECYCLE_SCHEDULE:
        scheduler.add_job(
            func=func,
            trigger=CronTrigger(**cron),
            id=job_id,
            name=description,
            replace_existing=True
        )
        logger.info(f"Registered {job_id} with cron {cron}", extra={"job_id": job_id})

    return scheduler


def start_scheduler():
    """Called from the application lifespan on startup."""
    init_scheduler()

    if scheduler.running:
        logger.warning("Lifecycle scheduler is already running")
        return

    scheduler.start()
    for job in scheduler.get_jobs():
        logger.info(f"{job.id} next runs at {job.next_run_time}")


def stop_scheduler():
    """Called from the application lifespan on shutdown."""
    if scheduler is None or not scheduler.running:
        logger.warning("Lifecycle scheduler is not running")
        return

    scheduler.shutdown(wait=True)
    logger.info("Lifecycle scheduler stopped")


def list_jobs():
    if scheduler is None:
        return []

    jobs = []
    for job in scheduler.get_jobs():
        # Jobs added before start() have no next_run_time attribute yet
        next_run = getattr(job, "next_run_time", None)
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": next_run.isoformat() if next_run else None,
            "trigger": str(job.trigger),
        })
    return jobs
