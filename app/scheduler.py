# app/scheduler.py
"""
Background scheduler for the ticket lifecycle.

Uses APScheduler to run:
- the periodic ticket sweeps (grace period catch-up, stale pending expiry)
- one-shot grace period finalizers, added per ticket
- the reconciliation pollers, added per checkout
"""

import logging
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED

from app.background_tasks.ticket_tasks import (
    expire_stale_pending,
    finalize_expired_cancellations,
)
from app.core.config import settings

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None


def _on_job_error(event):
    """Log scheduler job errors with full context."""
    job_id = event.job_id
    exc = event.exception
    tb = event.traceback
    logger.error(
        "Scheduled job FAILED: job_id=%s error=%s",
        job_id, exc,
        exc_info=(type(exc), exc, None) if exc else None,
    )
    if tb:
        logger.error("Traceback for job %s:\n%s", job_id, tb)


def _on_job_missed(event):
    """Log when a scheduled job misses its execution window."""
    logger.warning(
        "Scheduled job MISSED: job_id=%s scheduled_run_time=%s",
        event.job_id,
        event.scheduled_run_time,
    )


def build_scheduler(workers: int = None) -> BackgroundScheduler:
    """Create the (not yet started) scheduler with its sweeps registered."""
    new_scheduler = BackgroundScheduler(
        timezone="UTC",
        executors={
            'default': ThreadPoolExecutor(workers or settings.SCHEDULER_WORKERS),
        },
        job_defaults={
            'coalesce': True,  # Combine missed executions
            'max_instances': 1,  # Only one instance of each job at a time
            'misfire_grace_time': 60  # Allow 60 seconds grace period
        }
    )

    # Job 1: Finalize cancellations whose grace period ran out
    # Runs every 1 minute; covers timers lost on restart
    new_scheduler.add_job(
        func=finalize_expired_cancellations,
        trigger=IntervalTrigger(minutes=1),
        id='finalize_expired_cancellations',
        name='Finalize Expired Ticket Cancellations',
        replace_existing=True
    )
    logger.info("Scheduled job: finalize_expired_cancellations (every 1 minute)")

    # Job 2: Expire tickets stuck in pending
    # Runs every 5 minutes
    new_scheduler.add_job(
        func=expire_stale_pending,
        trigger=IntervalTrigger(minutes=5),
        id='expire_stale_pending',
        name='Expire Stale Pending Tickets',
        replace_existing=True
    )
    logger.info("Scheduled job: expire_stale_pending (every 5 minutes)")

    new_scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    new_scheduler.add_listener(_on_job_missed, EVENT_JOB_MISSED)
    return new_scheduler


def init_scheduler():
    """
    Initialize and start the background scheduler.

    This is called once when the application starts up.
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return scheduler

    scheduler = build_scheduler()
    scheduler.start()
    logger.info("Background scheduler started successfully")

    return scheduler


def shutdown_scheduler():
    """
    Gracefully shutdown the scheduler.

    Running pollers are not waited for; their tickets are picked up again by
    webhooks, the buyer's return or the sweeps.
    """
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("Background scheduler shutdown complete")
        scheduler = None


def get_scheduler():
    """
    Get the global scheduler instance.

    Returns:
        BackgroundScheduler instance or None if not initialized
    """
    return scheduler
