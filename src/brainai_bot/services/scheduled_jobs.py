"""
Scheduled Jobs Service
Runs periodic maintenance (premium expiry) inside the webhook process
"""
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .metrics import increment_counter
from .user_service import UserService

logger = logging.getLogger(__name__)

PREMIUM_EXPIRY_JOB_ID = "premium_expiry"

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def get_scheduler() -> BackgroundScheduler:
    """
    Get or create the background scheduler instance

    Returns:
        BackgroundScheduler instance
    """
    global _scheduler

    if _scheduler is None:
        _scheduler = BackgroundScheduler(
            job_defaults={
                'coalesce': True,  # Combine missed runs
                'max_instances': 1,
                'misfire_grace_time': 3600,
            }
        )

    return _scheduler


def run_premium_expiry_job(users: UserService) -> dict:
    """
    Revert every premium user whose end date has passed

    Args:
        users: User lifecycle service

    Returns:
        {"expired": int, "errors": int}
    """
    logger.info("Starting scheduled premium expiry job")
    result = users.check_and_expire_all_premium()
    increment_counter("premium_expired_total", value=result["expired"])
    if result["errors"]:
        logger.error(f"Premium expiry job finished with {result['errors']} errors")
    else:
        logger.info(f"Premium expiry job completed: {result['expired']} users expired")
    return result


def start_scheduler(users: UserService, hour: int = 2, minute: int = 0, scheduler: Optional[BackgroundScheduler] = None):
    """
    Register jobs and start the scheduler

    Args:
        users: User lifecycle service handed to the expiry job
        hour: Hour of day (UTC) the expiry job runs
        minute: Minute of the hour
        scheduler: Scheduler to use (defaults to the global instance)
    """
    scheduler = scheduler or get_scheduler()

    if scheduler.running:
        logger.warning("Scheduler already running")
        return

    scheduler.add_job(
        func=run_premium_expiry_job,
        trigger=CronTrigger(hour=hour, minute=minute),
        args=[users],
        id=PREMIUM_EXPIRY_JOB_ID,
        name='Premium Expiry',
        replace_existing=True,
    )
    logger.info(f"Registered premium expiry job (daily at {hour:02d}:{minute:02d})")

    scheduler.start()
    logger.info("Background scheduler started")


def stop_scheduler(scheduler: Optional[BackgroundScheduler] = None):
    """Stop the background scheduler"""
    scheduler = scheduler or get_scheduler()

    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler stopped")
