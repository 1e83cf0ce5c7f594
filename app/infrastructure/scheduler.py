"""
APScheduler setup for the in-process dispatch trigger.

The cron endpoint and this scheduler call the same tick; either can drive
the engine, and overlapping ticks are safe because claims are atomic.
"""

import logging
from typing import Optional

from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.config.settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

DISPATCH_JOB_ID = "reminder_dispatch"
DAILY_SUMMARY_JOB_ID = "daily_whatsapp_summary"

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None


def get_scheduler() -> AsyncIOScheduler:
    """Get or create the scheduler instance."""
    global scheduler

    if scheduler is None:
        # Use SQLite for persistent job storage
        jobstores = {
            'default': SQLAlchemyJobStore(url=f'sqlite:///{settings.data_dir}/jobs.db')
        }

        scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            timezone=settings.timezone
        )

    return scheduler


def register_jobs(sched: AsyncIOScheduler) -> None:
    """Add the periodic dispatch tick and, if enabled, the daily summary."""
    sched.add_job(
        run_dispatch_job,
        trigger=IntervalTrigger(seconds=settings.dispatch_interval_seconds),
        id=DISPATCH_JOB_ID,
        replace_existing=True,
        max_instances=2,
        coalesce=True,
    )
    logger.info(f"Scheduled reminder dispatch every {settings.dispatch_interval_seconds}s")

    if settings.daily_summary_enabled:
        sched.add_job(
            run_daily_summary_job,
            trigger=CronTrigger(hour=settings.daily_summary_hour, minute=0),
            id=DAILY_SUMMARY_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled daily WhatsApp summary at {settings.daily_summary_hour:02d}:00")
    elif sched.get_job(DAILY_SUMMARY_JOB_ID):
        sched.remove_job(DAILY_SUMMARY_JOB_ID)


async def start_scheduler() -> None:
    """Start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("In-process scheduler disabled; relying on the cron endpoint")
        return

    sched = get_scheduler()
    if not sched.running:
        sched.start()
        register_jobs(sched)
        logger.info("Scheduler started")


async def stop_scheduler() -> None:
    """Stop the scheduler gracefully."""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")


async def run_dispatch_job() -> None:
    """
    Run one dispatch tick.

    This function is called by the scheduler every interval.
    """
    from app.usecases.dispatch_service import run_reminder_tick

    try:
        await run_reminder_tick()
    except Exception as e:
        logger.exception(f"Scheduled dispatch tick failed: {e}")


async def run_daily_summary_job() -> None:
    """Send the daily WhatsApp summaries."""
    from app.usecases.daily_summary import send_daily_summaries

    try:
        result = await send_daily_summaries()
        logger.info(f"Daily summary job: {result}")
    except Exception as e:
        logger.exception(f"Daily summary job failed: {e}")
