"""MindfulAI — Scheduler Jobs.

APScheduler daily job that fans out account syncs at the configured hour.
Only used when running as a long-lived server; serverless deployments hit
`/api/cron/meta-marketing` instead.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlmodel import Session

from app.config import settings
from app.database import engine
from app.sync.cron import run_daily_sync
from app.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def daily_sync_job():
    """Queue a 24h sync for every authorised account."""
    logger.info("Scheduled daily sync starting...")
    try:
        with Session(engine) as session:
            summary = await run_daily_sync(session)
        logger.info(
            f"Scheduled sync queued: {summary.get('successful_accounts', 0)} ok, "
            f"{summary.get('failed_accounts', 0)} failed"
        )
    except Exception as e:
        logger.error(f"Scheduled sync failed: {e}")


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_sync_job,
        "cron",
        hour=settings.sync_hour,
        minute=0,
        id="daily_meta_sync",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily sync at {settings.sync_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
