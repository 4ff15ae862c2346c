"""TAXOMETRICS — Scheduler Jobs.

APScheduler daily job that integrates yesterday's metrics for every
configured tenant at the configured hour.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from taxometrics.config import settings
from taxometrics.integration.pipeline import run_integration, yesterday
from taxometrics.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler()


async def daily_integration_job():
    """Run the integration for yesterday's data, one tenant at a time."""
    tenants = settings.scheduled_tenants or [settings.default_tenant_id]
    metrics_date = yesterday()
    logger.info(f"Scheduled integration starting for {len(tenants)} tenant(s)")
    for tenant_id in tenants:
        result = await run_integration(tenant_id, metrics_date)
        extra = {"tenant_id": tenant_id, "metrics_date": metrics_date}
        if result.success:
            logger.info(
                f"Scheduled integration complete. Matched {result.stats.matched}/"
                f"{result.stats.total_processed}, avg confidence {result.stats.avg_confidence}",
                extra=extra,
            )
        else:
            logger.error(f"Scheduled integration failed: {result.errors}", extra=extra)


def start_scheduler():
    """Configure and start the scheduler."""
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled via config")
        return

    scheduler.add_job(
        daily_integration_job,
        "cron",
        hour=settings.integration_hour,
        minute=0,
        id="daily_integration",
        replace_existing=True,
        misfire_grace_time=3600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Daily integration at {settings.integration_hour}:00 UTC")


def stop_scheduler():
    """Shutdown the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
