"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from discovery_engine.config import settings
from discovery_engine.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: TaskRunner = task_runner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Jobs:
    - Scheduler tick every settings.scheduler_polling_interval_seconds
    - Execution history purge daily at settings.retention_purge_hour (UTC)
    - Stale execution watchdog every settings.watchdog_interval_seconds

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        runner.run_scheduler_tick,
        IntervalTrigger(seconds=settings.scheduler_polling_interval_seconds),
        id="scheduler_tick",
        name="Evaluate active configurations and dispatch due checks",
        max_instances=1,  # Prevent overlapping ticks
        coalesce=True,
        misfire_grace_time=settings.scheduler_polling_interval_seconds,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.purge_expired_history,
        CronTrigger(hour=settings.retention_purge_hour, minute=0, timezone="UTC"),
        id="history_purge",
        name="Purge expired execution history",
        max_instances=1,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.recover_stale_executions,
        IntervalTrigger(seconds=settings.watchdog_interval_seconds),
        id="execution_watchdog",
        name="Stale execution watchdog",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: tick every %d seconds, history purge at %02d:00 UTC "
        "(retention %d days), execution watchdog every %d seconds",
        settings.scheduler_polling_interval_seconds,
        settings.retention_purge_hour,
        settings.execution_retention_days,
        settings.watchdog_interval_seconds,
    )

    return scheduler
