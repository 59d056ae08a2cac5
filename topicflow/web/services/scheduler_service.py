"""
Background scheduler for topicflow maintenance jobs.

Runs the nightly duplicate-cleanup scan for every active topic and an hourly
prune of old source attempts using APScheduler. The per-topic polling workers
are owned by the orchestrator, not by the scheduler.
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import logging

from topicflow.web.services import duplicate_service

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = AsyncIOScheduler()


async def run_nightly_scans(orchestrator):
    """Run a cleanup scan for each active topic, one topic at a time."""
    logger.info("Starting nightly duplicate scans")

    scanned = 0
    skipped = 0
    error_count = 0
    for topic_id in orchestrator.active_topic_ids():
        try:
            report = await orchestrator.start_scan(topic_id)
            scanned += 1
            logger.info(
                f"Nightly scan for topic {topic_id}: {report.total_duplicates} duplicates "
                f"in {report.total_processed} items"
            )
        except duplicate_service.ScanAlreadyRunningError:
            logger.debug(f"Scan already running for topic {topic_id}, skipping")
            skipped += 1
        except Exception as e:
            logger.error(f"Nightly scan failed for topic {topic_id}: {e}", exc_info=True)
            error_count += 1

    logger.info(
        f"Nightly scans complete: {scanned} scanned, {skipped} skipped, {error_count} errors"
    )


async def run_maintenance(orchestrator, retention_days: int):
    """Prune old attempt history and pick up topics created since startup.

    Runs on the event loop that owns the worker tasks and the database
    connection.
    """
    try:
        orchestrator.prune_attempts(retention_days)
        orchestrator.sync_workers()
    except Exception as e:
        logger.error(f"Maintenance job failed: {e}", exc_info=True)


def start_scheduler(orchestrator, config: dict):
    """
    Start scheduler with configuration.

    Args:
        orchestrator: PipelineOrchestrator the jobs act on
        config: Configuration dictionary with keys:
            - SCHEDULER_ENABLED: bool (default True)
            - CLEANUP_SCAN_HOUR: int (default 3)
            - CLEANUP_SCAN_MINUTE: int (default 0)
            - SCHEDULER_TIMEZONE: str (default "UTC")
            - ATTEMPT_RETENTION_DAYS: int (default 30)
    """
    if not config.get("SCHEDULER_ENABLED", True):
        logger.info("Scheduler disabled via configuration")
        return

    hour = config.get("CLEANUP_SCAN_HOUR", 3)
    minute = config.get("CLEANUP_SCAN_MINUTE", 0)
    timezone = config.get("SCHEDULER_TIMEZONE", "UTC")
    retention_days = config.get("ATTEMPT_RETENTION_DAYS", 30)

    scheduler.add_job(
        func=run_nightly_scans,
        args=[orchestrator],
        trigger=CronTrigger(hour=hour, minute=minute, timezone=timezone),
        id="nightly_duplicate_scan",
        replace_existing=True,
        max_instances=1,
    )

    scheduler.add_job(
        func=run_maintenance,
        args=[orchestrator, retention_days],
        trigger=IntervalTrigger(hours=1),
        id="hourly_maintenance",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        f"Scheduler started: duplicate scans at {hour:02d}:{minute:02d} {timezone}"
    )


def stop_scheduler():
    """Stop scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
