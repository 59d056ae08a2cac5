"""
Unit tests for scheduler_service.py

Tests the nightly duplicate scans and hourly maintenance jobs.
"""

import asyncio
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from topicflow.utils.config import Config
from topicflow.utils.models import FetchedContent, ItemStatus, ScanReport, utcnow
from topicflow.web.models import DuplicateRecord
from topicflow.web.services import duplicate_service, pipeline_service, scheduler_service, topic_service
from topicflow.web.services.orchestrator_service import PipelineOrchestrator


@pytest.fixture
def mock_config():
    """Mock scheduler configuration."""
    return {
        "SCHEDULER_ENABLED": True,
        "CLEANUP_SCAN_HOUR": 2,
        "CLEANUP_SCAN_MINUTE": 30,
        "SCHEDULER_TIMEZONE": "America/Los_Angeles",
        "ATTEMPT_RETENTION_DAYS": 14,
    }


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Reset scheduler before each test."""
    if scheduler_service.scheduler.running:
        scheduler_service.scheduler.shutdown(wait=False)
    scheduler_service.scheduler = AsyncIOScheduler()
    yield
    if scheduler_service.scheduler.running:
        scheduler_service.scheduler.shutdown(wait=False)


class TestStartScheduler:
    """Tests for start_scheduler function."""

    @pytest.mark.asyncio
    async def test_registers_scan_and_maintenance_jobs(self, mock_config):
        """Should register both jobs with their arguments and timezone."""
        orchestrator = MagicMock()

        scheduler_service.start_scheduler(orchestrator, mock_config)

        assert scheduler_service.scheduler.running
        jobs = {job.id: job for job in scheduler_service.scheduler.get_jobs()}
        assert set(jobs) == {"nightly_duplicate_scan", "hourly_maintenance"}

        scan_job = jobs["nightly_duplicate_scan"]
        assert str(scan_job.trigger.timezone) == "America/Los_Angeles"
        assert scan_job.args == (orchestrator,)
        assert jobs["hourly_maintenance"].args == (orchestrator, 14)

    @pytest.mark.asyncio
    async def test_restart_replaces_jobs(self, mock_config):
        """Should not duplicate jobs when restarted."""
        orchestrator = MagicMock()
        scheduler_service.start_scheduler(orchestrator, mock_config)
        scheduler_service.stop_scheduler()

        scheduler_service.scheduler = AsyncIOScheduler()
        scheduler_service.start_scheduler(orchestrator, mock_config)

        assert len(scheduler_service.scheduler.get_jobs()) == 2

    def test_disabled_scheduler_does_not_start(self, mock_config):
        """Should not start or add jobs when disabled."""
        mock_config["SCHEDULER_ENABLED"] = False

        scheduler_service.start_scheduler(MagicMock(), mock_config)

        assert not scheduler_service.scheduler.running
        assert scheduler_service.scheduler.get_jobs() == []

    def test_stop_when_not_running(self):
        """Should be safe to stop a scheduler that never started."""
        scheduler_service.stop_scheduler()
        assert not scheduler_service.scheduler.running


class TestNightlyScans:
    """Tests for run_nightly_scans function."""

    @pytest.mark.asyncio
    async def test_one_failing_topic_does_not_stop_others(self):
        """Should keep scanning remaining topics after one fails."""
        orchestrator = MagicMock()
        orchestrator.active_topic_ids.return_value = [1, 2, 3]
        orchestrator.start_scan = AsyncMock(
            side_effect=[
                ScanReport(topic_id=1),
                duplicate_service.ScanAlreadyRunningError("busy"),
                RuntimeError("database is locked"),
            ]
        )

        await scheduler_service.run_nightly_scans(orchestrator)

        assert orchestrator.start_scan.await_count == 3
        orchestrator.start_scan.assert_any_await(3)

    @pytest.mark.asyncio
    async def test_scans_flag_backlog_duplicates(self, session_factory, topic_id, source_ids):
        """Should flag backlog duplicates during the nightly run."""
        db = session_factory()
        try:
            topic = topic_service.get_topic(db, topic_id)
            for source_id in source_ids[:2]:
                created, _ = pipeline_service.ingest_candidates(
                    db,
                    topic,
                    source_id,
                    [FetchedContent(title="Recall", content="Recall issued for county water filters")],
                    fetched_at=utcnow(),
                )
                created[0].status = ItemStatus.AWAITING_SIMPLIFY.value
            db.commit()
        finally:
            db.close()
        orchestrator = PipelineOrchestrator(session_factory)

        await scheduler_service.run_nightly_scans(orchestrator)

        db = session_factory()
        try:
            assert db.query(DuplicateRecord).count() == 1
        finally:
            db.close()


class TestMaintenance:
    """Tests for run_maintenance function."""

    @pytest.mark.asyncio
    async def test_prunes_and_syncs_workers(self):
        """Test maintenance prunes attempt history, then syncs workers."""
        orchestrator = MagicMock()

        await scheduler_service.run_maintenance(orchestrator, 30)

        orchestrator.prune_attempts.assert_called_once_with(30)
        orchestrator.sync_workers.assert_called_once()

    @pytest.mark.asyncio
    async def test_errors_are_logged_not_raised(self):
        """Test a failing prune is logged and skips the worker sync."""
        orchestrator = MagicMock()
        orchestrator.prune_attempts.side_effect = RuntimeError("disk full")

        await scheduler_service.run_maintenance(orchestrator, 30)

        orchestrator.sync_workers.assert_not_called()

    @pytest.mark.asyncio
    async def test_scheduled_run_starts_worker_for_new_topic(
        self, mock_config, session_factory, aggregator
    ):
        """Test the hourly job fired by the scheduler starts a worker for a topic created after startup."""
        config = Config()
        config.automation.poll_interval_seconds = 0.01
        orchestrator = PipelineOrchestrator(session_factory, config, aggregator)
        await orchestrator.start()

        db = session_factory()
        try:
            new_topic_id = topic_service.create_topic(db, name="Harbor").id
        finally:
            db.close()

        scheduler_service.start_scheduler(orchestrator, mock_config)
        scheduler_service.scheduler.modify_job(
            "hourly_maintenance", next_run_time=datetime.now(timezone.utc)
        )

        try:
            worker = None
            for _ in range(50):
                await asyncio.sleep(0.02)
                worker = orchestrator.workers.get(new_topic_id)
                if worker is not None and worker.task is not None:
                    break

            assert worker is not None
            assert worker.task is not None
            assert not worker.task.done()
        finally:
            await orchestrator.stop()
