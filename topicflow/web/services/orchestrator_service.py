"""
Pipeline orchestrator for topicflow.

One ``TopicWorker`` per topic runs as an asyncio task: each poll it gathers
from eligible sources (when the topic's mode and scrape frequency allow and
backpressure is off), resolves new items in fetch order against the topic's
own recent-content index, and advances surviving items through the stages
the automation engine permits.

All sessions share one SQLite connection, so every unit of database work is
committed before the next ``await``.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from topicflow.processors.automation_engine import evaluate_item, stage_permissions
from topicflow.processors.backpressure import WatermarkGate
from topicflow.processors.duplicate_resolver import DuplicateResolver, RecentContentIndex
from topicflow.utils.constants import AutomationConstants, BackpressureConstants, DedupConstants
from topicflow.utils.models import (
    AttemptOutcome,
    AutomationState,
    CommandKind,
    FetchResult,
    ForceTestResult,
    GenerationResult,
    HealthSnapshot,
    HealthStatus,
    ModeCommand,
    PipelineStats,
    ScanReport,
    SourceRef,
    Stage,
    TopicHealth,
    Verdict,
    utcnow,
)
from topicflow.web.models import Topic
from topicflow.web.services import (
    duplicate_service,
    pipeline_service,
    source_health_service,
    topic_service,
)

logger = logging.getLogger(__name__)


class TopicWorker:
    """Per-topic state owned by exactly one worker task."""

    def __init__(self, topic_id: int, high_watermark: int, low_watermark: int):
        self.topic_id = topic_id
        self.index: Optional[RecentContentIndex] = None
        # Serializes index writes against resolution reads
        self.index_lock = asyncio.Lock()
        # Stage advancement within a topic is sequential
        self.cycle_lock = asyncio.Lock()
        self.gate = WatermarkGate(high_watermark, low_watermark, name=f"topic {topic_id}")
        self.task: Optional[asyncio.Task] = None
        self.scan_task: Optional[asyncio.Task] = None
        self.scan_cancel_requested = False
        self.last_scan: Optional[ScanReport] = None

    @property
    def scan_running(self) -> bool:
        return self.scan_task is not None and not self.scan_task.done()


class PipelineOrchestrator:
    """
    Top-level coordinator for all topics.

    Collaborators are injected: ``aggregator`` (a ``BaseAggregator``) fetches
    sources and ``generator`` (a ``BaseContentGenerator``) simplifies and
    illustrates. Either may be None, in which case the stages that need it
    do not run.
    """

    def __init__(self, session_factory, config=None, aggregator=None, generator=None):
        self.session_factory = session_factory
        self.config = config
        self.aggregator = aggregator
        self.generator = generator

        self.tracker = source_health_service.SourceHealthTracker(session_factory, config)
        self.resolver = DuplicateResolver(config)

        automation = getattr(config, "automation", None)
        self.poll_interval = getattr(
            automation, "poll_interval_seconds", AutomationConstants.POLL_INTERVAL_SECONDS
        )
        self.generation_timeout = getattr(
            automation, "generation_timeout_seconds", AutomationConstants.GENERATION_TIMEOUT_SECONDS
        )
        self.pause_publication_when_critical = getattr(
            automation, "pause_publication_when_critical", True
        )
        backpressure = getattr(config, "backpressure", None)
        self.high_watermark = getattr(
            backpressure, "high_watermark", BackpressureConstants.HIGH_WATERMARK
        )
        self.low_watermark = getattr(
            backpressure, "low_watermark", BackpressureConstants.LOW_WATERMARK
        )
        self.shingle_size = getattr(
            getattr(config, "dedup", None), "shingle_size", DedupConstants.SHINGLE_SIZE
        )

        self.workers: Dict[int, TopicWorker] = {}
        self._running = False

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def worker(self, topic_id: int) -> TopicWorker:
        if topic_id not in self.workers:
            self.workers[topic_id] = TopicWorker(
                topic_id, self.high_watermark, self.low_watermark
            )
        return self.workers[topic_id]

    async def start(self) -> None:
        """Start one worker task per active topic."""
        self._running = True
        started = self.sync_workers()
        logger.info(f"Orchestrator started with {started} topic workers")

    def sync_workers(self) -> int:
        """Start tasks for active topics that have none; returns how many run."""
        if not self._running:
            return 0
        db = self.session_factory()
        try:
            topic_ids = [t.id for t in topic_service.get_active_topics(db)]
            db.commit()
        finally:
            db.close()

        for topic_id in topic_ids:
            worker = self.worker(topic_id)
            if worker.task is None or worker.task.done():
                worker.task = asyncio.create_task(
                    self._worker_loop(topic_id), name=f"topic-worker-{topic_id}"
                )
        return sum(1 for w in self.workers.values() if w.task and not w.task.done())

    async def stop(self) -> None:
        """Cancel worker and scan tasks and wait for them to finish."""
        self._running = False
        tasks = []
        for worker in self.workers.values():
            worker.scan_cancel_requested = True
            for task in (worker.task, worker.scan_task):
                if task is not None and not task.done():
                    task.cancel()
                    tasks.append(task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Orchestrator stopped")

    async def _worker_loop(self, topic_id: int) -> None:
        while self._running:
            try:
                await self.run_cycle(topic_id)
            except topic_service.TopicArchivedError:
                logger.info(f"Topic {topic_id} archived, stopping its worker")
                return
            except topic_service.TopicNotFoundError:
                logger.warning(f"Topic {topic_id} no longer exists, stopping its worker")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A failed cycle is retried on the next poll
                logger.error(f"Cycle failed for topic {topic_id}: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Pipeline cycle
    # ------------------------------------------------------------------

    def _load_topic(self, topic_id: int) -> Tuple[AutomationState, int, bool, List[SourceRef]]:
        """Topic settings and eligible sources, detached from the session."""
        db = self.session_factory()
        try:
            topic = topic_service.get_topic(db, topic_id)
            if topic.is_archived:
                raise topic_service.TopicArchivedError(f"Topic {topic_id} is archived")
            state = topic_service.get_automation_state(topic)
            due = self._gather_due(topic)
            sources = [
                source_health_service.source_ref(s)
                for s in topic_service.get_topic_sources(db, topic_id)
                if source_health_service.source_is_eligible(s, self.config)
            ]
            threshold = topic.quality_threshold
            db.commit()
            return state, threshold, due, sources
        finally:
            db.close()

    @staticmethod
    def _gather_due(topic: Topic) -> bool:
        if topic.last_gathered_at is None:
            return True
        return utcnow() - topic.last_gathered_at >= timedelta(hours=topic.scrape_frequency_hours)

    def _update_backpressure(self, topic_id: int) -> bool:
        db = self.session_factory()
        try:
            depth = pipeline_service.processing_queue_depth(db, topic_id)
            db.commit()
        finally:
            db.close()
        return self.worker(topic_id).gate.update(depth)

    async def run_cycle(self, topic_id: int, force_gather: bool = False) -> PipelineStats:
        """
        Run one pass of the pipeline for a topic.

        Args:
            topic_id: Topic ID
            force_gather: Gather even if the mode or schedule would not
                (operator-triggered)

        Returns:
            PipelineStats after the pass

        Raises:
            TopicNotFoundError: If topic doesn't exist
            TopicArchivedError: If topic is archived
        """
        worker = self.worker(topic_id)
        async with worker.cycle_lock:
            state, threshold, due, sources = self._load_topic(topic_id)
            permitted = stage_permissions(state)

            paused = self._update_backpressure(topic_id)
            if paused:
                logger.debug(f"Ingestion for topic {topic_id} paused by backpressure")
            elif force_gather or (Stage.GATHER in permitted and due):
                await self._gather(topic_id, sources)

            await self._resolve_new_items(topic_id)
            await self._advance_items(topic_id, state, threshold)

            self._update_backpressure(topic_id)
            return self.stats(topic_id)

    async def _gather(self, topic_id: int, sources: List[SourceRef]) -> int:
        """Poll eligible sources concurrently; returns items ingested."""
        if self.aggregator is None:
            logger.debug(f"No ingestion collaborator, skipping gather for topic {topic_id}")
            return 0
        if not sources:
            logger.warning(f"Topic {topic_id} has no eligible sources to gather from")

        timeout = self.tracker.fetch_timeout
        results: List[FetchResult] = await asyncio.gather(
            *(source_health_service.probe_source(self.aggregator, s, timeout) for s in sources)
        )

        ingested = 0
        for source, result in zip(sources, results):
            success = result.outcome == AttemptOutcome.SUCCESS
            await self.tracker.record_attempt(
                source.id,
                result.outcome,
                error=result.error,
                articles_found=len(result.items) if success else 0,
                response_time_ms=result.response_time_ms,
            )
            if not success:
                continue
            db = self.session_factory()
            try:
                topic = topic_service.get_topic(db, topic_id)
                created, filtered = pipeline_service.ingest_candidates(
                    db, topic, source.id, result.items, shingle_size=self.shingle_size
                )
                ingested += len(created)
            finally:
                db.close()

        db = self.session_factory()
        try:
            topic = topic_service.get_topic(db, topic_id)
            topic.last_gathered_at = utcnow()
            db.commit()
        finally:
            db.close()

        logger.info(f"Gathered {ingested} new items for topic {topic_id} from {len(sources)} sources")
        return ingested

    def _ensure_index(self, topic_id: int, db) -> RecentContentIndex:
        worker = self.worker(topic_id)
        if worker.index is None:
            worker.index = duplicate_service.load_recent_index(db, topic_id, self.resolver)
        else:
            worker.index.evict_before(utcnow() - timedelta(days=self.resolver.window_days))
        return worker.index

    async def _resolve_new_items(self, topic_id: int) -> int:
        """Dedup items awaiting resolution, earliest fetch first."""
        worker = self.worker(topic_id)
        async with worker.index_lock:
            db = self.session_factory()
            try:
                index = self._ensure_index(topic_id, db)
                pending = pipeline_service.new_items(db, topic_id)
                duplicates = 0
                for record in pending:
                    resolution = duplicate_service.resolve_item(db, record, self.resolver, index)
                    if resolution.verdict == Verdict.DUPLICATE:
                        duplicates += 1
            finally:
                db.close()
        if pending:
            logger.info(
                f"Resolved {len(pending)} items for topic {topic_id}: {duplicates} duplicates"
            )
        return len(pending)

    def _publication_paused(self, topic_id: int) -> bool:
        if not self.pause_publication_when_critical:
            return False
        health = self.tracker.topic_health(topic_id)
        return health.status == HealthStatus.CRITICAL

    async def _advance_items(self, topic_id: int, state: AutomationState, threshold: int) -> int:
        """Run every stage each item may take unattended; returns stages run."""
        db = self.session_factory()
        try:
            item_ids = [i.id for i in pipeline_service.advanceable_items(db, topic_id)]
            db.commit()
        finally:
            db.close()
        if not item_ids:
            return 0

        illustrate_paused = self._publication_paused(topic_id)
        if illustrate_paused:
            logger.warning(f"Topic {topic_id} health is critical, unattended illustration paused")

        stages_run = 0
        for item_id in item_ids:
            while True:
                db = self.session_factory()
                try:
                    item = pipeline_service.get_item(db, item_id)
                    if item.held_for_review:
                        break
                    try:
                        stage = pipeline_service.next_stage_for(item)
                    except pipeline_service.InvalidItemStateError:
                        break
                    decision = evaluate_item(state, item.confidence, threshold)
                    if decision.held:
                        pipeline_service.hold_item(db, item_id, decision.hold_reason)
                        break
                    db.commit()
                finally:
                    db.close()

                if stage not in decision.permitted:
                    break
                if stage == Stage.ILLUSTRATE and illustrate_paused:
                    break
                if not await self._run_stage(item_id, stage):
                    break
                stages_run += 1
        return stages_run

    async def _call_generator(self, stage: Stage, ref) -> GenerationResult:
        call = self.generator.simplify if stage == Stage.SIMPLIFY else self.generator.illustrate
        try:
            return await asyncio.wait_for(call(ref), timeout=self.generation_timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return GenerationResult(success=False, error="timeout")
        except Exception as e:
            return GenerationResult(success=False, error=str(e) or e.__class__.__name__)

    async def _run_stage(self, item_id: int, stage: Stage) -> bool:
        """Run one generation stage for an item; False when it did not complete."""
        if self.generator is None:
            logger.debug(f"No generation collaborator, {stage.value} skipped for item {item_id}")
            return False

        db = self.session_factory()
        try:
            item = pipeline_service.get_item(db, item_id)
            if stage == Stage.SIMPLIFY:
                ref = pipeline_service.item_ref(item)
            else:
                ref = pipeline_service.story_ref(item.story)
            db.commit()
        finally:
            db.close()

        result = await self._call_generator(stage, ref)

        db = self.session_factory()
        try:
            if stage == Stage.SIMPLIFY:
                story = pipeline_service.apply_simplify_result(db, item_id, result)
            else:
                story = pipeline_service.apply_illustrate_result(db, item_id, result)
        finally:
            db.close()
        return story is not None

    # ------------------------------------------------------------------
    # Observation surface
    # ------------------------------------------------------------------

    def health(self, topic_id: int) -> Tuple[List[HealthSnapshot], TopicHealth]:
        db = self.session_factory()
        try:
            topic_service.get_topic(db, topic_id)
        finally:
            db.close()
        return self.tracker.snapshot(topic_id), self.tracker.topic_health(topic_id)

    def stats(self, topic_id: int) -> PipelineStats:
        """
        Raises:
            TopicNotFoundError: If topic doesn't exist
        """
        paused = topic_id in self.workers and self.workers[topic_id].gate.paused
        db = self.session_factory()
        try:
            topic_service.get_topic(db, topic_id)
            stats = pipeline_service.pipeline_stats(db, topic_id, ingestion_paused=paused)
            db.commit()
            return stats
        finally:
            db.close()

    def automation(self, topic_id: int) -> dict:
        db = self.session_factory()
        try:
            topic = topic_service.get_topic(db, topic_id)
            state = topic_service.get_automation_state(topic)
            return {
                "topic_id": topic.id,
                "automation_mode": state.effective_mode,
                "stored_mode": state.mode.value,
                "holiday": state.holiday,
                "quality_threshold": topic.quality_threshold,
                "permitted_stages": sorted(s.value for s in stage_permissions(state)),
            }
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def set_mode(self, topic_id: int, mode_label: str) -> AutomationState:
        db = self.session_factory()
        try:
            return topic_service.set_automation_mode(db, topic_id, mode_label)
        finally:
            db.close()

    def exit_holiday(self, topic_id: int) -> AutomationState:
        db = self.session_factory()
        try:
            return topic_service.apply_mode_command(
                db, topic_id, ModeCommand(kind=CommandKind.EXIT_HOLIDAY)
            )
        finally:
            db.close()

    def set_quality_threshold(self, topic_id: int, quality_threshold: int) -> int:
        db = self.session_factory()
        try:
            topic = topic_service.set_quality_threshold(db, topic_id, quality_threshold)
            return topic.quality_threshold
        finally:
            db.close()

    async def gather_now(self, topic_id: int) -> PipelineStats:
        """Operator-triggered gather, allowed in every mode."""
        return await self.run_cycle(topic_id, force_gather=True)

    async def force_test_source(self, source_id: int) -> ForceTestResult:
        if self.aggregator is None:
            raise source_health_service.ForceTestError("No ingestion collaborator configured")
        return await self.tracker.force_test(source_id, self.aggregator)

    async def reinstate_source(self, source_id: int) -> ForceTestResult:
        if self.aggregator is None:
            raise source_health_service.ForceTestError("No ingestion collaborator configured")
        return await self.tracker.reinstate(source_id, self.aggregator)

    async def deactivate_source(self, source_id: int) -> HealthSnapshot:
        return await self.tracker.deactivate(source_id)

    async def start_scan(self, topic_id: int, batch_size: Optional[int] = None) -> ScanReport:
        """
        Run a duplicate-cleanup scan for a topic and wait for its report.

        Raises:
            TopicNotFoundError: If topic doesn't exist
            ScanAlreadyRunningError: If the topic already has a scan running
        """
        db = self.session_factory()
        try:
            topic_service.get_topic(db, topic_id)
        finally:
            db.close()

        worker = self.worker(topic_id)
        if worker.scan_running:
            raise duplicate_service.ScanAlreadyRunningError(
                f"A duplicate scan is already running for topic {topic_id}"
            )

        def _drop_flagged(item_ids: List[int]) -> None:
            if worker.index is not None:
                for item_id in item_ids:
                    worker.index.remove(item_id)

        worker.scan_cancel_requested = False
        worker.scan_task = asyncio.create_task(
            duplicate_service.run_cleanup_scan(
                self.session_factory,
                topic_id,
                self.resolver,
                batch_size=batch_size,
                should_cancel=lambda: worker.scan_cancel_requested,
                on_batch=_drop_flagged,
                index_lock=worker.index_lock,
            ),
            name=f"duplicate-scan-{topic_id}",
        )
        report = await asyncio.shield(worker.scan_task)
        worker.last_scan = report
        return report

    def cancel_scan(self, topic_id: int) -> bool:
        """Ask a running scan to stop after its current batch; False if none runs."""
        worker = self.workers.get(topic_id)
        if worker is None or not worker.scan_running:
            return False
        worker.scan_cancel_requested = True
        logger.info(f"Cancellation requested for duplicate scan of topic {topic_id}")
        return True

    async def override_duplicate(self, record_id: int):
        """Reverse a duplicate verdict and put the item back into its topic's index."""
        db = self.session_factory()
        try:
            record = duplicate_service.get_duplicate_record(db, record_id)
            worker = self.worker(record.topic_id)
            db.commit()
        finally:
            db.close()

        async with worker.index_lock:
            db = self.session_factory()
            try:
                item = duplicate_service.override_duplicate(db, record_id)
                if worker.index is not None:
                    worker.index.add(duplicate_service.to_candidate(item))
                return pipeline_service.item_ref(item)
            finally:
                db.close()

    def merge_duplicate(self, record_id: int):
        db = self.session_factory()
        try:
            original = duplicate_service.merge_duplicate(db, record_id)
            return pipeline_service.item_ref(original), original.merged_source_list
        finally:
            db.close()

    async def approve_item(self, item_id: int) -> dict:
        """
        Editor approval: run the item's next stage now, whatever the mode.

        Raises:
            ItemNotFoundError: If item doesn't exist
            InvalidItemStateError: If item is not mid-pipeline
        """
        db = self.session_factory()
        try:
            item = pipeline_service.get_item(db, item_id)
            stage = pipeline_service.next_stage_for(item)
            topic_id = item.topic_id
            db.commit()
        finally:
            db.close()

        if self.generator is None:
            raise pipeline_service.PipelineServiceError("No generation collaborator configured")

        async with self.worker(topic_id).cycle_lock:
            completed = await self._run_stage(item_id, stage)

        db = self.session_factory()
        try:
            item = pipeline_service.get_item(db, item_id)
            result = {
                "item_id": item_id,
                "stage": stage.value,
                "success": completed,
                "status": item.status,
                "held_for_review": bool(item.held_for_review),
                "hold_reason": item.hold_reason,
            }
            db.commit()
        finally:
            db.close()
        logger.info(f"Item {item_id} approved for {stage.value}: {'done' if completed else 'held'}")
        return result

    def publish_story(self, story_id: int):
        db = self.session_factory()
        try:
            story = pipeline_service.publish_story(db, story_id)
            return pipeline_service.story_ref(story), story.published_at
        finally:
            db.close()

    def prune_attempts(self, older_than_days: int) -> int:
        db = self.session_factory()
        try:
            return source_health_service.prune_attempts(db, older_than_days)
        finally:
            db.close()

    def active_topic_ids(self) -> List[int]:
        db = self.session_factory()
        try:
            ids = [t.id for t in topic_service.get_active_topics(db)]
            db.commit()
            return ids
        finally:
            db.close()

