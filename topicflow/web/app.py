"""FastAPI application for the topicflow observation and operator surface.

Read-only snapshot endpoints for dashboards plus synchronous operator
actions. Every action returns a result or a 4xx with a friendly message.
"""

import importlib
import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, HTTPException
from fastapi.exceptions import RequestValidationError

from topicflow.utils.config import Config
from topicflow.utils.logger import setup_logging
from topicflow.utils.models import ForceTestResult, HealthSnapshot, ItemRef, PipelineStats, ScanReport
from topicflow.web.config import settings
from topicflow.web.database import SessionLocal, init_db
from topicflow.web.dependencies import get_orchestrator
from topicflow.web.schemas import (
    ApprovalResponse,
    AutomationResponse,
    MergeResponse,
    ModeUpdate,
    PublishResponse,
    ScanRequest,
    ThresholdUpdate,
    TopicHealthResponse,
)
from topicflow.web.services import (
    duplicate_service,
    pipeline_service,
    scheduler_service,
    source_health_service,
    topic_service,
)
from topicflow.web.services.orchestrator_service import PipelineOrchestrator
from topicflow.web.error_handlers import (
    global_exception_handler,
    validation_exception_handler,
    get_friendly_message,
)

logger = logging.getLogger(__name__)


def load_collaborator(path: Optional[str]):
    """
    Instantiate a collaborator class named by ``package.module:ClassName``.

    Returns None when no path is configured.

    Raises:
        ImportError: If the module or class cannot be found
    """
    if not path:
        return None
    module_name, _, class_name = path.replace(":", ".").rpartition(".")
    if not module_name:
        raise ImportError(f"Collaborator path '{path}' must include a module")
    module = importlib.import_module(module_name)
    try:
        collaborator_class = getattr(module, class_name)
    except AttributeError:
        raise ImportError(f"{module_name} has no attribute '{class_name}'")
    return collaborator_class()


def seed_configured_topics(config: Config, session_factory=SessionLocal) -> int:
    """Create the topics listed in the pipeline config that don't exist yet."""
    if not config.topics:
        return 0
    db = session_factory()
    try:
        created = topic_service.seed_topics(db, config.topics, config)
    finally:
        db.close()
    if created:
        logger.info(f"Seeded {len(created)} topics from configuration")
    return len(created)


def build_orchestrator(config: Config, session_factory=SessionLocal) -> PipelineOrchestrator:
    """
    Build the orchestrator with the collaborators named in settings.

    ``AGGREGATOR_CLASS`` and ``GENERATOR_CLASS`` select the ingestion and
    content-generation implementations. Without an aggregator, workers run
    but never gather. Embedding applications can skip this entirely by
    setting ``app.state.orchestrator`` before startup.
    """
    aggregator = load_collaborator(settings.aggregator_class)
    generator = load_collaborator(settings.generator_class)
    if aggregator is None:
        logger.warning("No AGGREGATOR_CLASS configured, topics will not gather")
    if generator is None:
        logger.warning("No GENERATOR_CLASS configured, stages past gather need an operator")
    return PipelineOrchestrator(session_factory, config, aggregator, generator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle (startup/shutdown).

    An orchestrator already on ``app.state.orchestrator`` is used as is;
    otherwise one is built from settings.
    """
    # Disable background work during tests to avoid interference with fixtures
    is_testing = os.getenv("TESTING", "false").lower() == "true"

    if not is_testing:
        config = Config(settings.pipeline_config_path)
        setup_logging(config.logging.level, config.logging.file)
        logger.info("Starting topicflow")
        init_db()
        seed_configured_topics(config)

        orchestrator = getattr(app.state, "orchestrator", None)
        if orchestrator is None:
            orchestrator = build_orchestrator(config)
            app.state.orchestrator = orchestrator

        if settings.orchestrator_enabled:
            await orchestrator.start()

        scheduler_service.start_scheduler(
            orchestrator,
            {
                "SCHEDULER_ENABLED": settings.scheduler_enabled,
                "CLEANUP_SCAN_HOUR": settings.cleanup_scan_hour,
                "CLEANUP_SCAN_MINUTE": settings.cleanup_scan_minute,
                "SCHEDULER_TIMEZONE": settings.scheduler_timezone,
                "ATTEMPT_RETENTION_DAYS": settings.attempt_retention_days,
            },
        )

    yield

    # Shutdown
    if not is_testing:
        logger.info("Shutting down topicflow")
        scheduler_service.stop_scheduler()
        await app.state.orchestrator.stop()


# Initialize FastAPI app with lifespan
app = FastAPI(title=settings.app_title, lifespan=lifespan)

# Register global exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)


@app.get("/health")
async def service_health():
    """Liveness plus scheduler status."""
    jobs_info = []
    for job in scheduler_service.scheduler.get_jobs():
        jobs_info.append(
            {
                "id": job.id,
                "next_run": job.next_run_time.isoformat()
                if getattr(job, "next_run_time", None)
                else None,
            }
        )
    return {
        "status": "ok",
        "scheduler_running": scheduler_service.scheduler.running,
        "jobs": jobs_info,
    }


# ----------------------------------------------------------------------
# Observation surface
# ----------------------------------------------------------------------


@app.get("/topics/{topic_id}/health", response_model=TopicHealthResponse)
async def topic_health(
    topic_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Per-source health snapshots and the topic's aggregate band."""
    try:
        sources, health = orchestrator.health(topic_id)
        return TopicHealthResponse(topic_id=topic_id, health=health, sources=sources)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))


@app.get("/topics/{topic_id}/stats", response_model=PipelineStats)
async def topic_stats(
    topic_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Pending, processing and ready counts for the topic."""
    try:
        return orchestrator.stats(topic_id)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))


@app.get("/topics/{topic_id}/automation", response_model=AutomationResponse)
async def topic_automation(
    topic_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    try:
        return orchestrator.automation(topic_id)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))


# ----------------------------------------------------------------------
# Operator actions
# ----------------------------------------------------------------------


@app.post("/topics/{topic_id}/mode", response_model=AutomationResponse)
async def set_topic_mode(
    topic_id: int,
    mode_data: ModeUpdate,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Set the automation mode ('holiday' enters holiday, keeping the stored mode)."""
    try:
        orchestrator.set_mode(topic_id, mode_data.mode)
        return orchestrator.automation(topic_id)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except topic_service.TopicArchivedError as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))
    except topic_service.TopicValidationError as e:
        raise HTTPException(status_code=422, detail=get_friendly_message(e))


@app.post("/topics/{topic_id}/holiday/exit", response_model=AutomationResponse)
async def exit_topic_holiday(
    topic_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Leave holiday and restore the stored mode."""
    try:
        orchestrator.exit_holiday(topic_id)
        return orchestrator.automation(topic_id)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except topic_service.TopicArchivedError as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))


@app.post("/topics/{topic_id}/threshold", response_model=AutomationResponse)
async def set_topic_threshold(
    topic_id: int,
    threshold_data: ThresholdUpdate,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.set_quality_threshold(topic_id, threshold_data.quality_threshold)
        return orchestrator.automation(topic_id)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except topic_service.TopicArchivedError as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))
    except topic_service.TopicValidationError as e:
        raise HTTPException(status_code=422, detail=get_friendly_message(e))


@app.post("/topics/{topic_id}/gather", response_model=PipelineStats)
async def gather_topic(
    topic_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Gather now, in any mode; returns stats after the pass."""
    try:
        return await orchestrator.gather_now(topic_id)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except topic_service.TopicArchivedError as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))


@app.post("/topics/{topic_id}/duplicate-scan", response_model=ScanReport)
async def start_duplicate_scan(
    topic_id: int,
    scan_data: Optional[ScanRequest] = None,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
):
    """Run a duplicate-cleanup scan and return its per-batch report."""
    try:
        batch_size = scan_data.batch_size if scan_data else None
        return await orchestrator.start_scan(topic_id, batch_size=batch_size)
    except topic_service.TopicNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except duplicate_service.ScanAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))


@app.post("/topics/{topic_id}/duplicate-scan/cancel")
async def cancel_duplicate_scan(
    topic_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    cancelled = orchestrator.cancel_scan(topic_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail="No duplicate scan is running for this topic.")
    return {"status": "success", "topic_id": topic_id, "cancelling": True}


@app.post("/sources/{source_id}/test", response_model=ForceTestResult)
async def test_source(
    source_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Force a fetch of one source through the serialized update path."""
    try:
        return await orchestrator.force_test_source(source_id)
    except source_health_service.SourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except source_health_service.ForceTestError as e:
        raise HTTPException(status_code=503, detail=get_friendly_message(e))


@app.post("/sources/{source_id}/reinstate", response_model=ForceTestResult)
async def reinstate_source(
    source_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.reinstate_source(source_id)
    except source_health_service.SourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except source_health_service.ForceTestError as e:
        raise HTTPException(status_code=503, detail=get_friendly_message(e))


@app.post("/sources/{source_id}/deactivate", response_model=HealthSnapshot)
async def deactivate_source(
    source_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.deactivate_source(source_id)
    except source_health_service.SourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))


@app.post("/duplicates/{record_id}/override", response_model=ItemRef)
async def override_duplicate(
    record_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Reverse a duplicate verdict; the item goes back to awaiting_simplify."""
    try:
        return await orchestrator.override_duplicate(record_id)
    except duplicate_service.DuplicateRecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except duplicate_service.DuplicateServiceError as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))


@app.post("/duplicates/{record_id}/merge", response_model=MergeResponse)
async def merge_duplicate(
    record_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    try:
        item, merged = orchestrator.merge_duplicate(record_id)
        return MergeResponse(item=item, merged_source_ids=merged)
    except duplicate_service.DuplicateRecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except duplicate_service.DuplicateServiceError as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))


@app.post("/items/{item_id}/approve", response_model=ApprovalResponse)
async def approve_item(
    item_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    """Run the item's next stage now, regardless of mode."""
    try:
        return await orchestrator.approve_item(item_id)
    except pipeline_service.ItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except (pipeline_service.InvalidItemStateError, pipeline_service.StoryPublishedError) as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))
    except pipeline_service.PipelineServiceError as e:
        raise HTTPException(status_code=503, detail=get_friendly_message(e))


@app.post("/stories/{story_id}/publish", response_model=PublishResponse)
async def publish_story(
    story_id: int, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
):
    try:
        story, published_at = orchestrator.publish_story(story_id)
        return PublishResponse(story=story, published_at=published_at)
    except pipeline_service.ItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=get_friendly_message(e))
    except (pipeline_service.InvalidItemStateError, pipeline_service.StoryPublishedError) as e:
        raise HTTPException(status_code=409, detail=get_friendly_message(e))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
