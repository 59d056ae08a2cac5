"""
Unit tests for the observation and operator routes.

The orchestrator dependency is overridden with one bound to an in-memory
database and fake collaborators.
"""

import pytest
from fastapi.testclient import TestClient

from topicflow.utils.models import FetchedContent, ItemStatus, utcnow
from topicflow.web.app import app
from topicflow.web.dependencies import get_orchestrator
from topicflow.web.error_handlers import ERROR_MESSAGES
from topicflow.web.models import DuplicateRecord
from topicflow.web.services import pipeline_service, topic_service
from topicflow.web.services.orchestrator_service import PipelineOrchestrator


@pytest.fixture
def orchestrator(session_factory, aggregator, generator):
    return PipelineOrchestrator(session_factory, aggregator=aggregator, generator=generator)


@pytest.fixture
def client(orchestrator):
    """Provide test client with orchestrator override."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def duplicate_id(client, aggregator, session_factory, topic_id, source_ids):
    """Gather the same story from two sources and return the duplicate record id."""
    aggregator.succeed(source_ids[0], "Museum adds free Sunday admission")
    aggregator.succeed(source_ids[1], "Museum adds free Sunday admission")
    client.post(f"/topics/{topic_id}/gather")
    db = session_factory()
    try:
        return db.query(DuplicateRecord).one().id
    finally:
        db.close()


def add_item(session_factory, topic_id, source_id, status=ItemStatus.AWAITING_SIMPLIFY):
    db = session_factory()
    try:
        topic = topic_service.get_topic(db, topic_id)
        created, _ = pipeline_service.ingest_candidates(
            db, topic, source_id, [FetchedContent(title="Item", content="Item body")], fetched_at=utcnow()
        )
        created[0].status = status.value
        created[0].confidence = 90
        db.commit()
        return created[0].id
    finally:
        db.close()


class TestObservation:
    """Tests for read-only endpoints."""

    def test_service_health(self, client):
        """Should report the service as up."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_topic_health(self, client, topic_id):
        """Should return the health band and one snapshot per source."""
        response = client.get(f"/topics/{topic_id}/health")

        assert response.status_code == 200
        data = response.json()
        assert data["health"]["status"] == "healthy"
        assert data["health"]["total_sources"] == 3
        assert len(data["sources"]) == 3
        assert data["sources"][0]["success_rate"] == 100.0

    def test_unknown_topic(self, client):
        """Should return 404 with a friendly message for unknown topics."""
        response = client.get("/topics/999/health")

        assert response.status_code == 404
        assert response.json()["detail"] == ERROR_MESSAGES["topic_not_found"]

    def test_stats(self, client, topic_id):
        """Should return pipeline stats."""
        response = client.get(f"/topics/{topic_id}/stats")

        assert response.status_code == 200
        assert response.json()["pending_articles"] == 0
        assert response.json()["ingestion_paused"] is False

    def test_automation(self, client, topic_id):
        """Should return the automation settings."""
        response = client.get(f"/topics/{topic_id}/automation")

        assert response.status_code == 200
        assert response.json()["automation_mode"] == "manual"
        assert response.json()["permitted_stages"] == []

    def test_missing_orchestrator_returns_503(self, topic_id):
        """Should return 503 when no orchestrator is running."""
        app.dependency_overrides.clear()
        with TestClient(app) as test_client:
            response = test_client.get(f"/topics/{topic_id}/stats")
        assert response.status_code == 503


class TestModeRoutes:
    """Tests for automation settings."""

    def test_set_mode_normalizes_label(self, client, topic_id):
        """Should accept display labels for modes."""
        response = client.post(f"/topics/{topic_id}/mode", json={"mode": "Auto Gather"})

        assert response.status_code == 200
        assert response.json()["automation_mode"] == "auto_gather"
        assert response.json()["permitted_stages"] == ["gather"]

    def test_holiday_round_trip(self, client, topic_id):
        """Should enter holiday and restore the stored mode on exit."""
        client.post(f"/topics/{topic_id}/mode", json={"mode": "auto_illustrate"})

        on_holiday = client.post(f"/topics/{topic_id}/mode", json={"mode": "holiday"}).json()
        assert on_holiday["automation_mode"] == "holiday"
        assert on_holiday["stored_mode"] == "auto_illustrate"

        back = client.post(f"/topics/{topic_id}/holiday/exit").json()
        assert back["automation_mode"] == "auto_illustrate"
        assert back["holiday"] is False

    def test_unknown_mode(self, client, topic_id):
        """Should return 422 for unknown modes."""
        response = client.post(f"/topics/{topic_id}/mode", json={"mode": "turbo"})

        assert response.status_code == 422
        assert response.json()["detail"] == ERROR_MESSAGES["mode_unknown"]

    def test_archived_topic(self, client, session_factory, topic_id):
        """Should return 409 when changing an archived topic."""
        db = session_factory()
        try:
            topic_service.archive_topic(db, topic_id)
        finally:
            db.close()

        response = client.post(f"/topics/{topic_id}/mode", json={"mode": "auto_gather"})

        assert response.status_code == 409

    def test_threshold(self, client, topic_id):
        """Should store valid thresholds and reject out-of-range ones."""
        response = client.post(f"/topics/{topic_id}/threshold", json={"quality_threshold": 80})
        assert response.status_code == 200
        assert response.json()["quality_threshold"] == 80

        response = client.post(f"/topics/{topic_id}/threshold", json={"quality_threshold": 150})
        assert response.status_code == 422


class TestGatherAndScan:
    """Tests for operator-triggered pipeline work."""

    def test_gather_returns_stats(self, client, aggregator, topic_id, source_ids):
        """Should poll every source and return stats."""
        aggregator.succeed(source_ids[0], "Pool reopens after renovation")

        response = client.post(f"/topics/{topic_id}/gather")

        assert response.status_code == 200
        assert response.json()["pending_articles"] == 1
        assert len(aggregator.calls) == 3

    def test_duplicate_scan_report(self, client, session_factory, topic_id, source_ids):
        """Should return per-batch scan counts."""
        add_item(session_factory, topic_id, source_ids[0])
        add_item(session_factory, topic_id, source_ids[1])

        response = client.post(f"/topics/{topic_id}/duplicate-scan", json={"batch_size": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["total_processed"] == 2
        assert data["total_duplicates"] == 1
        assert len(data["batches"]) == 2
        assert data["cancelled"] is False

    def test_scan_without_body_uses_default_batch(self, client, topic_id):
        """Should scan with the default batch size when no body is sent."""
        response = client.post(f"/topics/{topic_id}/duplicate-scan")

        assert response.status_code == 200
        assert response.json()["total_processed"] == 0

    def test_cancel_without_running_scan(self, client, topic_id):
        """Should return 404 when no scan is running."""
        response = client.post(f"/topics/{topic_id}/duplicate-scan/cancel")
        assert response.status_code == 404


class TestSourceRoutes:
    """Tests for source re-test and activation."""

    def test_force_test(self, client, aggregator, source_ids):
        """Should return the failure reason and updated counters."""
        aggregator.fail(source_ids[0], error="404")

        response = client.post(f"/sources/{source_ids[0]}/test")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["reason"] == "404"
        assert data["snapshot"]["failure_count"] == 1

    def test_force_test_unknown_source(self, client):
        """Should return 404 for unknown sources."""
        response = client.post("/sources/999/test")

        assert response.status_code == 404
        assert response.json()["detail"] == ERROR_MESSAGES["source_not_found"]

    def test_force_test_without_aggregator(self, session_factory, source_ids):
        """Should return 503 when no aggregator is configured."""
        app.dependency_overrides[get_orchestrator] = lambda: PipelineOrchestrator(session_factory)
        try:
            with TestClient(app) as test_client:
                response = test_client.post(f"/sources/{source_ids[0]}/test")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503

    def test_deactivate_and_reinstate(self, client, source_ids):
        """Should deactivate a source and bring it back."""
        response = client.post(f"/sources/{source_ids[1]}/deactivate")
        assert response.status_code == 200
        assert response.json()["is_eligible"] is False

        response = client.post(f"/sources/{source_ids[1]}/reinstate")
        assert response.status_code == 200
        assert response.json()["snapshot"]["is_active"] is True


class TestDuplicateRoutes:
    """Tests for duplicate review."""

    def test_override(self, client, duplicate_id, source_ids):
        """Should override once and return 409 on a second review."""
        response = client.post(f"/duplicates/{duplicate_id}/override")

        assert response.status_code == 200
        assert response.json()["source_id"] == source_ids[1]

        again = client.post(f"/duplicates/{duplicate_id}/override")
        assert again.status_code == 409
        assert again.json()["detail"] == ERROR_MESSAGES["duplicate_reviewed"]

    def test_merge(self, client, duplicate_id, source_ids):
        """Should list the merged source on the original."""
        response = client.post(f"/duplicates/{duplicate_id}/merge")

        assert response.status_code == 200
        assert response.json()["merged_source_ids"] == [source_ids[1]]

    def test_unknown_record(self, client):
        """Should return 404 for unknown duplicate records."""
        assert client.post("/duplicates/404/override").status_code == 404


class TestItemRoutes:
    """Tests for approval and publication."""

    def test_approve_then_publish(self, client, session_factory, topic_id, source_ids):
        """Should approve through to ready, publish once, then refuse."""
        item_id = add_item(session_factory, topic_id, source_ids[0])

        first = client.post(f"/items/{item_id}/approve")
        assert first.status_code == 200
        assert first.json()["status"] == "awaiting_illustrate"

        second = client.post(f"/items/{item_id}/approve")
        assert second.json()["status"] == "ready"

        assert client.post(f"/items/{item_id}/approve").status_code == 409

        db = session_factory()
        try:
            story_id = pipeline_service.get_item(db, item_id).story.id
        finally:
            db.close()

        published = client.post(f"/stories/{story_id}/publish")
        assert published.status_code == 200
        assert published.json()["story"]["slides"] == ["Item (1)", "Item (2)"]
        assert published.json()["published_at"] is not None

        republished = client.post(f"/stories/{story_id}/publish")
        assert republished.status_code == 409
        assert republished.json()["detail"] == ERROR_MESSAGES["story_published"]

    def test_approve_unknown_item(self, client):
        """Should return 404 for unknown items."""
        response = client.post("/items/999/approve")

        assert response.status_code == 404
        assert response.json()["detail"] == ERROR_MESSAGES["item_not_found"]
