"""
Unit tests for duplicate_service.py

Tests persisted verdicts, the batched cleanup scan and editor review of
duplicate records.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from topicflow.processors.duplicate_resolver import DuplicateResolver
from topicflow.utils.models import FetchedContent, ItemStatus
from topicflow.web.models import CandidateItemRecord, DuplicateRecord
from topicflow.web.services import duplicate_service, pipeline_service, topic_service
from topicflow.web.services.duplicate_service import (
    DuplicateRecordNotFoundError,
    DuplicateServiceError,
)

START = datetime(2026, 5, 4, 7, 0)


def ingest(db, topic_id, source_id, text, minutes=0):
    topic = topic_service.get_topic(db, topic_id)
    created, _ = pipeline_service.ingest_candidates(
        db,
        topic,
        source_id,
        [FetchedContent(title=text[:30], content=text)],
        fetched_at=START + timedelta(minutes=minutes),
    )
    return created[0]


def resolve_all(db, topic_id, resolver, index):
    return [
        duplicate_service.resolve_item(db, record, resolver, index)
        for record in pipeline_service.new_items(db, topic_id)
    ]


@pytest.fixture
def resolver():
    return DuplicateResolver()


@pytest.fixture
def flagged(db, topic_id, source_ids, resolver):
    """An original from source 1 and its copy from source 2, resolved."""
    ingest(db, topic_id, source_ids[0], "Road works close Main Street for two weeks")
    ingest(db, topic_id, source_ids[1], "Road works close main street for two weeks!", minutes=5)
    resolve_all(db, topic_id, resolver, resolver.new_index())
    return db.query(DuplicateRecord).one()


class TestResolveItem:
    """Tests for resolve_item function."""

    def test_first_arrival_is_original(self, db, topic_id, source_ids, resolver, flagged):
        """Should accept the first arrival and flag the identical copy with an audit record."""
        original, copy = db.query(CandidateItemRecord).order_by(CandidateItemRecord.id).all()

        assert original.status == ItemStatus.AWAITING_SIMPLIFY.value
        assert original.confidence == 100
        assert copy.status == ItemStatus.DUPLICATE.value
        assert copy.confidence == 0
        assert flagged.item_id == copy.id
        assert flagged.matched_item_id == original.id
        assert flagged.status == "pending"

    def test_distinct_items_are_all_accepted(self, db, topic_id, source_ids, resolver):
        """Should accept unrelated items without audit records."""
        ingest(db, topic_id, source_ids[0], "School board approves budget")
        ingest(db, topic_id, source_ids[1], "Ferry timetable changes in June", minutes=1)

        results = resolve_all(db, topic_id, resolver, resolver.new_index())

        assert [r.verdict.value for r in results] == ["original", "original"]
        assert db.query(DuplicateRecord).count() == 0


class TestLoadRecentIndex:
    """Tests for rebuilding the index from accepted items."""

    def test_loads_only_accepted_items_in_window(self, db, topic_id, source_ids, resolver, flagged):
        """Should rebuild the index from accepted items inside the window only."""
        index = duplicate_service.load_recent_index(
            db, topic_id, resolver, now=START + timedelta(days=1)
        )
        assert len(index) == 1

        later = duplicate_service.load_recent_index(
            db, topic_id, resolver, now=START + timedelta(days=10)
        )
        assert len(later) == 0


class TestCleanupScan:
    """Tests for run_cleanup_scan function."""

    def seed_backlog(self, db, topic_id, source_ids, count=120):
        """Accepted backlog where every tenth item copies an earlier one."""
        for i in range(count):
            n = i - 5 if i % 10 == 0 and i > 0 else i
            text = f"report{n} council{n} harbor{n} weather{n} market{n} school{n}"
            record = ingest(db, topic_id, source_ids[i % 3], text, minutes=i)
            record.status = ItemStatus.AWAITING_SIMPLIFY.value
        db.commit()

    @pytest.mark.asyncio
    async def test_flags_backlog_duplicates_in_batches(
        self, db, session_factory, topic_id, source_ids, resolver
    ):
        """Should flag backlog duplicates and report counts per batch."""
        self.seed_backlog(db, topic_id, source_ids)

        report = await duplicate_service.run_cleanup_scan(
            session_factory, topic_id, resolver, batch_size=50
        )

        assert [b.processed for b in report.batches] == [50, 50, 20]
        assert report.total_processed == 120
        assert report.total_duplicates == 11
        assert report.cancelled is False
        db.expire_all()
        assert db.query(DuplicateRecord).count() == 11

    @pytest.mark.asyncio
    async def test_rescan_finds_nothing_new(self, db, session_factory, topic_id, source_ids, resolver):
        """Should find nothing new when the backlog is scanned again."""
        self.seed_backlog(db, topic_id, source_ids, count=60)

        first = await duplicate_service.run_cleanup_scan(session_factory, topic_id, resolver)
        second = await duplicate_service.run_cleanup_scan(session_factory, topic_id, resolver)

        assert first.total_duplicates == 5
        assert second.total_duplicates == 0
        assert second.total_processed == 55

    @pytest.mark.asyncio
    async def test_cancel_keeps_finished_batches(
        self, db, session_factory, topic_id, source_ids, resolver
    ):
        """Should keep committed batches when a scan is cancelled."""
        self.seed_backlog(db, topic_id, source_ids)
        batches = []

        report = await duplicate_service.run_cleanup_scan(
            session_factory,
            topic_id,
            resolver,
            batch_size=20,
            should_cancel=lambda: len(batches) >= 2,
            on_batch=batches.append,
        )

        assert report.cancelled is True
        assert len(report.batches) == 2
        db.expire_all()
        assert db.query(DuplicateRecord).count() == report.total_duplicates

    @pytest.mark.asyncio
    async def test_overridden_item_is_not_reflagged(
        self, db, session_factory, topic_id, source_ids, resolver, flagged
    ):
        """Should never re-flag an item whose verdict was overridden."""
        duplicate_service.override_duplicate(db, flagged.id)

        report = await duplicate_service.run_cleanup_scan(session_factory, topic_id, resolver)

        assert report.total_duplicates == 0
        db.expire_all()
        assert db.get(CandidateItemRecord, flagged.item_id).status == "awaiting_simplify"

    @pytest.mark.asyncio
    async def test_scan_waits_for_index_lock(
        self, db, session_factory, topic_id, source_ids, resolver
    ):
        """Should not start a batch while the topic's index lock is held."""
        self.seed_backlog(db, topic_id, source_ids, count=20)
        lock = asyncio.Lock()
        await lock.acquire()

        task = asyncio.create_task(
            duplicate_service.run_cleanup_scan(
                session_factory, topic_id, resolver, index_lock=lock
            )
        )
        await asyncio.sleep(0.05)
        db.expire_all()
        assert db.query(DuplicateRecord).count() == 0

        lock.release()
        report = await task
        assert report.total_duplicates == 1


class TestReview:
    """Tests for override and merge."""

    def test_override_returns_item_to_pipeline(self, db, flagged):
        """Should return an overridden item to awaiting_simplify."""
        item = duplicate_service.override_duplicate(db, flagged.id)

        assert item.status == ItemStatus.AWAITING_SIMPLIFY.value
        assert item.verdict_overridden is True
        db.refresh(flagged)
        assert flagged.status == "overridden"
        assert flagged.reviewed_at is not None

    def test_record_can_only_be_reviewed_once(self, db, flagged):
        """Should reject a second review of the same record."""
        duplicate_service.override_duplicate(db, flagged.id)

        with pytest.raises(DuplicateServiceError):
            duplicate_service.merge_duplicate(db, flagged.id)

    def test_merge_credits_source_on_original(self, db, source_ids, flagged):
        """Should record the duplicate's source on the original when merging."""
        original = duplicate_service.merge_duplicate(db, flagged.id)

        assert original.merged_source_list == [source_ids[1]]
        db.refresh(flagged)
        assert flagged.status == "merged"
        assert db.get(CandidateItemRecord, flagged.item_id).status == "duplicate"

    def test_missing_record(self, db):
        """Should raise DuplicateRecordNotFoundError for unknown records."""
        with pytest.raises(DuplicateRecordNotFoundError):
            duplicate_service.override_duplicate(db, 77)

    def test_pending_list(self, db, topic_id, flagged):
        """Should list pending records for the topic."""
        pending = duplicate_service.list_pending_duplicates(db, topic_id)
        assert [r.id for r in pending] == [flagged.id]

        duplicate_service.merge_duplicate(db, flagged.id)
        assert duplicate_service.list_pending_duplicates(db, topic_id) == []
