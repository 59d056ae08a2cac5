"""
Duplicate service for topicflow.

Persists DuplicateResolver verdicts, keeps an audit record for every
duplicate, and runs the batched cleanup scan over a topic's backlog.
Duplicates are never deleted; editors can override or merge them.
"""

import asyncio
import json
import logging
from datetime import timedelta
from typing import Callable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from topicflow.processors.duplicate_resolver import DuplicateResolver, RecentContentIndex
from topicflow.utils.models import (
    BatchReport,
    CandidateItem,
    DuplicateStatus,
    ItemStatus,
    Resolution,
    ScanReport,
    Verdict,
    utcnow,
)
from topicflow.web.models import CandidateItemRecord, DuplicateRecord

logger = logging.getLogger(__name__)

# Items that passed dedup and act as comparison bases
ACCEPTED_STATUSES = (
    ItemStatus.AWAITING_SIMPLIFY.value,
    ItemStatus.AWAITING_ILLUSTRATE.value,
    ItemStatus.READY.value,
)


# Custom Exceptions
class DuplicateServiceError(Exception):
    """Base exception for duplicate service errors."""

    pass


class DuplicateRecordNotFoundError(DuplicateServiceError):
    """Raised when a duplicate record doesn't exist."""

    pass


class ScanAlreadyRunningError(DuplicateServiceError):
    """Raised when a cleanup scan is requested while one is running for the topic."""

    pass


def to_candidate(record: CandidateItemRecord) -> CandidateItem:
    return CandidateItem(
        id=record.id,
        topic_id=record.topic_id,
        source_id=record.source_id,
        fetched_at=record.fetched_at,
        fingerprint=record.fingerprint,
        shingles=record.shingle_set,
        title=record.title or "",
    )


def load_recent_index(db: Session, topic_id: int, resolver: DuplicateResolver, now=None) -> RecentContentIndex:
    """
    Rebuild a topic's recent-content index from accepted items.

    Args:
        db: Database session
        topic_id: Topic ID
        resolver: Resolver supplying window settings
        now: Reference time (defaults to utcnow)

    Returns:
        Index holding the most recent accepted items inside the window
    """
    cutoff = (now or utcnow()) - timedelta(days=resolver.window_days)
    records = (
        db.query(CandidateItemRecord)
        .filter(
            CandidateItemRecord.topic_id == topic_id,
            CandidateItemRecord.status.in_(ACCEPTED_STATUSES),
            CandidateItemRecord.fetched_at >= cutoff,
        )
        .order_by(CandidateItemRecord.fetched_at.desc(), CandidateItemRecord.id.desc())
        .limit(resolver.max_window_items)
        .all()
    )
    index = resolver.new_index()
    for record in reversed(records):
        index.add(to_candidate(record))
    logger.debug(f"Loaded {len(index)} items into recent index for topic {topic_id}")
    return index


def _record_duplicate(db: Session, record: CandidateItemRecord, resolution: Resolution) -> DuplicateRecord:
    record.status = ItemStatus.DUPLICATE.value
    record.held_for_review = False
    record.hold_reason = None
    audit = DuplicateRecord(
        topic_id=record.topic_id,
        item_id=record.id,
        matched_item_id=resolution.matched_item_id,
        similarity=resolution.similarity,
        confidence=resolution.confidence,
        detection_method=resolution.detection_method or "unknown",
        status=DuplicateStatus.PENDING.value,
    )
    db.add(audit)
    return audit


def resolve_item(db: Session, record: CandidateItemRecord, resolver: DuplicateResolver, index: RecentContentIndex) -> Resolution:
    """
    Resolve a new item against the topic index and persist the verdict.

    A duplicate gets an audit record and leaves the promotable set; anything
    else moves on to ``awaiting_simplify`` and joins the index.

    Returns:
        The resolution
    """
    resolution = resolver.resolve_and_index(to_candidate(record), index)
    record.confidence = resolution.confidence
    record.verdict = resolution.verdict.value

    if resolution.verdict == Verdict.DUPLICATE:
        _record_duplicate(db, record, resolution)
        logger.debug(
            f"Item {record.id} is a duplicate of item {resolution.matched_item_id} "
            f"(confidence {resolution.confidence})"
        )
    else:
        record.status = ItemStatus.AWAITING_SIMPLIFY.value

    db.commit()
    return resolution


def scan_backlog(db: Session, topic_id: int) -> Tuple[List[CandidateItem], Set[int]]:
    """
    Items a cleanup scan replays, plus the ids it must not re-judge.

    Ready items and items whose verdict an editor overrode are comparison
    bases only. Existing duplicates are left out entirely.
    """
    records = (
        db.query(CandidateItemRecord)
        .filter(
            CandidateItemRecord.topic_id == topic_id,
            CandidateItemRecord.status.in_(ACCEPTED_STATUSES),
        )
        .all()
    )
    protected = {
        r.id
        for r in records
        if r.status == ItemStatus.READY.value or r.verdict_overridden
    }
    return [to_candidate(r) for r in records], protected


async def run_cleanup_scan(
    session_factory: Callable[[], Session],
    topic_id: int,
    resolver: DuplicateResolver,
    batch_size: Optional[int] = None,
    should_cancel: Optional[Callable[[], bool]] = None,
    on_batch: Optional[Callable[[List[int]], None]] = None,
    index_lock: Optional[asyncio.Lock] = None,
) -> ScanReport:
    """
    Re-resolve a topic's backlog in bounded batches.

    Each batch is committed before the next one starts, so cancelling keeps
    every finished batch. Items whose verdict is unchanged are not touched.

    Args:
        session_factory: Callable returning a new Session
        topic_id: Topic ID
        resolver: Duplicate resolver
        batch_size: Items per batch (resolver default when None)
        should_cancel: Polled between batches
        on_batch: Called with the ids flagged in each committed batch
        index_lock: Held while a batch is written, shared with live resolution

    Returns:
        ScanReport with per-batch counts
    """
    db = session_factory()
    try:
        items, protected = scan_backlog(db, topic_id)
        db.commit()
    finally:
        db.close()

    index_lock = index_lock or asyncio.Lock()
    report = ScanReport(topic_id=topic_id)
    logger.info(
        f"Starting duplicate scan for topic {topic_id}: {len(items)} items, "
        f"{len(protected)} protected"
    )

    async for batch_number, processed, results in resolver.scan(
        items, batch_size=batch_size, protected_ids=protected, should_cancel=should_cancel
    ):
        flagged = []
        async with index_lock:
            db = session_factory()
            try:
                for item, resolution in results:
                    record = db.get(CandidateItemRecord, item.id)
                    # State may have moved on since the backlog was loaded
                    if record is None or record.status not in ACCEPTED_STATUSES:
                        continue
                    if record.status == ItemStatus.READY.value or record.verdict_overridden:
                        continue
                    record.confidence = resolution.confidence
                    record.verdict = resolution.verdict.value
                    if resolution.verdict == Verdict.DUPLICATE:
                        _record_duplicate(db, record, resolution)
                        flagged.append(record.id)
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
            if on_batch and flagged:
                on_batch(flagged)

        report.batches.append(
            BatchReport(
                batch_number=batch_number,
                processed=processed,
                duplicates_found=len(flagged),
            )
        )
        logger.info(
            f"Scan batch {batch_number} for topic {topic_id}: "
            f"{processed} processed, {len(flagged)} duplicates"
        )

    expected_batches = 0
    if items:
        size = batch_size or resolver.batch_size
        expected_batches = (len(items) + size - 1) // size
    report.cancelled = len(report.batches) < expected_batches

    logger.info(
        f"Duplicate scan for topic {topic_id} "
        f"{'cancelled' if report.cancelled else 'finished'}: "
        f"{report.total_processed} processed, {report.total_duplicates} duplicates"
    )
    return report


def get_duplicate_record(db: Session, record_id: int) -> DuplicateRecord:
    """
    Get duplicate record by ID.

    Raises:
        DuplicateRecordNotFoundError: If record doesn't exist
    """
    record = db.query(DuplicateRecord).filter(DuplicateRecord.id == record_id).first()
    if not record:
        raise DuplicateRecordNotFoundError(f"Duplicate record with ID {record_id} not found")
    return record


def list_pending_duplicates(db: Session, topic_id: int) -> List[DuplicateRecord]:
    return (
        db.query(DuplicateRecord)
        .filter(
            DuplicateRecord.topic_id == topic_id,
            DuplicateRecord.status == DuplicateStatus.PENDING.value,
        )
        .order_by(DuplicateRecord.created_at, DuplicateRecord.id)
        .all()
    )


def _require_pending(record: DuplicateRecord) -> None:
    if record.status != DuplicateStatus.PENDING.value:
        raise DuplicateServiceError(
            f"Duplicate record {record.id} was already {record.status}"
        )


def override_duplicate(db: Session, record_id: int) -> CandidateItemRecord:
    """
    Reverse a duplicate verdict.

    The item returns to ``awaiting_simplify`` and is marked so later scans
    never flag it again. Unattended advancement still goes through the
    quality gate.

    Raises:
        DuplicateRecordNotFoundError: If record doesn't exist
        DuplicateServiceError: If the record was already reviewed
    """
    record = get_duplicate_record(db, record_id)
    _require_pending(record)

    item = record.item
    item.status = ItemStatus.AWAITING_SIMPLIFY.value
    item.verdict_overridden = True
    record.status = DuplicateStatus.OVERRIDDEN.value
    record.reviewed_at = utcnow()
    db.commit()
    db.refresh(item)

    logger.info(f"Duplicate verdict for item {item.id} overridden by operator")
    return item


def merge_duplicate(db: Session, record_id: int) -> CandidateItemRecord:
    """
    Confirm a duplicate and credit its source on the original item.

    Returns:
        The original item

    Raises:
        DuplicateRecordNotFoundError: If record doesn't exist
        DuplicateServiceError: If already reviewed or there is no original
    """
    record = get_duplicate_record(db, record_id)
    _require_pending(record)
    if record.matched_item is None:
        raise DuplicateServiceError(f"Duplicate record {record_id} has no original to merge into")

    original = record.matched_item
    merged = original.merged_source_list
    if record.item.source_id not in merged and record.item.source_id != original.source_id:
        merged.append(record.item.source_id)
    original.merged_source_ids = json.dumps(merged)

    record.status = DuplicateStatus.MERGED.value
    record.reviewed_at = utcnow()
    db.commit()
    db.refresh(original)

    logger.info(f"Merged duplicate item {record.item_id} into item {original.id}")
    return original
