"""
Pipeline service for topicflow.

Moves candidate items through their lifecycle and promotes them to stories:

    new -> duplicate | awaiting_simplify -> awaiting_illustrate -> ready

plus ``filtered`` for items dropped by a negative keyword. Held items carry
``held_for_review`` and a reason and are only advanced by an editor.
"""

import json
import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from topicflow.processors.content_fingerprint import build_candidate, contains_keyword
from topicflow.utils.constants import DedupConstants
from topicflow.utils.models import (
    FetchedContent,
    GenerationResult,
    HoldReason,
    ItemRef,
    ItemStatus,
    PipelineStats,
    Stage,
    StoryRef,
    StoryStatus,
    utcnow,
)
from topicflow.web.models import CandidateItemRecord, Slide, Story, Topic

logger = logging.getLogger(__name__)


# Custom Exceptions
class PipelineServiceError(Exception):
    """Base exception for pipeline service errors."""

    pass


class ItemNotFoundError(PipelineServiceError):
    """Raised when an item or story doesn't exist."""

    pass


class InvalidItemStateError(PipelineServiceError):
    """Raised when an item or story is not in a state the action accepts."""

    pass


class StoryPublishedError(PipelineServiceError):
    """Raised when changing the slides of a published story."""

    pass


def ingest_candidates(
    db: Session,
    topic: Topic,
    source_id: int,
    items: Iterable[FetchedContent],
    fetched_at: Optional[datetime] = None,
    shingle_size: int = DedupConstants.SHINGLE_SIZE,
) -> Tuple[List[CandidateItemRecord], int]:
    """
    Store fetched content as candidate items.

    Items mentioning one of the topic's negative keywords are kept with
    status ``filtered`` and never reach dedup.

    Args:
        db: Database session
        topic: Topic the source feeds
        source_id: Source ID
        items: Content returned by the ingestion collaborator
        fetched_at: Fetch timestamp (defaults to now)
        shingle_size: Words per shingle

    Returns:
        Tuple of (new items awaiting dedup, number filtered)
    """
    fetched_at = fetched_at or utcnow()
    negative_keywords = topic.negative_keyword_list
    created = []
    filtered = 0

    for content in items:
        candidate = build_candidate(
            topic_id=topic.id,
            source_id=source_id,
            fetched_at=fetched_at,
            content=content.content,
            title=content.title,
            shingle_size=shingle_size,
        )
        record = CandidateItemRecord(
            topic_id=topic.id,
            source_id=source_id,
            fetched_at=fetched_at,
            title=content.title,
            url=content.url,
            author=content.author,
            fingerprint=candidate.fingerprint,
            shingles=json.dumps(sorted(candidate.shingles)),
            status=ItemStatus.NEW.value,
        )

        keyword = contains_keyword(f"{content.title} {content.content}", negative_keywords)
        if keyword:
            record.status = ItemStatus.FILTERED.value
            filtered += 1
            logger.debug(f"Filtered item '{content.title}' on keyword '{keyword}'")
        else:
            created.append(record)
        db.add(record)

    db.commit()
    return created, filtered


def get_item(db: Session, item_id: int) -> CandidateItemRecord:
    """
    Get candidate item by ID.

    Raises:
        ItemNotFoundError: If item doesn't exist
    """
    item = db.query(CandidateItemRecord).filter(CandidateItemRecord.id == item_id).first()
    if not item:
        raise ItemNotFoundError(f"Item with ID {item_id} not found")
    return item


def get_story(db: Session, story_id: int) -> Story:
    """
    Get story by ID.

    Raises:
        ItemNotFoundError: If story doesn't exist
    """
    story = db.query(Story).filter(Story.id == story_id).first()
    if not story:
        raise ItemNotFoundError(f"Story with ID {story_id} not found")
    return story


def item_ref(item: CandidateItemRecord) -> ItemRef:
    return ItemRef(
        id=item.id,
        topic_id=item.topic_id,
        source_id=item.source_id,
        title=item.title or "",
        url=item.url,
        author=item.author,
        confidence=item.confidence,
    )


def story_ref(story: Story) -> StoryRef:
    return StoryRef(
        id=story.id,
        item_id=story.item_id,
        topic_id=story.topic_id,
        slides=[s.content for s in story.slides],
    )


def new_items(db: Session, topic_id: int) -> List[CandidateItemRecord]:
    """Items awaiting dedup, in fetch order."""
    return (
        db.query(CandidateItemRecord)
        .filter(
            CandidateItemRecord.topic_id == topic_id,
            CandidateItemRecord.status == ItemStatus.NEW.value,
        )
        .order_by(CandidateItemRecord.fetched_at, CandidateItemRecord.id)
        .all()
    )


def advanceable_items(db: Session, topic_id: int) -> List[CandidateItemRecord]:
    """Mid-pipeline items that are not held, in fetch order."""
    return (
        db.query(CandidateItemRecord)
        .filter(
            CandidateItemRecord.topic_id == topic_id,
            CandidateItemRecord.status.in_(
                [ItemStatus.AWAITING_SIMPLIFY.value, ItemStatus.AWAITING_ILLUSTRATE.value]
            ),
            CandidateItemRecord.held_for_review.is_(False),
        )
        .order_by(CandidateItemRecord.fetched_at, CandidateItemRecord.id)
        .all()
    )


def next_stage_for(item: CandidateItemRecord) -> Stage:
    """
    Stage an item needs next.

    Raises:
        InvalidItemStateError: If the item is not mid-pipeline
    """
    if item.status == ItemStatus.AWAITING_SIMPLIFY.value:
        return Stage.SIMPLIFY
    if item.status == ItemStatus.AWAITING_ILLUSTRATE.value:
        return Stage.ILLUSTRATE
    raise InvalidItemStateError(f"Item {item.id} is '{item.status}' and cannot be advanced")


def hold_item(db: Session, item_id: int, reason: HoldReason) -> CandidateItemRecord:
    """Flag an item for manual review. Held items are never discarded."""
    item = get_item(db, item_id)
    already_held = item.held_for_review and item.hold_reason == reason.value
    item.held_for_review = True
    item.hold_reason = reason.value
    db.commit()

    if not already_held:
        if reason == HoldReason.QUALITY_GATE:
            logger.info(
                f"Holding item {item_id} for review: confidence {item.confidence} below threshold"
            )
        else:
            logger.warning(f"Holding item {item_id} for review: generation failed")
    return item


def _write_slides(db: Session, story: Story, slides: List[str]) -> None:
    if story.status == StoryStatus.PUBLISHED.value:
        raise StoryPublishedError(f"Story {story.id} is published and cannot be changed")
    for slide in list(story.slides):
        db.delete(slide)
    db.flush()
    for number, content in enumerate(slides, start=1):
        db.add(Slide(story_id=story.id, slide_number=number, content=content))


def apply_simplify_result(db: Session, item_id: int, result: GenerationResult) -> Optional[Story]:
    """
    Record the outcome of simplifying an item.

    Success creates (or rewrites) the item's draft story and moves the item
    to ``awaiting_illustrate``. Failure, including an empty slide list,
    holds the item for review.

    Returns:
        The story, or None when the item was held

    Raises:
        ItemNotFoundError: If item doesn't exist
        InvalidItemStateError: If item is not awaiting simplification
        StoryPublishedError: If the item's story is already published
    """
    item = get_item(db, item_id)
    if item.status != ItemStatus.AWAITING_SIMPLIFY.value:
        raise InvalidItemStateError(f"Item {item_id} is '{item.status}', not awaiting simplification")

    if not result.success or not result.slides:
        logger.warning(f"Simplify failed for item {item_id}: {result.error or 'no slides'}")
        hold_item(db, item_id, HoldReason.GENERATION_FAILED)
        return None

    story = item.story
    if story is None:
        story = Story(
            item_id=item.id,
            topic_id=item.topic_id,
            originality_confidence=item.confidence,
            author=item.author,
            status=StoryStatus.DRAFT.value,
        )
        db.add(story)
        db.flush()
    _write_slides(db, story, result.slides)
    story.originality_confidence = item.confidence
    story.status = StoryStatus.DRAFT.value
    story.is_illustrated = False

    item.status = ItemStatus.AWAITING_ILLUSTRATE.value
    item.held_for_review = False
    item.hold_reason = None
    db.commit()
    db.refresh(story)

    logger.info(f"Item {item_id} simplified into story {story.id} ({len(result.slides)} slides)")
    return story


def apply_illustrate_result(db: Session, item_id: int, result: GenerationResult) -> Optional[Story]:
    """
    Record the outcome of illustrating an item's story.

    Success marks the story illustrated and ready and the item ``ready``.

    Returns:
        The story, or None when the item was held

    Raises:
        ItemNotFoundError: If item doesn't exist
        InvalidItemStateError: If item is not awaiting illustration
    """
    item = get_item(db, item_id)
    if item.status != ItemStatus.AWAITING_ILLUSTRATE.value or item.story is None:
        raise InvalidItemStateError(f"Item {item_id} is '{item.status}', not awaiting illustration")

    if not result.success:
        logger.warning(f"Illustrate failed for item {item_id}: {result.error or 'unknown'}")
        hold_item(db, item_id, HoldReason.GENERATION_FAILED)
        return None

    story = item.story
    if result.slides:
        _write_slides(db, story, result.slides)
    story.is_illustrated = True
    story.status = StoryStatus.READY.value
    item.status = ItemStatus.READY.value
    item.held_for_review = False
    item.hold_reason = None
    db.commit()
    db.refresh(story)

    logger.info(f"Story {story.id} illustrated and ready")
    return story


def publish_story(db: Session, story_id: int) -> Story:
    """
    Publish a ready story. Published stories are immutable.

    Raises:
        ItemNotFoundError: If story doesn't exist
        StoryPublishedError: If story is already published
        InvalidItemStateError: If story is still a draft
    """
    story = get_story(db, story_id)
    if story.status == StoryStatus.PUBLISHED.value:
        raise StoryPublishedError(f"Story {story_id} is already published")
    if story.status != StoryStatus.READY.value:
        raise InvalidItemStateError(f"Story {story_id} is '{story.status}', not ready")

    story.status = StoryStatus.PUBLISHED.value
    story.published_at = utcnow()
    db.commit()
    db.refresh(story)

    logger.info(f"Published story {story_id}")
    return story


def pipeline_stats(db: Session, topic_id: int, ingestion_paused: bool = False) -> PipelineStats:
    """
    Project a topic's item counts into dashboard stats.

    pending = new + awaiting_simplify, processing = awaiting_illustrate,
    ready = ready.
    """
    rows = (
        db.query(CandidateItemRecord.status, func.count(CandidateItemRecord.id))
        .filter(CandidateItemRecord.topic_id == topic_id)
        .group_by(CandidateItemRecord.status)
        .all()
    )
    counts = {status: count for status, count in rows}
    held = (
        db.query(func.count(CandidateItemRecord.id))
        .filter(
            CandidateItemRecord.topic_id == topic_id,
            CandidateItemRecord.held_for_review.is_(True),
        )
        .scalar()
    )
    return PipelineStats(
        topic_id=topic_id,
        pending_articles=counts.get(ItemStatus.NEW.value, 0)
        + counts.get(ItemStatus.AWAITING_SIMPLIFY.value, 0),
        processing_queue=counts.get(ItemStatus.AWAITING_ILLUSTRATE.value, 0),
        ready_stories=counts.get(ItemStatus.READY.value, 0),
        held_for_review=held or 0,
        duplicates=counts.get(ItemStatus.DUPLICATE.value, 0),
        ingestion_paused=ingestion_paused,
    )


def processing_queue_depth(db: Session, topic_id: int) -> int:
    return (
        db.query(func.count(CandidateItemRecord.id))
        .filter(
            CandidateItemRecord.topic_id == topic_id,
            CandidateItemRecord.status == ItemStatus.AWAITING_ILLUSTRATE.value,
        )
        .scalar()
        or 0
    )
