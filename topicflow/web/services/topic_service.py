"""
Topic service for topicflow.

Creates topics and sources and applies editor commands to a topic's
automation settings. Topics are archived, never deleted.
"""

import json
import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from topicflow.processors.automation_engine import transition
from topicflow.utils.constants import AutomationConstants
from topicflow.utils.models import AutomationMode, AutomationState, ModeCommand
from topicflow.web.models import Source, Topic

logger = logging.getLogger(__name__)


# Custom Exceptions
class TopicServiceError(Exception):
    """Base exception for topic service errors."""

    pass


class TopicNotFoundError(TopicServiceError):
    """Raised when a topic doesn't exist."""

    pass


class TopicValidationError(TopicServiceError):
    """Raised when topic settings fail validation."""

    pass


class TopicArchivedError(TopicServiceError):
    """Raised when changing settings of an archived topic."""

    pass


def _clean_terms(terms: Optional[List[str]]) -> str:
    seen = []
    for term in terms or []:
        term = term.strip()
        if term and term.lower() not in {t.lower() for t in seen}:
            seen.append(term)
    return json.dumps(seen)


def _validate_threshold(quality_threshold: int) -> None:
    if not isinstance(quality_threshold, int) or not 0 <= quality_threshold <= 100:
        raise TopicValidationError("Quality threshold must be between 0 and 100")


def create_topic(
    db: Session,
    name: str,
    description: Optional[str] = None,
    automation_mode: str = AutomationMode.MANUAL.value,
    quality_threshold: int = AutomationConstants.DEFAULT_QUALITY_THRESHOLD,
    scrape_frequency_hours: int = AutomationConstants.DEFAULT_SCRAPE_FREQUENCY_HOURS,
    negative_keywords: Optional[List[str]] = None,
    competing_regions: Optional[List[str]] = None,
) -> Topic:
    """
    Create a topic.

    Args:
        db: Database session
        name: Unique topic name
        description: Optional description
        automation_mode: Initial mode label (base mode or 'holiday')
        quality_threshold: Minimum originality confidence (0-100)
        scrape_frequency_hours: Minimum hours between unattended gathers
        negative_keywords: Terms whose presence discards an item
        competing_regions: Region names tracked by editors

    Returns:
        Created Topic

    Raises:
        TopicValidationError: If name, mode or threshold are invalid
    """
    if not name or not name.strip():
        raise TopicValidationError("Topic name cannot be empty")
    _validate_threshold(quality_threshold)
    if scrape_frequency_hours < 1:
        raise TopicValidationError("Scrape frequency must be at least 1 hour")

    if db.query(Topic).filter(Topic.name == name.strip()).first():
        raise TopicValidationError(f"Topic '{name.strip()}' already exists")

    try:
        state = transition(AutomationState(), ModeCommand.parse(automation_mode))
    except ValueError:
        raise TopicValidationError(f"Unknown automation mode '{automation_mode}'")

    topic = Topic(
        name=name.strip(),
        description=description,
        automation_mode=state.mode.value,
        holiday=state.holiday,
        quality_threshold=quality_threshold,
        scrape_frequency_hours=scrape_frequency_hours,
        negative_keywords=_clean_terms(negative_keywords),
        competing_regions=_clean_terms(competing_regions),
    )
    db.add(topic)
    db.commit()
    db.refresh(topic)

    logger.info(f"Created topic {topic.id} '{topic.name}' in {state.effective_mode} mode")
    return topic


def get_topic(db: Session, topic_id: int) -> Topic:
    """
    Get topic by ID.

    Raises:
        TopicNotFoundError: If topic doesn't exist
    """
    topic = db.query(Topic).filter(Topic.id == topic_id).first()
    if not topic:
        raise TopicNotFoundError(f"Topic with ID {topic_id} not found")
    return topic


def get_active_topics(db: Session) -> List[Topic]:
    """All topics that are not archived, oldest first."""
    return (
        db.query(Topic)
        .filter(Topic.is_archived.is_(False))
        .order_by(Topic.id)
        .all()
    )


def get_automation_state(topic: Topic) -> AutomationState:
    return AutomationState(
        mode=AutomationMode(topic.automation_mode), holiday=bool(topic.holiday)
    )


def apply_mode_command(db: Session, topic_id: int, command: ModeCommand) -> AutomationState:
    """
    Apply an editor command to a topic's automation state.

    Args:
        db: Database session
        topic_id: Topic ID
        command: Mode command

    Returns:
        The topic's new automation state

    Raises:
        TopicNotFoundError: If topic doesn't exist
        TopicArchivedError: If topic is archived
    """
    topic = get_topic(db, topic_id)
    if topic.is_archived:
        raise TopicArchivedError(f"Topic {topic_id} is archived")

    previous = get_automation_state(topic)
    new_state = transition(previous, command)

    topic.automation_mode = new_state.mode.value
    topic.holiday = new_state.holiday
    db.commit()

    logger.info(
        f"Topic {topic_id} automation {previous.effective_mode} -> {new_state.effective_mode}"
    )
    return new_state


def set_automation_mode(db: Session, topic_id: int, mode_label: str) -> AutomationState:
    """
    Set a topic's mode from a label ('manual' ... 'auto_illustrate' or 'holiday').

    Raises:
        TopicValidationError: If label is not a known mode
    """
    try:
        command = ModeCommand.parse(mode_label)
    except ValueError:
        raise TopicValidationError(f"Unknown automation mode '{mode_label}'")
    return apply_mode_command(db, topic_id, command)


def set_quality_threshold(db: Session, topic_id: int, quality_threshold: int) -> Topic:
    """
    Update a topic's quality threshold.

    Raises:
        TopicValidationError: If threshold is outside 0-100
        TopicArchivedError: If topic is archived
    """
    _validate_threshold(quality_threshold)
    topic = get_topic(db, topic_id)
    if topic.is_archived:
        raise TopicArchivedError(f"Topic {topic_id} is archived")

    topic.quality_threshold = quality_threshold
    db.commit()
    db.refresh(topic)

    logger.info(f"Topic {topic_id} quality threshold set to {quality_threshold}")
    return topic


def archive_topic(db: Session, topic_id: int) -> Topic:
    """Archive a topic; its sources stop being polled and its content is kept."""
    topic = get_topic(db, topic_id)
    topic.is_archived = True
    db.commit()
    logger.info(f"Archived topic {topic_id}")
    return topic


def add_source(db: Session, topic_id: int, name: str, feed_url: Optional[str] = None) -> Source:
    """
    Attach a new source to a topic.

    Raises:
        TopicNotFoundError: If topic doesn't exist
        TopicValidationError: If name is empty or already used in the topic
    """
    topic = get_topic(db, topic_id)
    if not name or not name.strip():
        raise TopicValidationError("Source name cannot be empty")

    existing = (
        db.query(Source)
        .filter(Source.topic_id == topic.id, Source.name == name.strip())
        .first()
    )
    if existing:
        raise TopicValidationError(
            f"Source '{name.strip()}' already attached to topic {topic_id}"
        )

    source = Source(topic_id=topic.id, name=name.strip(), feed_url=feed_url)
    db.add(source)
    db.commit()
    db.refresh(source)

    logger.info(f"Attached source {source.id} '{source.name}' to topic {topic_id}")
    return source


def get_topic_sources(db: Session, topic_id: int) -> List[Source]:
    return (
        db.query(Source).filter(Source.topic_id == topic_id).order_by(Source.id).all()
    )


def seed_topics(db: Session, seeds, config=None) -> List[Topic]:
    """
    Create topics and sources from config seeds, skipping names that exist.

    Args:
        db: Database session
        seeds: Iterable of ``TopicSeed``
        config: Optional Config whose automation section supplies the
            threshold and scrape frequency a seed leaves unset

    Returns:
        Newly created topics
    """
    automation = getattr(config, "automation", None)
    default_threshold = getattr(
        automation, "default_quality_threshold", AutomationConstants.DEFAULT_QUALITY_THRESHOLD
    )
    default_frequency = getattr(
        automation, "default_scrape_frequency_hours", AutomationConstants.DEFAULT_SCRAPE_FREQUENCY_HOURS
    )

    created = []
    for seed in seeds:
        if db.query(Topic).filter(Topic.name == seed.name).first():
            logger.debug(f"Topic '{seed.name}' already exists, skipping seed")
            continue
        topic = create_topic(
            db,
            name=seed.name,
            description=seed.description,
            automation_mode=seed.automation_mode,
            quality_threshold=(
                default_threshold if seed.quality_threshold is None else seed.quality_threshold
            ),
            scrape_frequency_hours=seed.scrape_frequency_hours or default_frequency,
            negative_keywords=seed.negative_keywords,
            competing_regions=seed.competing_regions,
        )
        for source_seed in seed.sources:
            add_source(db, topic.id, source_seed.name, source_seed.feed_url)
        created.append(topic)
    return created
