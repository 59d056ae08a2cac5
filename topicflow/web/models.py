"""SQLAlchemy ORM models for topicflow.

Topics own sources and candidate items; stories are promoted items.
Counters on ``Source`` are written only by the source health service.
"""

import json

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    Boolean,
    DateTime,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship, declarative_base

from topicflow.utils.models import utcnow

Base = declarative_base()


def _load_list(value):
    return json.loads(value) if value else []


class Topic(Base):
    """Topic model - a configured content feed with its own automation settings."""

    __tablename__ = "topics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    automation_mode = Column(String, nullable=False, server_default="manual")
    holiday = Column(Boolean, nullable=False, default=False)
    quality_threshold = Column(Integer, nullable=False, default=60)
    scrape_frequency_hours = Column(Integer, nullable=False, default=12)
    negative_keywords = Column(Text, nullable=True)  # JSON array string
    competing_regions = Column(Text, nullable=True)  # JSON array string
    is_archived = Column(Boolean, nullable=False, default=False)
    last_gathered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "automation_mode IN ('manual', 'auto_gather', 'auto_simplify', 'auto_illustrate')",
            name="check_topic_automation_mode",
        ),
        CheckConstraint(
            "quality_threshold BETWEEN 0 AND 100", name="check_topic_quality_threshold"
        ),
        Index("idx_topics_archived", "is_archived"),
    )

    # Relationships
    sources = relationship("Source", back_populates="topic")
    items = relationship("CandidateItemRecord", back_populates="topic")

    @property
    def negative_keyword_list(self):
        return _load_list(self.negative_keywords)

    @property
    def competing_region_list(self):
        return _load_list(self.competing_regions)

    def __repr__(self):
        return f"<Topic(id={self.id}, name='{self.name}', automation_mode='{self.automation_mode}')>"


class Source(Base):
    """Source model - one external content origin feeding a topic."""

    __tablename__ = "sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    name = Column(String, nullable=False)
    feed_url = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    avg_response_time_ms = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("topic_id", "name", name="uq_source_topic_name"),
        Index("idx_sources_topic", "topic_id"),
    )

    # Relationships
    topic = relationship("Topic", back_populates="sources")
    attempts = relationship(
        "SourceAttempt", back_populates="source", cascade="all, delete-orphan"
    )

    @property
    def success_rate(self) -> float:
        """Percentage of successful attempts; 100 for a source never attempted."""
        total = (self.success_count or 0) + (self.failure_count or 0)
        if total == 0:
            return 100.0
        return (self.success_count or 0) * 100.0 / total

    def __repr__(self):
        return f"<Source(id={self.id}, topic_id={self.topic_id}, name='{self.name}')>"


class SourceAttempt(Base):
    """Append-only record of one fetch attempt against a source."""

    __tablename__ = "source_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(
        Integer, ForeignKey("sources.id", ondelete="CASCADE"), nullable=False
    )
    attempted_at = Column(DateTime, nullable=False, default=utcnow)
    outcome = Column(String, nullable=False)
    error = Column(Text, nullable=True)
    articles_found = Column(Integer, nullable=False, default=0)
    response_time_ms = Column(Integer, nullable=True)
    triggered_by = Column(String, nullable=False, server_default="poll")

    __table_args__ = (
        CheckConstraint(
            "outcome IN ('success', 'failure')", name="check_attempt_outcome"
        ),
        Index("idx_attempts_source_time", "source_id", "attempted_at"),
    )

    source = relationship("Source", back_populates="attempts")

    def __repr__(self):
        return f"<SourceAttempt(id={self.id}, source_id={self.source_id}, outcome='{self.outcome}')>"


class CandidateItemRecord(Base):
    """Candidate item - ingested content moving through the pipeline.

    Only the fingerprint and hashed shingles are kept; article text lives
    with the ingestion collaborator.
    """

    __tablename__ = "candidate_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=False)
    fetched_at = Column(DateTime, nullable=False)
    title = Column(Text, nullable=False, default="")
    url = Column(Text, nullable=True)
    author = Column(String, nullable=True)
    fingerprint = Column(String, nullable=False)
    shingles = Column(Text, nullable=True)  # JSON array string of shingle hashes
    status = Column(String, nullable=False, server_default="new")
    confidence = Column(Integer, nullable=True)
    verdict = Column(String, nullable=True)
    held_for_review = Column(Boolean, nullable=False, default=False)
    hold_reason = Column(String, nullable=True)
    verdict_overridden = Column(Boolean, nullable=False, default=False)
    merged_source_ids = Column(Text, nullable=True)  # JSON array string
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('new', 'filtered', 'duplicate', 'awaiting_simplify', "
            "'awaiting_illustrate', 'ready')",
            name="check_item_status",
        ),
        Index("idx_items_topic_status", "topic_id", "status"),
        Index("idx_items_topic_fetched", "topic_id", "fetched_at"),
        Index("idx_items_fingerprint", "topic_id", "fingerprint"),
    )

    topic = relationship("Topic", back_populates="items")
    source = relationship("Source")
    story = relationship("Story", back_populates="item", uselist=False)

    @property
    def shingle_set(self):
        return frozenset(_load_list(self.shingles))

    @property
    def merged_source_list(self):
        return _load_list(self.merged_source_ids)

    def __repr__(self):
        return f"<CandidateItemRecord(id={self.id}, topic_id={self.topic_id}, status='{self.status}')>"


class DuplicateRecord(Base):
    """Audit entry for a duplicate verdict; editors can override or merge."""

    __tablename__ = "duplicate_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("candidate_items.id"), nullable=False)
    matched_item_id = Column(Integer, ForeignKey("candidate_items.id"), nullable=True)
    similarity = Column(Float, nullable=False)
    confidence = Column(Integer, nullable=False)
    detection_method = Column(String, nullable=False)
    status = Column(String, nullable=False, server_default="pending")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    reviewed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'overridden', 'merged')",
            name="check_duplicate_status",
        ),
        Index("idx_duplicates_topic_status", "topic_id", "status"),
        Index("idx_duplicates_item", "item_id"),
    )

    item = relationship("CandidateItemRecord", foreign_keys=[item_id])
    matched_item = relationship("CandidateItemRecord", foreign_keys=[matched_item_id])

    def __repr__(self):
        return f"<DuplicateRecord(id={self.id}, item_id={self.item_id}, status='{self.status}')>"


class Story(Base):
    """Story model - the publishable multi-slide unit promoted from an item."""

    __tablename__ = "stories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(
        Integer, ForeignKey("candidate_items.id"), nullable=False, unique=True
    )
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False)
    originality_confidence = Column(Integer, nullable=True)
    author = Column(String, nullable=True)
    status = Column(String, nullable=False, server_default="draft")
    is_illustrated = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'ready', 'published')", name="check_story_status"
        ),
        Index("idx_stories_topic_status", "topic_id", "status"),
    )

    item = relationship("CandidateItemRecord", back_populates="story")
    slides = relationship(
        "Slide",
        back_populates="story",
        cascade="all, delete-orphan",
        order_by="Slide.slide_number",
    )

    def __repr__(self):
        return f"<Story(id={self.id}, item_id={self.item_id}, status='{self.status}')>"


class Slide(Base):
    """One slide of a story, ordered by slide_number."""

    __tablename__ = "slides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    story_id = Column(
        Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False
    )
    slide_number = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("story_id", "slide_number", name="uq_slide_story_number"),
    )

    story = relationship("Story", back_populates="slides")

    def __repr__(self):
        return f"<Slide(id={self.id}, story_id={self.story_id}, slide_number={self.slide_number})>"
