"""
Base models and data structures
"""
from datetime import datetime, timezone
from enum import Enum
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class Verdict(str, Enum):
    ORIGINAL = "original"
    LIKELY_ORIGINAL = "likely_original"
    DUPLICATE = "duplicate"


class AutomationMode(str, Enum):
    """Base automation modes, in increasing order of autonomy."""
    MANUAL = "manual"
    AUTO_GATHER = "auto_gather"
    AUTO_SIMPLIFY = "auto_simplify"
    AUTO_ILLUSTRATE = "auto_illustrate"


# Label accepted wherever a mode is set; holiday is a flag, not a base mode
HOLIDAY = "holiday"


class CommandKind(str, Enum):
    SET_MODE = "set_mode"
    ENTER_HOLIDAY = "enter_holiday"
    EXIT_HOLIDAY = "exit_holiday"


class Stage(str, Enum):
    GATHER = "gather"
    SIMPLIFY = "simplify"
    ILLUSTRATE = "illustrate"


class ItemStatus(str, Enum):
    NEW = "new"
    FILTERED = "filtered"
    DUPLICATE = "duplicate"
    AWAITING_SIMPLIFY = "awaiting_simplify"
    AWAITING_ILLUSTRATE = "awaiting_illustrate"
    READY = "ready"


class HoldReason(str, Enum):
    QUALITY_GATE = "quality_gate"
    GENERATION_FAILED = "generation_failed"


class DuplicateStatus(str, Enum):
    PENDING = "pending"
    OVERRIDDEN = "overridden"
    MERGED = "merged"


class StoryStatus(str, Enum):
    DRAFT = "draft"
    READY = "ready"
    PUBLISHED = "published"


class FetchedContent(BaseModel):
    """Raw content handed over by an ingestion collaborator"""
    title: str = ""
    content: str
    url: Optional[str] = None
    author: Optional[str] = None
    published_at: Optional[datetime] = None


class SourceRef(BaseModel):
    """Detached view of a source handed to ingestion collaborators"""
    id: int
    topic_id: int
    name: str
    feed_url: Optional[str] = None


class FetchResult(BaseModel):
    """Typed outcome of one poll of one source"""
    outcome: AttemptOutcome
    items: List[FetchedContent] = Field(default_factory=list)
    error: Optional[str] = None
    response_time_ms: Optional[int] = None


class CandidateItem(BaseModel):
    """Ingested content awaiting a duplicate/publication decision"""
    model_config = ConfigDict(frozen=True)

    topic_id: int
    source_id: int
    fetched_at: datetime
    fingerprint: str
    shingles: FrozenSet[int] = Field(default_factory=frozenset)
    id: Optional[int] = None
    title: str = ""


class Resolution(BaseModel):
    """Outcome of resolving one candidate against the recent-content index"""
    model_config = ConfigDict(frozen=True)

    confidence: int = Field(ge=0, le=100)
    verdict: Verdict
    similarity: float = 0.0
    matched_item_id: Optional[int] = None
    detection_method: Optional[str] = None


class HealthSnapshot(BaseModel):
    """Point-in-time health of one source"""
    source_id: int
    topic_id: int
    name: str
    success_count: int
    failure_count: int
    consecutive_failures: int
    success_rate: float
    is_active: bool
    is_eligible: bool
    is_suspended: bool
    last_7_days_volume: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    persistence_degraded: bool = False


class TopicHealth(BaseModel):
    """Aggregate source health for one topic"""
    topic_id: int
    total_sources: int
    eligible_sources: int
    ratio: float
    status: HealthStatus
    persistence_degraded: bool = False


class PipelineStats(BaseModel):
    """Per-topic projection of item counts; never authoritative"""
    topic_id: int
    pending_articles: int = 0
    processing_queue: int = 0
    ready_stories: int = 0
    held_for_review: int = 0
    duplicates: int = 0
    ingestion_paused: bool = False


class AutomationState(BaseModel):
    """Stored automation mode plus the orthogonal holiday flag"""
    model_config = ConfigDict(frozen=True)

    mode: AutomationMode = AutomationMode.MANUAL
    holiday: bool = False

    @property
    def effective_mode(self) -> str:
        return HOLIDAY if self.holiday else self.mode.value


class ModeCommand(BaseModel):
    """Editor command applied to a topic's automation state"""
    model_config = ConfigDict(frozen=True)

    kind: CommandKind
    mode: Optional[AutomationMode] = None

    @classmethod
    def parse(cls, label: str) -> "ModeCommand":
        """Build a command from a mode label such as 'auto_gather' or 'holiday'."""
        if label == HOLIDAY:
            return cls(kind=CommandKind.ENTER_HOLIDAY)
        return cls(kind=CommandKind.SET_MODE, mode=AutomationMode(label))


class ItemDecision(BaseModel):
    """Stages an item may run unattended, and whether it is held for review"""
    model_config = ConfigDict(frozen=True)

    permitted: FrozenSet[Stage]
    held: bool = False
    hold_reason: Optional[HoldReason] = None


class ItemRef(BaseModel):
    """Detached view of a candidate item handed to the generation collaborator"""
    id: int
    topic_id: int
    source_id: int
    title: str = ""
    url: Optional[str] = None
    author: Optional[str] = None
    confidence: Optional[int] = None


class StoryRef(BaseModel):
    """Detached view of a story handed to the generation collaborator"""
    id: int
    item_id: int
    topic_id: int
    slides: List[str] = Field(default_factory=list)


class GenerationResult(BaseModel):
    """Outcome reported by a content-generation collaborator"""
    success: bool
    slides: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class BatchReport(BaseModel):
    batch_number: int
    processed: int
    duplicates_found: int


class ScanReport(BaseModel):
    topic_id: int
    batches: List[BatchReport] = Field(default_factory=list)
    cancelled: bool = False

    @computed_field
    @property
    def total_processed(self) -> int:
        return sum(b.processed for b in self.batches)

    @computed_field
    @property
    def total_duplicates(self) -> int:
        return sum(b.duplicates_found for b in self.batches)


class ForceTestResult(BaseModel):
    source_id: int
    success: bool
    reason: Optional[str] = None
    snapshot: Optional[HealthSnapshot] = None


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetime to naive UTC for comparison"""
    if dt is None:
        return dt
    if dt.tzinfo is not None and dt.tzinfo.utcoffset(dt) is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
