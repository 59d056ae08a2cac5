"""
Pydantic schemas for the topicflow web API.

Request/response models for FastAPI endpoints with validation.
"""

from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from datetime import datetime

from topicflow.utils.models import HealthSnapshot, ItemRef, StoryRef, TopicHealth


# Topic Schemas
class ModeUpdate(BaseModel):
    """Request schema for changing a topic's automation mode."""

    mode: str = Field(..., min_length=1, max_length=50)

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Normalize label ('Auto Gather' -> 'auto_gather')."""
        if not v.strip():
            raise ValueError("Mode cannot be empty or whitespace")
        return v.strip().lower().replace(" ", "_").replace("-", "_")


class ThresholdUpdate(BaseModel):
    """Request schema for changing a topic's quality threshold."""

    quality_threshold: int = Field(..., ge=0, le=100)


class ScanRequest(BaseModel):
    """Request schema for a duplicate-cleanup scan."""

    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)


class TopicHealthResponse(BaseModel):
    """Aggregate health plus per-source snapshots."""

    topic_id: int
    health: TopicHealth
    sources: List[HealthSnapshot]


class AutomationResponse(BaseModel):
    """Current automation settings of a topic."""

    topic_id: int
    automation_mode: str
    stored_mode: str
    holiday: bool
    quality_threshold: int
    permitted_stages: List[str]


class ApprovalResponse(BaseModel):
    """Outcome of an editor approving an item's next stage."""

    item_id: int
    stage: str
    success: bool
    status: str
    held_for_review: bool
    hold_reason: Optional[str] = None


class MergeResponse(BaseModel):
    item: ItemRef
    merged_source_ids: List[int]


class PublishResponse(BaseModel):
    story: StoryRef
    published_at: Optional[datetime] = None
