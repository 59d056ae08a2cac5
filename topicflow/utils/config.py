"""
Configuration management for topicflow using environment variables
"""
import os
import yaml
from pathlib import Path
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, model_validator
from dotenv import load_dotenv

from topicflow.utils.constants import (
    AutomationConstants,
    BackpressureConstants,
    DedupConstants,
    HealthConstants,
    LoggingConstants,
)


# Load environment variables from .env file
load_dotenv()


class SourceSeed(BaseModel):
    name: str
    feed_url: Optional[str] = None


class TopicSeed(BaseModel):
    name: str
    description: Optional[str] = None
    automation_mode: str = "manual"
    # None falls back to the automation section defaults when seeding
    quality_threshold: Optional[int] = Field(default=None, ge=0, le=100)
    scrape_frequency_hours: Optional[int] = Field(default=None, ge=1)
    negative_keywords: List[str] = Field(default_factory=list)
    competing_regions: List[str] = Field(default_factory=list)
    sources: List[SourceSeed] = Field(default_factory=list)


class HealthConfig(BaseModel):
    min_success_rate: float = Field(default_factory=lambda: float(os.getenv("HEALTH_MIN_SUCCESS_RATE", str(HealthConstants.MIN_SUCCESS_RATE))))
    max_consecutive_failures: int = Field(default_factory=lambda: int(os.getenv("HEALTH_MAX_CONSECUTIVE_FAILURES", str(HealthConstants.MAX_CONSECUTIVE_FAILURES))))
    healthy_ratio: float = Field(default_factory=lambda: float(os.getenv("HEALTH_HEALTHY_RATIO", str(HealthConstants.HEALTHY_RATIO))))
    degraded_ratio: float = Field(default_factory=lambda: float(os.getenv("HEALTH_DEGRADED_RATIO", str(HealthConstants.DEGRADED_RATIO))))
    fetch_timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("FETCH_TIMEOUT_SECONDS", str(HealthConstants.DEFAULT_FETCH_TIMEOUT_SECONDS))))
    persistence_retries: int = Field(default_factory=lambda: int(os.getenv("PERSISTENCE_RETRIES", str(HealthConstants.PERSISTENCE_RETRIES))))
    volume_window_days: int = Field(default_factory=lambda: int(os.getenv("VOLUME_WINDOW_DAYS", str(HealthConstants.VOLUME_WINDOW_DAYS))))


class DedupConfig(BaseModel):
    window_days: int = Field(default_factory=lambda: int(os.getenv("DEDUP_WINDOW_DAYS", str(DedupConstants.WINDOW_DAYS))))
    max_window_items: int = Field(default_factory=lambda: int(os.getenv("DEDUP_MAX_WINDOW_ITEMS", str(DedupConstants.MAX_WINDOW_ITEMS))))
    shingle_size: int = Field(default_factory=lambda: int(os.getenv("DEDUP_SHINGLE_SIZE", str(DedupConstants.SHINGLE_SIZE))))
    scan_batch_size: int = Field(default_factory=lambda: int(os.getenv("DEDUP_SCAN_BATCH_SIZE", str(DedupConstants.SCAN_BATCH_SIZE))))


class BackpressureConfig(BaseModel):
    high_watermark: int = Field(default_factory=lambda: int(os.getenv("QUEUE_HIGH_WATERMARK", str(BackpressureConstants.HIGH_WATERMARK))))
    low_watermark: int = Field(default_factory=lambda: int(os.getenv("QUEUE_LOW_WATERMARK", str(BackpressureConstants.LOW_WATERMARK))))

    @model_validator(mode="after")
    def check_watermarks(self):
        if self.low_watermark >= self.high_watermark:
            raise ValueError("low_watermark must be below high_watermark")
        return self


class AutomationConfig(BaseModel):
    default_quality_threshold: int = Field(default_factory=lambda: int(os.getenv("DEFAULT_QUALITY_THRESHOLD", str(AutomationConstants.DEFAULT_QUALITY_THRESHOLD))))
    default_scrape_frequency_hours: int = Field(default_factory=lambda: int(os.getenv("DEFAULT_SCRAPE_FREQUENCY_HOURS", str(AutomationConstants.DEFAULT_SCRAPE_FREQUENCY_HOURS))))
    poll_interval_seconds: float = Field(default_factory=lambda: float(os.getenv("POLL_INTERVAL_SECONDS", str(AutomationConstants.POLL_INTERVAL_SECONDS))))
    generation_timeout_seconds: float = Field(default_factory=lambda: float(os.getenv("GENERATION_TIMEOUT_SECONDS", str(AutomationConstants.GENERATION_TIMEOUT_SECONDS))))
    pause_publication_when_critical: bool = Field(default_factory=lambda: os.getenv("PAUSE_PUBLICATION_WHEN_CRITICAL", "true").lower() == "true")


class LoggingConfig(BaseModel):
    level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", LoggingConstants.DEFAULT_LEVEL))
    file: str = Field(default_factory=lambda: os.getenv("LOG_FILE", LoggingConstants.DEFAULT_FILE))


class Config(BaseModel):
    health: HealthConfig = Field(default_factory=HealthConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    backpressure: BackpressureConfig = Field(default_factory=BackpressureConfig)
    automation: AutomationConfig = Field(default_factory=AutomationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    topics: List[TopicSeed] = Field(default_factory=list)

    def __init__(self, config_path: Optional[str] = None, **data: Any):
        # Environment-backed defaults come from the Field factories
        super().__init__(**data)

        # Optionally load tunables and seed topics from YAML
        if config_path and Path(config_path).exists():
            config_data = self._load_config(config_path)
            for section in ("health", "dedup", "backpressure", "automation", "logging"):
                if section in config_data:
                    current = getattr(self, section)
                    merged = {**current.model_dump(), **config_data[section]}
                    setattr(self, section, type(current)(**merged))
            if "topics" in config_data:
                self.topics = [TopicSeed(**t) for t in config_data["topics"] or []]

    def _load_config(self, config_path: str) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}
