"""
Configuration for the topicflow service process.

Environment-based settings using Pydantic BaseSettings.
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///data/topicflow.db"

    # Engine tunables and seed topics (YAML, optional)
    pipeline_config_path: str = "config/topicflow.yaml"

    # Orchestrator
    orchestrator_enabled: bool = True
    aggregator_class: Optional[str] = None  # e.g. "mypackage.feeds:FeedAggregator"
    generator_class: Optional[str] = None

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_timezone: str = "UTC"
    cleanup_scan_hour: int = 3  # Nightly duplicate cleanup scan
    cleanup_scan_minute: int = 0
    attempt_retention_days: int = 30

    # Application
    app_title: str = "Topicflow"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()
