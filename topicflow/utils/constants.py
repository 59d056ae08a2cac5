"""
Constants and configuration values for topicflow
"""
import re


# Source health constants
class HealthConstants:
    # Suspension rule
    MIN_SUCCESS_RATE = 50.0
    MAX_CONSECUTIVE_FAILURES = 3

    # Aggregate topic health bands (eligible / total)
    HEALTHY_RATIO = 0.8
    DEGRADED_RATIO = 0.5

    # Fetch and persistence
    DEFAULT_FETCH_TIMEOUT_SECONDS = 30
    PERSISTENCE_RETRIES = 3
    VOLUME_WINDOW_DAYS = 7
    ATTEMPT_RETENTION_DAYS = 30


# Duplicate detection constants
class DedupConstants:
    # Confidence bands (0-100)
    ORIGINAL_MIN_CONFIDENCE = 80
    LIKELY_ORIGINAL_MIN_CONFIDENCE = 50

    # Recent-content index window
    WINDOW_DAYS = 7
    MAX_WINDOW_ITEMS = 500

    # Word shingles used for overlap scoring
    SHINGLE_SIZE = 3

    # Backlog cleanup scan
    SCAN_BATCH_SIZE = 50

    DETECTION_EXACT = "exact_fingerprint"
    DETECTION_SHINGLE = "shingle_overlap"


# Automation constants
class AutomationConstants:
    DEFAULT_QUALITY_THRESHOLD = 60
    DEFAULT_SCRAPE_FREQUENCY_HOURS = 12
    POLL_INTERVAL_SECONDS = 60
    GENERATION_TIMEOUT_SECONDS = 120


# Backpressure constants
class BackpressureConstants:
    HIGH_WATERMARK = 50
    LOW_WATERMARK = 20


# Content normalization patterns
class ContentConstants:
    HTML_TAG_PATTERN = re.compile(r'<[^>]+>')
    PUNCTUATION_PATTERN = re.compile(r'[^\w\s]', re.UNICODE)
    EXCESSIVE_WHITESPACE_PATTERN = re.compile(r'\s+')
    UNICODE_CLEANING_PATTERN = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]', re.UNICODE)


# Logging Constants
class LoggingConstants:
    DEFAULT_LEVEL = 'INFO'
    DEFAULT_FILE = 'logs/topicflow.log'
    ROTATION = '10 MB'
    RETENTION = '30 days'


__all__ = [
    'HealthConstants',
    'DedupConstants',
    'AutomationConstants',
    'BackpressureConstants',
    'ContentConstants',
    'LoggingConstants',
]
