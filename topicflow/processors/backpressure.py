"""
High/low watermark gate for per-topic ingestion
"""
from topicflow.utils.constants import BackpressureConstants
from topicflow.utils.logger import logger


class WatermarkGate:
    """Pauses ingestion above the high watermark until the queue drains below the low one"""

    def __init__(self, high_watermark: int = BackpressureConstants.HIGH_WATERMARK, low_watermark: int = BackpressureConstants.LOW_WATERMARK, name: str = ""):
        if low_watermark >= high_watermark:
            raise ValueError("low_watermark must be below high_watermark")
        self.high_watermark = high_watermark
        self.low_watermark = low_watermark
        self.name = name
        self.paused = False

    def update(self, queue_depth: int) -> bool:
        """Feed the current queue depth; returns True while ingestion is paused."""
        if not self.paused and queue_depth > self.high_watermark:
            self.paused = True
            logger.warning(
                f"Pausing ingestion for {self.name or 'topic'}: queue {queue_depth} > {self.high_watermark}"
            )
        elif self.paused and queue_depth < self.low_watermark:
            self.paused = False
            logger.info(
                f"Resuming ingestion for {self.name or 'topic'}: queue {queue_depth} < {self.low_watermark}"
            )
        return self.paused
