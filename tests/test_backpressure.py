"""
Test suite for the ingestion watermark gate
"""
import pytest

from topicflow.processors.backpressure import WatermarkGate


class TestWatermarkGate:
    """Test high/low watermark hysteresis"""

    def test_pauses_above_high_watermark(self):
        """Test ingestion pauses once depth exceeds the high watermark"""
        gate = WatermarkGate(high_watermark=10, low_watermark=4)
        assert gate.update(10) is False
        assert gate.update(11) is True

    def test_stays_paused_between_watermarks(self):
        """Test the gate stays closed until depth drops below the low watermark"""
        gate = WatermarkGate(high_watermark=10, low_watermark=4)
        gate.update(11)
        for depth in (10, 7, 4):
            assert gate.update(depth) is True

    def test_resumes_below_low_watermark(self):
        """Test ingestion resumes below the low watermark"""
        gate = WatermarkGate(high_watermark=10, low_watermark=4)
        gate.update(11)
        assert gate.update(3) is False

    def test_does_not_thrash_around_single_threshold(self):
        """Test oscillating depth above the low watermark keeps the gate closed"""
        gate = WatermarkGate(high_watermark=10, low_watermark=4)
        states = [gate.update(d) for d in (11, 9, 11, 9, 11)]
        assert states == [True] * 5

    def test_rejects_inverted_watermarks(self):
        """Test watermarks must satisfy low < high"""
        with pytest.raises(ValueError):
            WatermarkGate(high_watermark=5, low_watermark=5)
