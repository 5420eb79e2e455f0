# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class FlushReason(str, Enum):
    ROLLING_INTERVAL = "rolling_interval"
    SILENCE_TIMEOUT = "silence_timeout"
    OVERFLOW_PROTECTION = "overflow_protection"
    QUEUE_PRESSURE = "queue_pressure"
    STREAM_END = "stream_end"


@dataclass(frozen=True)
class SegmentCutDecision:
    should_cut: bool
    reason: Optional[FlushReason]
    suppressed: bool
    batch_ms: float
    elapsed_ms: float
    silence_ms: float


# Tunings carried over from the field presets; values in milliseconds.
SEGMENTATION_PRESETS: Dict[str, Dict[str, float]] = {
    "preaching": {
        "capture_capacity": 10,
        "rolling_interval_ms": 1500,
        "min_segment_ms": 500,
        "silence_timeout_ms": 700,
        "overlap_ms": 150,
        "tick_ms": 100,
        "silence_floor": 0.005,
    },
    "conversation": {
        "capture_capacity": 15,
        "rolling_interval_ms": 2000,
        "min_segment_ms": 800,
        "silence_timeout_ms": 1000,
        "overlap_ms": 200,
        "tick_ms": 150,
        "silence_floor": 0.010,
    },
    "speech": {
        "capture_capacity": 12,
        "rolling_interval_ms": 2500,
        "min_segment_ms": 1000,
        "silence_timeout_ms": 1200,
        "overlap_ms": 200,
        "tick_ms": 150,
        "silence_floor": 0.008,
    },
    "debate": {
        "capture_capacity": 20,
        "rolling_interval_ms": 1200,
        "min_segment_ms": 400,
        "silence_timeout_ms": 500,
        "overlap_ms": 100,
        "tick_ms": 100,
        "silence_floor": 0.012,
    },
}


class SegmentPolicy:
    """
    Decide when the in-progress batch becomes a segment.

    Priority: queue pressure, rolling interval, overflow protection, silence.
    Any non-terminal cut below min_segment_ms is suppressed.
    """

    OVERFLOW_FACTOR = 1.5

    def __init__(
        self,
        rolling_interval_ms: float = 1500.0,
        min_segment_ms: float = 500.0,
        silence_timeout_ms: float = 700.0,
    ) -> None:
        self.rolling_interval_ms = max(200.0, float(rolling_interval_ms))
        self.min_segment_ms = min(self.rolling_interval_ms, max(0.0, float(min_segment_ms)))
        self.silence_timeout_ms = max(50.0, float(silence_timeout_ms))

    @property
    def overflow_ms(self) -> float:
        return self.rolling_interval_ms * self.OVERFLOW_FACTOR

    def evaluate(
        self,
        *,
        batch_ms: float,
        elapsed_ms: float,
        silence_ms: float,
        batch_has_speech: bool,
        queue_pressure: bool = False,
        terminal: bool = False,
    ) -> SegmentCutDecision:
        batch = max(0.0, float(batch_ms))
        elapsed = max(0.0, float(elapsed_ms))
        silence = max(0.0, float(silence_ms))

        if batch <= 0.0:
            return SegmentCutDecision(False, None, False, batch, elapsed, silence)

        if terminal:
            return SegmentCutDecision(True, FlushReason.STREAM_END, False, batch, elapsed, silence)

        reason: Optional[FlushReason] = None
        if queue_pressure:
            reason = FlushReason.QUEUE_PRESSURE
        elif elapsed >= self.rolling_interval_ms:
            reason = FlushReason.ROLLING_INTERVAL
        elif batch > self.overflow_ms:
            reason = FlushReason.OVERFLOW_PROTECTION
        elif bool(batch_has_speech) and silence >= self.silence_timeout_ms and batch >= self.min_segment_ms:
            reason = FlushReason.SILENCE_TIMEOUT

        if reason is None:
            return SegmentCutDecision(False, None, False, batch, elapsed, silence)
        if batch < self.min_segment_ms:
            return SegmentCutDecision(False, reason, True, batch, elapsed, silence)
        return SegmentCutDecision(True, reason, False, batch, elapsed, silence)
