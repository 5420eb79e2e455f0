# coding=utf-8

from .backpressure import BackpressureDecision, QueueBackpressureController
from .capture_queue import SAMPLE_RATE, AudioChunk, CaptureQueue, decode_pcm16le
from .energy import AdaptiveEnergyDetector, EnergyReading, chunk_rms
from .reconciliation import ReconciledText, TranscriptReconciler, trim_word_overlap
from .segment_policy import SEGMENTATION_PRESETS, FlushReason, SegmentCutDecision, SegmentPolicy
from .segmenter import Segment, SegmentationConfig, SegmentationWorker

__all__ = [
    "SAMPLE_RATE",
    "SEGMENTATION_PRESETS",
    "AdaptiveEnergyDetector",
    "AudioChunk",
    "BackpressureDecision",
    "CaptureQueue",
    "EnergyReading",
    "FlushReason",
    "QueueBackpressureController",
    "ReconciledText",
    "Segment",
    "SegmentCutDecision",
    "SegmentPolicy",
    "SegmentationConfig",
    "SegmentationWorker",
    "TranscriptReconciler",
    "chunk_rms",
    "decode_pcm16le",
    "trim_word_overlap",
]
