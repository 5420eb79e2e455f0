# coding=utf-8
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, List

import numpy as np

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000


@dataclass(frozen=True)
class AudioChunk:
    """
    One capture quantum of mono PCM16 audio.
    """

    samples: np.ndarray
    sample_rate: int = SAMPLE_RATE
    captured_at: float = 0.0

    @property
    def duration_sec(self) -> float:
        return float(self.samples.size) / float(max(1, int(self.sample_rate)))


def decode_pcm16le(raw: bytes) -> np.ndarray:
    if not isinstance(raw, (bytes, bytearray)):
        raise ValueError("binary frame is required")
    if len(raw) % 2 != 0:
        raise ValueError("pcm16le bytes length must be even")
    if not raw:
        return np.zeros((0,), dtype=np.int16)
    return np.frombuffer(bytes(raw), dtype="<i2").astype(np.int16)


class CaptureQueue:
    """
    Bounded lossy-oldest buffer between the audio source and the segmentation worker.

    push() never blocks and never raises; drain_all() is the only read path.
    """

    def __init__(self, capacity: int = 10) -> None:
        self.capacity = max(1, int(capacity))
        self._chunks: Deque[AudioChunk] = deque()
        self._lock = threading.Lock()
        self.pushed_total = 0
        self.dropped_total = 0

    def push(self, chunk: AudioChunk) -> None:
        dropped = False
        with self._lock:
            if len(self._chunks) >= self.capacity:
                self._chunks.popleft()
                self.dropped_total += 1
                dropped = True
            self._chunks.append(chunk)
            self.pushed_total += 1
            dropped_total = self.dropped_total
        if dropped:
            logger.warning(
                "capture queue full, dropped oldest chunk capacity=%d dropped_total=%d",
                self.capacity,
                dropped_total,
            )

    def drain_all(self) -> List[AudioChunk]:
        with self._lock:
            out = list(self._chunks)
            self._chunks.clear()
        return out

    def occupancy(self) -> int:
        with self._lock:
            return len(self._chunks)

    def clear(self) -> int:
        with self._lock:
            n = len(self._chunks)
            self._chunks.clear()
        return n
