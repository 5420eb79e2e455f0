# coding=utf-8
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, fields, replace
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

import numpy as np

from polycast.streaming.backpressure import QueueBackpressureController
from polycast.streaming.capture_queue import SAMPLE_RATE, CaptureQueue
from polycast.streaming.energy import AdaptiveEnergyDetector
from polycast.streaming.segment_policy import SEGMENTATION_PRESETS, FlushReason, SegmentPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentationConfig:
    sample_rate: int = SAMPLE_RATE
    tick_ms: float = 100.0
    capture_capacity: int = 10
    queue_high_water: int = 0
    rolling_interval_ms: float = 1500.0
    min_segment_ms: float = 500.0
    silence_timeout_ms: float = 700.0
    overlap_ms: float = 150.0
    silence_floor: float = 0.005
    energy_multiplier: float = 2.0

    @classmethod
    def from_preset(cls, name: Optional[str] = None, **overrides: Any) -> "SegmentationConfig":
        key = str(name or "preaching").strip().lower()
        if key not in SEGMENTATION_PRESETS:
            raise ValueError(f"unknown segmentation preset: {name}")
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in SEGMENTATION_PRESETS[key].items() if k in known}
        for k, v in overrides.items():
            if v is None:
                continue
            if k not in known:
                raise ValueError(f"unknown segmentation option: {k}")
            values[k] = v
        return cls(**values)


@dataclass(frozen=True)
class Segment:
    samples: np.ndarray
    sample_rate: int
    flush_reason: FlushReason
    overlap_retained_sec: float
    leading_overlap_sec: float = 0.0
    index: int = 0
    sequence_id: int = -1
    created_at: float = 0.0

    @property
    def duration_sec(self) -> float:
        return float(self.samples.size) / float(max(1, int(self.sample_rate)))

    def pcm16le(self) -> bytes:
        return self.samples.astype("<i2").tobytes()

    def with_sequence(self, sequence_id: int) -> "Segment":
        return replace(self, sequence_id=int(sequence_id))


SegmentSink = Callable[[Segment], Union[None, Awaitable[Any]]]


class SegmentationWorker:
    """
    Periodic drain of the capture queue into a growing batch, flushed into segments.

    The batch reset is synchronous; the sink is invoked fire-and-forget so a slow
    send never stalls the next batch.
    """

    def __init__(
        self,
        capture_queue: CaptureQueue,
        on_segment: SegmentSink,
        config: Optional[SegmentationConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SegmentationConfig()
        self.capture_queue = capture_queue
        self.on_segment = on_segment
        self.clock = clock
        self.sample_rate = max(1, int(self.config.sample_rate))
        self.tick_sec = max(0.01, float(self.config.tick_ms) / 1000.0)
        self.policy = SegmentPolicy(
            rolling_interval_ms=self.config.rolling_interval_ms,
            min_segment_ms=self.config.min_segment_ms,
            silence_timeout_ms=self.config.silence_timeout_ms,
        )
        self.backpressure = QueueBackpressureController(
            capacity=capture_queue.capacity,
            high_water=self.config.queue_high_water,
        )
        self.detector = AdaptiveEnergyDetector(
            static_floor=self.config.silence_floor,
            multiplier=self.config.energy_multiplier,
        )
        self.overflow_samples = max(1, int(self.policy.overflow_ms / 1000.0 * self.sample_rate))
        min_samples = int(self.policy.min_segment_ms / 1000.0 * self.sample_rate)
        # The seed must stay shorter than any cut, or overflow cuts never shrink the batch.
        overlap_cap = max(0, min(self.overflow_samples, min_samples or self.overflow_samples) - 1)
        self.overlap_samples = max(0, int(round(float(self.config.overlap_ms) / 1000.0 * self.sample_rate)))
        if self.overlap_samples > overlap_cap:
            logger.warning(
                "overlap clamped overlap_ms=%.0f max_ms=%.0f",
                float(self.config.overlap_ms),
                overlap_cap * 1000.0 / self.sample_rate,
            )
            self.overlap_samples = overlap_cap

        now = self.clock()
        self._parts: List[np.ndarray] = []
        self._batch_samples = 0
        self._fresh_samples = 0
        self._leading_overlap_samples = 0
        self._batch_started_at = now
        self._last_speech_at = now
        self._batch_has_speech = False
        self._next_index = 1
        self._in_flight: Set[asyncio.Future] = set()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

        self.segments_emitted = 0
        self.suppressed_total = 0
        self.pressure_flushes = 0

    @property
    def batch_duration_sec(self) -> float:
        return float(self._batch_samples) / float(self.sample_rate)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def _ingest(self, now: float) -> None:
        for chunk in self.capture_queue.drain_all():
            samples = np.asarray(chunk.samples, dtype=np.int16).reshape(-1)
            if samples.size <= 0:
                continue
            reading = self.detector.update(samples)
            if reading.is_speech:
                self._last_speech_at = now
                self._batch_has_speech = True
            self._parts.append(samples)
            self._batch_samples += int(samples.size)
            self._fresh_samples += int(samples.size)

    def tick(self, now: Optional[float] = None) -> Optional[Segment]:
        now = self.clock() if now is None else float(now)
        occupancy = self.capture_queue.occupancy()
        self._ingest(now)
        pressure = self.backpressure.evaluate(occupancy)
        if self._fresh_samples <= 0:
            # Only carried overlap in the batch; it was already sent.
            return None

        decision = self.policy.evaluate(
            batch_ms=self.batch_duration_sec * 1000.0,
            elapsed_ms=(now - self._batch_started_at) * 1000.0,
            silence_ms=(now - self._last_speech_at) * 1000.0,
            batch_has_speech=self._batch_has_speech,
            queue_pressure=pressure.force_flush,
        )
        if decision.suppressed:
            self.suppressed_total += 1
            logger.debug(
                "flush suppressed reason=%s batch_ms=%.0f min_ms=%.0f",
                decision.reason.value if decision.reason else "",
                decision.batch_ms,
                self.policy.min_segment_ms,
            )
            return None
        if not decision.should_cut or decision.reason is None:
            return None
        if decision.reason is FlushReason.QUEUE_PRESSURE:
            self.pressure_flushes += 1
        return self._flush(decision.reason, now)

    def _flush(self, reason: FlushReason, now: float) -> Optional[Segment]:
        if self._batch_samples <= 0:
            return None
        samples = np.concatenate(self._parts) if len(self._parts) > 1 else self._parts[0]
        remainder = np.zeros((0,), dtype=np.int16)
        if reason is not FlushReason.STREAM_END and samples.size > self.overflow_samples:
            remainder = samples[self.overflow_samples :]
            samples = samples[: self.overflow_samples]

        if reason is FlushReason.STREAM_END or self.overlap_samples <= 0:
            seed = np.zeros((0,), dtype=np.int16)
        else:
            seed = samples[-min(self.overlap_samples, int(samples.size)) :].copy()

        segment = Segment(
            samples=samples.copy(),
            sample_rate=self.sample_rate,
            flush_reason=reason,
            overlap_retained_sec=float(seed.size) / float(self.sample_rate),
            leading_overlap_sec=float(self._leading_overlap_samples) / float(self.sample_rate),
            index=self._next_index,
            created_at=now,
        )
        self._next_index += 1
        self.segments_emitted += 1

        self._parts = [p for p in (seed, remainder) if p.size > 0]
        self._batch_samples = int(seed.size + remainder.size)
        self._fresh_samples = int(remainder.size)
        self._leading_overlap_samples = int(seed.size)
        self._batch_started_at = now
        if remainder.size <= 0:
            self._batch_has_speech = False

        logger.debug(
            "segment flushed index=%d reason=%s duration_sec=%.3f overlap_sec=%.3f",
            segment.index,
            reason.value,
            segment.duration_sec,
            segment.overlap_retained_sec,
        )
        return segment

    def dispatch(self, segment: Optional[Segment]) -> None:
        if segment is None:
            return
        try:
            result = self.on_segment(segment)
        except Exception:
            logger.exception("segment sink failed index=%d", segment.index)
            return
        if inspect.isawaitable(result):
            fut = asyncio.ensure_future(result)
            self._in_flight.add(fut)
            fut.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, fut: asyncio.Future) -> None:
        self._in_flight.discard(fut)
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            logger.warning("segment send failed err=%s", exc)

    async def run(self) -> None:
        while not self._stop.is_set():
            try:
                self.dispatch(self.tick())
            except Exception:
                logger.exception("segmentation tick failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.tick_sec)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop.clear()
            self._task = asyncio.create_task(self.run())
        return self._task

    def flush_terminal(self, now: Optional[float] = None) -> Optional[Segment]:
        """
        Drain what is left and emit the single stream_end segment.

        A batch above the overflow ceiling is first cut into overflow_protection
        segments, so one stop can dispatch several segments before stream_end.
        """
        now = self.clock() if now is None else float(now)
        self._ingest(now)
        while self._batch_samples > self.overflow_samples:
            self.dispatch(self._flush(FlushReason.OVERFLOW_PROTECTION, now))
        if self._fresh_samples <= 0:
            self._parts = []
            self._batch_samples = 0
            return None
        segment = self._flush(FlushReason.STREAM_END, now)
        self._parts = []
        self._batch_samples = 0
        self._fresh_samples = 0
        return segment

    async def stop(self, wait_in_flight: bool = True, timeout: float = 10.0) -> Optional[Segment]:
        if self._closed:
            return None
        self._closed = True
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        segment = self.flush_terminal()
        self.dispatch(segment)
        if wait_in_flight and self._in_flight:
            done, pending = await asyncio.wait(set(self._in_flight), timeout=max(0.1, float(timeout)))
            if pending:
                logger.warning("segment sends still pending after stop pending=%d", len(pending))
        return segment

    async def abort(self) -> int:
        """Stop without a terminal flush and cancel in-flight sends."""
        self._closed = True
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        pending = list(self._in_flight)
        for fut in pending:
            fut.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._parts = []
        self._batch_samples = 0
        self._fresh_samples = 0
        return self.capture_queue.clear()
