import asyncio
import time

import numpy as np
import pytest

from polycast.streaming.capture_queue import AudioChunk, CaptureQueue
from polycast.streaming.segment_policy import FlushReason
from polycast.streaming.segmenter import SegmentationConfig, SegmentationWorker

CHUNK = 4000  # 250 ms at 16 kHz


class _Clock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def _cfg(preset: str = "preaching", **overrides) -> SegmentationConfig:
    return SegmentationConfig.from_preset(preset, **overrides)


def _push(q: CaptureQueue, count: int, value: int = 8000, start: int = 0) -> None:
    for i in range(count):
        v = value if value == 0 else value + start + i
        q.push(AudioChunk(samples=np.full(CHUNK, v, dtype=np.int16)))


def _worker(capacity: int = 10, sink=None, preset: str = "preaching", **overrides):
    q = CaptureQueue(capacity=capacity)
    clock = _Clock()
    seen = []
    w = SegmentationWorker(q, sink or seen.append, config=_cfg(preset, **overrides), clock=clock)
    return q, clock, w, seen


def test_from_preset_applies_overrides():
    cfg = SegmentationConfig.from_preset("debate", overlap_ms=50, tick_ms=None)
    assert cfg.rolling_interval_ms == 1200
    assert cfg.capture_capacity == 20
    assert cfg.overlap_ms == 50
    assert cfg.tick_ms == 100
    with pytest.raises(ValueError):
        SegmentationConfig.from_preset("lecture")


def test_rolling_flush_keeps_overlap_seed():
    q, clock, w, _ = _worker()
    _push(q, 6)
    clock.t = 1.5
    seg = w.tick()
    assert seg is not None
    assert seg.flush_reason is FlushReason.ROLLING_INTERVAL
    assert seg.duration_sec == pytest.approx(1.5)
    assert seg.overlap_retained_sec == pytest.approx(0.15)
    assert w.batch_duration_sec == pytest.approx(0.15)

    _push(q, 6, start=100)
    clock.t = 3.0
    nxt = w.tick()
    assert nxt is not None
    assert nxt.leading_overlap_sec == pytest.approx(0.15)
    assert nxt.duration_sec == pytest.approx(1.65)
    assert np.array_equal(nxt.samples[:2400], seg.samples[-2400:])
    assert nxt.index == seg.index + 1


def test_flush_below_min_duration_is_suppressed_and_samples_kept():
    q, clock, w, _ = _worker()
    _push(q, 1)
    clock.t = 1.6
    assert w.tick() is None
    assert w.suppressed_total == 1
    assert w.batch_duration_sec == pytest.approx(0.25)

    _push(q, 2)
    clock.t = 1.7
    seg = w.tick()
    assert seg is not None
    assert seg.duration_sec == pytest.approx(0.75)


def test_overflow_cut_caps_segment_and_keeps_remainder():
    q, clock, w, _ = _worker(capacity=20)
    _push(q, 10)
    clock.t = 0.5
    seg = w.tick()
    assert seg is not None
    assert seg.flush_reason is FlushReason.OVERFLOW_PROTECTION
    assert seg.duration_sec == pytest.approx(2.25)
    # 0.15 s overlap seed + 0.25 s of audio past the ceiling.
    assert w.batch_duration_sec == pytest.approx(0.40)


def test_queue_pressure_forces_flush():
    q, clock, w, _ = _worker(capacity=10)
    _push(q, 8)
    clock.t = 0.1
    seg = w.tick()
    assert seg is not None
    assert seg.flush_reason is FlushReason.QUEUE_PRESSURE
    assert w.pressure_flushes == 1


def test_silence_flush_after_speech_pause():
    q, clock, w, _ = _worker()
    _push(q, 3)
    clock.t = 0.1
    assert w.tick() is None
    _push(q, 1, value=0)
    clock.t = 0.9
    seg = w.tick()
    assert seg is not None
    assert seg.flush_reason is FlushReason.SILENCE_TIMEOUT
    assert seg.duration_sec == pytest.approx(1.0)


def test_overlap_only_batch_is_not_flushed_again():
    q, clock, w, _ = _worker(min_segment_ms=0)
    _push(q, 6)
    clock.t = 1.5
    assert w.tick() is not None
    clock.t = 3.5
    assert w.tick() is None


def test_terminal_flush_emits_exactly_once():
    q, clock, w, _ = _worker()
    _push(q, 1)
    seg = w.flush_terminal(now=0.3)
    assert seg is not None
    assert seg.flush_reason is FlushReason.STREAM_END
    assert seg.duration_sec == pytest.approx(0.25)
    assert w.flush_terminal(now=0.4) is None


def test_stop_dispatches_terminal_segment():
    async def _run():
        q = CaptureQueue(capacity=10)
        seen = []
        w = SegmentationWorker(q, seen.append, config=_cfg(tick_ms=10))
        w.start()
        _push(q, 1)
        await w.stop()
        return seen

    seen = asyncio.run(_run())
    assert len(seen) == 1
    assert seen[0].flush_reason is FlushReason.STREAM_END


def test_slow_send_never_blocks_next_batch():
    async def _run():
        started = []
        done = []

        async def _slow_sink(seg):
            started.append(seg.index)
            await asyncio.sleep(0.2)
            done.append(seg.index)

        q = CaptureQueue(capacity=10)
        clock = _Clock()
        w = SegmentationWorker(q, _slow_sink, config=_cfg(), clock=clock)
        _push(q, 6)
        clock.t = 1.5
        w.dispatch(w.tick())
        _push(q, 6)
        clock.t = 3.0
        w.dispatch(w.tick())
        await asyncio.sleep(0)
        snapshot = (list(started), list(done), w.in_flight, q.dropped_total)
        await w.stop()
        return snapshot, done

    (started, done_before, in_flight, dropped), done_after = asyncio.run(_run())
    assert started == [1, 2]
    assert done_before == []
    assert in_flight == 2
    assert dropped == 0
    assert done_after == [1, 2]


def test_overlap_longer_than_any_cut_is_clamped():
    q, clock, w, seen = _worker(capacity=10, overlap_ms=2000, preset="debate")
    assert w.overlap_samples == 6400 - 1
    _push(q, 10)
    seg = w.flush_terminal(now=0.5)
    assert [s.flush_reason for s in seen] == [FlushReason.OVERFLOW_PROTECTION]
    assert seen[0].samples.size == w.overflow_samples
    assert seg is not None
    assert seg.flush_reason is FlushReason.STREAM_END
    assert seg.samples.size == 6399 + (10 * CHUNK - w.overflow_samples)


def test_terminal_flush_cuts_oversized_batch_before_stream_end():
    q, clock, w, seen = _worker(capacity=20)
    _push(q, 12)
    seg = w.flush_terminal(now=0.5)
    assert [s.flush_reason for s in seen] == [FlushReason.OVERFLOW_PROTECTION]
    assert seg.flush_reason is FlushReason.STREAM_END
    assert w.flush_terminal(now=0.6) is None


def test_capture_stays_lossy_while_send_outlasts_rolling_interval():
    async def _run():
        async def _stuck_sink(seg):
            await asyncio.sleep(2.0)

        q = CaptureQueue(capacity=10)
        clock = _Clock()
        w = SegmentationWorker(q, _stuck_sink, config=_cfg(), clock=clock)
        _push(q, 6)
        clock.t = 1.5
        w.dispatch(w.tick())
        assert w.in_flight == 1

        slowest = 0.0
        for i in range(14):
            t0 = time.perf_counter()
            q.push(AudioChunk(samples=np.full(CHUNK, 8100 + i, dtype=np.int16)))
            slowest = max(slowest, time.perf_counter() - t0)
        dropped = q.dropped_total

        clock.t = 3.0
        seg = w.tick()
        in_flight = w.in_flight
        await w.abort()
        return slowest, dropped, seg, in_flight

    slowest, dropped, seg, in_flight = asyncio.run(_run())
    assert slowest < 0.05
    assert dropped == 4
    assert in_flight == 1
    assert seg is not None
    assert not np.isin(seg.samples, [8100, 8101, 8102, 8103]).any()
    assert seg.samples[2400] == 8104
