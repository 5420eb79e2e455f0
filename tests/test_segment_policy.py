from polycast.streaming.segment_policy import FlushReason, SegmentPolicy


def _policy() -> SegmentPolicy:
    return SegmentPolicy(rolling_interval_ms=1500, min_segment_ms=500, silence_timeout_ms=700)


def test_segment_policy_rolling_interval_cut():
    d = _policy().evaluate(batch_ms=1500, elapsed_ms=1500, silence_ms=0, batch_has_speech=True)
    assert d.should_cut is True
    assert d.reason is FlushReason.ROLLING_INTERVAL


def test_segment_policy_queue_pressure_wins():
    d = _policy().evaluate(
        batch_ms=1800, elapsed_ms=1600, silence_ms=900, batch_has_speech=True, queue_pressure=True
    )
    assert d.should_cut is True
    assert d.reason is FlushReason.QUEUE_PRESSURE


def test_segment_policy_overflow_before_rolling_elapsed():
    p = _policy()
    assert p.overflow_ms == 2250
    d = p.evaluate(batch_ms=2300, elapsed_ms=400, silence_ms=0, batch_has_speech=True)
    assert d.should_cut is True
    assert d.reason is FlushReason.OVERFLOW_PROTECTION


def test_segment_policy_silence_cut_requires_speech_and_floor():
    p = _policy()
    d = p.evaluate(batch_ms=800, elapsed_ms=900, silence_ms=750, batch_has_speech=True)
    assert d.should_cut is True
    assert d.reason is FlushReason.SILENCE_TIMEOUT

    d = p.evaluate(batch_ms=800, elapsed_ms=900, silence_ms=750, batch_has_speech=False)
    assert d.should_cut is False
    assert d.reason is None

    d = p.evaluate(batch_ms=300, elapsed_ms=900, silence_ms=750, batch_has_speech=True)
    assert d.should_cut is False
    assert d.suppressed is False


def test_segment_policy_suppresses_cut_below_min_duration():
    d = _policy().evaluate(batch_ms=250, elapsed_ms=1600, silence_ms=0, batch_has_speech=True)
    assert d.should_cut is False
    assert d.suppressed is True
    assert d.reason is FlushReason.ROLLING_INTERVAL


def test_segment_policy_terminal_cut_ignores_floor():
    d = _policy().evaluate(batch_ms=100, elapsed_ms=50, silence_ms=0, batch_has_speech=False, terminal=True)
    assert d.should_cut is True
    assert d.reason is FlushReason.STREAM_END


def test_segment_policy_empty_batch_never_cuts():
    d = _policy().evaluate(batch_ms=0, elapsed_ms=5000, silence_ms=5000, batch_has_speech=False, terminal=True)
    assert d.should_cut is False
