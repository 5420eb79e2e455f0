import numpy as np
import pytest

from polycast.streaming.energy import AdaptiveEnergyDetector, chunk_rms


def test_chunk_rms_scale():
    assert chunk_rms(np.zeros(100, dtype=np.int16)) == 0.0
    assert chunk_rms(np.full(100, 16384, dtype=np.int16)) == pytest.approx(0.5)
    assert chunk_rms(np.zeros(0, dtype=np.int16)) == 0.0


def test_detector_flags_loud_chunk_as_speech():
    d = AdaptiveEnergyDetector(static_floor=0.005, multiplier=2.0)
    assert d.update(np.zeros(4000, dtype=np.int16)).is_speech is False
    reading = d.update(np.full(4000, 8000, dtype=np.int16))
    assert reading.is_speech is True
    assert reading.rms > reading.threshold


def test_detector_ambient_rises_with_room_noise():
    d = AdaptiveEnergyDetector(static_floor=0.005, multiplier=2.0, alpha=0.2)
    hum = np.full(4000, 600, dtype=np.int16)
    first = d.update(hum)
    for _ in range(60):
        last = d.update(hum)
    assert last.threshold > first.threshold
    assert last.is_speech is False


def test_detector_reset_restores_floor():
    d = AdaptiveEnergyDetector(static_floor=0.01)
    d.update(np.full(4000, 3000, dtype=np.int16))
    d.reset()
    assert d.ambient == 0.01
