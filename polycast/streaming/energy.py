# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def chunk_rms(samples: np.ndarray) -> float:
    """RMS of PCM16 samples on a 0..1 scale."""
    if samples is None or int(samples.size) <= 0:
        return 0.0
    wav = samples.astype(np.float64) / 32768.0
    return float(np.sqrt(np.mean(np.square(wav))))


@dataclass(frozen=True)
class EnergyReading:
    rms: float
    threshold: float
    ambient: float
    is_speech: bool


class AdaptiveEnergyDetector:
    """
    Speech/silence classifier with a moving ambient floor.

    A chunk is speech when its RMS exceeds max(static_floor, ambient * multiplier).
    Ambient tracks non-speech chunks at `alpha`; speech chunks still pull it at
    `alpha * speech_alpha_scale` so a sudden rise in room noise is eventually absorbed.
    """

    def __init__(
        self,
        static_floor: float = 0.005,
        multiplier: float = 2.0,
        alpha: float = 0.05,
        speech_alpha_scale: float = 0.1,
    ) -> None:
        self.static_floor = max(0.0, float(static_floor))
        self.multiplier = max(1.0, float(multiplier))
        self.alpha = min(1.0, max(0.001, float(alpha)))
        self.speech_alpha_scale = min(1.0, max(0.0, float(speech_alpha_scale)))
        self.ambient = self.static_floor

    def threshold(self) -> float:
        return max(self.static_floor, self.ambient * self.multiplier)

    def update(self, samples: np.ndarray) -> EnergyReading:
        rms = chunk_rms(samples)
        threshold = self.threshold()
        is_speech = rms > threshold
        rate = self.alpha * (self.speech_alpha_scale if is_speech else 1.0)
        self.ambient = (1.0 - rate) * self.ambient + rate * rms
        return EnergyReading(rms=rms, threshold=threshold, ambient=self.ambient, is_speech=is_speech)

    def reset(self) -> None:
        self.ambient = self.static_floor
