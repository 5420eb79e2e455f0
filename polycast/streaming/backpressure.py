# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackpressureDecision:
    under_pressure: bool
    force_flush: bool
    occupancy: int
    occupancy_ratio: float
    reason: str


class QueueBackpressureController:
    """
    Capture-queue occupancy policy.

    Occupancy at or above the high-water mark asks the worker for an immediate flush.
    """

    def __init__(
        self,
        capacity: int = 10,
        high_water: int = 0,
        soft_ratio: float = 0.5,
    ) -> None:
        self.capacity = max(1, int(capacity))
        hw = int(high_water) if int(high_water or 0) > 0 else int(round(self.capacity * 0.8))
        self.high_water = min(self.capacity, max(1, hw))
        self.soft_ratio = min(1.0, max(0.0, float(soft_ratio)))

    def evaluate(self, occupancy: int) -> BackpressureDecision:
        occ = max(0, int(occupancy))
        ratio = float(occ) / float(self.capacity)
        if occ >= self.high_water:
            return BackpressureDecision(
                under_pressure=True,
                force_flush=True,
                occupancy=occ,
                occupancy_ratio=ratio,
                reason="high_water",
            )
        if ratio >= self.soft_ratio:
            return BackpressureDecision(
                under_pressure=True,
                force_flush=False,
                occupancy=occ,
                occupancy_ratio=ratio,
                reason="soft_pressure",
            )
        return BackpressureDecision(
            under_pressure=False,
            force_flush=False,
            occupancy=occ,
            occupancy_ratio=ratio,
            reason="normal",
        )
