"""Wave planning and status value objects."""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class WavePlan:
    """How many workers run concurrently under the vCPU quota."""

    workers: int
    workers_per_wave: int
    num_waves: int
    quota_limited: bool


@dataclass(slots=True, frozen=True)
class WaveStatus:
    """Progress of the wave queue as seen by the session owner."""

    current_wave: int
    pending: int
    running: int
    completed: int
    total_waves: int


def plan_waves(workers: int, cpu: float, vcpu_quota: int | None = None) -> WavePlan:
    """Split `workers` into waves that fit the vCPU quota.

    Without a quota every worker runs in the first wave.
    """

    if workers < 1:
        raise ValueError("workers must be >= 1.")
    if cpu <= 0:
        raise ValueError("cpu must be > 0.")

    if vcpu_quota is None:
        return WavePlan(workers=workers, workers_per_wave=workers, num_waves=1, quota_limited=False)

    max_concurrent = max(1, math.floor(vcpu_quota / cpu))
    workers_per_wave = min(workers, max_concurrent)
    return WavePlan(
        workers=workers,
        workers_per_wave=workers_per_wave,
        num_waves=math.ceil(workers / workers_per_wave),
        quota_limited=workers_per_wave < workers,
    )


__all__ = ["WavePlan", "WaveStatus", "plan_waves"]
