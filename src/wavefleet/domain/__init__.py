"""Domain model public API."""

from wavefleet.domain.errors import (
    ControlPlaneError,
    DispatchConflictError,
    DispatchError,
    DispatchNotFoundError,
    DispatchValidationError,
)
from wavefleet.domain.records import (
    SessionManifestRecord,
    SessionState,
    SessionStats,
    TaskOutcome,
    TaskState,
    TaskStatusRecord,
)
from wavefleet.domain.scheduling import WavePlan, WaveStatus, plan_waves

__all__ = [
    "ControlPlaneError",
    "DispatchConflictError",
    "DispatchError",
    "DispatchNotFoundError",
    "DispatchValidationError",
    "SessionManifestRecord",
    "SessionState",
    "SessionStats",
    "TaskOutcome",
    "TaskState",
    "TaskStatusRecord",
    "WavePlan",
    "WaveStatus",
    "plan_waves",
]
