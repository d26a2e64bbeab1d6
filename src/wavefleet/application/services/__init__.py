"""Application services public API."""

from wavefleet.application.services.claims import ClaimProtocol
from wavefleet.application.services.session_dispatcher import (
    SessionCleanup,
    SessionDispatcher,
    new_session_id,
    new_task_id,
)
from wavefleet.application.services.session_manifest import SessionManifestService
from wavefleet.application.services.session_monitor import SessionMonitorService
from wavefleet.application.services.state_store import ObjectStateStore
from wavefleet.application.services.task_handle import TaskHandle
from wavefleet.application.services.wave_scheduler import WaveScheduler, WorkerRegistry

__all__ = [
    "ClaimProtocol",
    "ObjectStateStore",
    "SessionCleanup",
    "SessionDispatcher",
    "SessionManifestService",
    "SessionMonitorService",
    "TaskHandle",
    "WaveScheduler",
    "WorkerRegistry",
    "new_session_id",
    "new_task_id",
]
