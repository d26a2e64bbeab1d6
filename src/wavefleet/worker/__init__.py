"""Remote worker runtime."""

from wavefleet.worker.executor import ChunkItemError, execute_payload, resolve_function
from wavefleet.worker.runtime import WorkerRunResult, WorkerRuntime

__all__ = [
    "ChunkItemError",
    "WorkerRunResult",
    "WorkerRuntime",
    "execute_payload",
    "resolve_function",
]
