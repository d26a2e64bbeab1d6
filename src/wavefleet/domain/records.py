"""Durable records shared through the object store."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return timezone-aware current time."""

    return datetime.now(UTC)


class TaskState(StrEnum):
    """Lifecycle states persisted in task status records."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED})


class SessionState(StrEnum):
    """Lifecycle states of a dispatch session."""

    ACTIVE = "active"
    TERMINATED = "terminated"


class StoredRecord(BaseModel):
    """Base model for JSON documents kept in the object store.

    Unknown fields are ignored so records written by a newer owner still load.
    """

    model_config = ConfigDict(extra="ignore")


class TaskStatusRecord(StoredRecord):
    """Status document for one task, keyed by session and task id."""

    session_id: str
    task_id: str
    state: TaskState = TaskState.PENDING
    claimed_by: str | None = None
    payload_ref: str
    result_ref: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    claimed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Return whether the task reached completed or failed."""

        return self.state in TERMINAL_TASK_STATES


class SessionStats(StoredRecord):
    """Task counters kept in the session manifest.

    Counters are maintained with best-effort deltas and can be rebuilt from
    task records at any time.
    """

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0


class WorkerPoolConfig(StoredRecord):
    """Snapshot of the worker backend a session was started with."""

    workers: int
    workers_per_wave: int
    cpu: float
    memory: str
    region: str
    bucket: str | None = None
    cluster: str | None = None
    task_definition: str | None = None
    launch_type: str | None = None
    container_name: str | None = None
    object_store_backend: str
    launcher_backend: str


class WaveQueueSnapshot(StoredRecord):
    """Serialized wave queue so a reattaching process can rebuild it."""

    pending: list[str] = Field(default_factory=list)
    in_flight: list[str] = Field(default_factory=list)
    completed: int = 0
    current_wave: int = 0


class SessionManifestRecord(StoredRecord):
    """Session-level state surviving caller disconnect and reattach."""

    session_id: str
    backend_config: WorkerPoolConfig
    stats: SessionStats = Field(default_factory=SessionStats)
    state: SessionState = SessionState.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    last_activity: datetime = Field(default_factory=utc_now)
    absolute_timeout_at: datetime
    terminated_at: datetime | None = None
    worker_refs: dict[str, str] = Field(default_factory=dict)
    wave_queue: WaveQueueSnapshot | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return whether the absolute session timeout has passed."""

        return (now or utc_now()) >= self.absolute_timeout_at


class TaskResultRecord(StoredRecord):
    """Result document uploaded by the worker that ran a task."""

    error: bool = False
    value: Any = None
    message: str | None = None
    traceback: str | None = None

    @classmethod
    def success(cls, value: Any) -> TaskResultRecord:
        return cls(error=False, value=value)

    @classmethod
    def failure(cls, message: str, traceback: str | None = None) -> TaskResultRecord:
        return cls(error=True, message=message, traceback=traceback)


RecordT = TypeVar("RecordT", bound=BaseModel)


@dataclass(slots=True, frozen=True)
class Versioned(Generic[RecordT]):
    """A decoded record together with the store version it was read at."""

    record: RecordT
    version: str


@dataclass(slots=True, frozen=True)
class TaskFailure:
    """Error details of a task that ended in `failed`."""

    message: str
    traceback: str | None = None


@dataclass(slots=True, frozen=True)
class TaskOutcome:
    """Value or failure of a resolved task."""

    task_id: str
    value: Any = None
    failure: TaskFailure | None = None

    @property
    def ok(self) -> bool:
        """Return whether the task completed without error."""

        return self.failure is None


__all__ = [
    "SessionManifestRecord",
    "SessionState",
    "SessionStats",
    "StoredRecord",
    "TERMINAL_TASK_STATES",
    "TaskFailure",
    "TaskOutcome",
    "TaskResultRecord",
    "TaskState",
    "TaskStatusRecord",
    "Versioned",
    "WaveQueueSnapshot",
    "WorkerPoolConfig",
    "utc_now",
]
