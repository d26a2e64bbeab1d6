"""Monitoring models for the read-only session API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from wavefleet.domain.records import SessionManifestRecord, SessionState, SessionStats


class MonitoringModel(BaseModel):
    """Base model for monitoring routes."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class SessionStatsResponse(MonitoringModel):
    """Task counters of one session."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @classmethod
    def from_stats(cls, stats: SessionStats) -> SessionStatsResponse:
        return cls.model_validate(stats.model_dump())


class SessionSummaryResponse(MonitoringModel):
    """Manifest view shown in session listings."""

    session_id: str = Field(alias="sessionId")
    state: SessionState
    created_at: datetime = Field(alias="createdAt")
    last_activity: datetime = Field(alias="lastActivity")
    absolute_timeout_at: datetime = Field(alias="absoluteTimeoutAt")
    terminated_at: datetime | None = Field(default=None, alias="terminatedAt")
    workers_per_wave: int = Field(alias="workersPerWave")
    current_wave: int = Field(default=0, alias="currentWave")
    stats: SessionStatsResponse

    @classmethod
    def from_manifest(cls, manifest: SessionManifestRecord) -> SessionSummaryResponse:
        return cls(
            session_id=manifest.session_id,
            state=manifest.state,
            created_at=manifest.created_at,
            last_activity=manifest.last_activity,
            absolute_timeout_at=manifest.absolute_timeout_at,
            terminated_at=manifest.terminated_at,
            workers_per_wave=manifest.backend_config.workers_per_wave,
            current_wave=manifest.wave_queue.current_wave if manifest.wave_queue else 0,
            stats=SessionStatsResponse.from_stats(manifest.stats),
        )


class ReadinessResponse(MonitoringModel):
    """State store reachability."""

    status: str
    sessions: int


class SessionListResponse(MonitoringModel):
    """Collection wrapper for the session list endpoint."""

    sessions: list[SessionSummaryResponse]


class SessionDetailResponse(SessionSummaryResponse):
    """One session with stats counted from its task records."""

    task_stats: SessionStatsResponse = Field(alias="taskStats")
    queued_task_ids: list[str] = Field(default_factory=list, alias="queuedTaskIds")
    in_flight_task_ids: list[str] = Field(default_factory=list, alias="inFlightTaskIds")
    worker_refs: dict[str, str] = Field(default_factory=dict, alias="workerRefs")


__all__ = [
    "MonitoringModel",
    "ReadinessResponse",
    "SessionDetailResponse",
    "SessionListResponse",
    "SessionStatsResponse",
    "SessionSummaryResponse",
]
