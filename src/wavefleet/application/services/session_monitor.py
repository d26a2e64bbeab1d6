"""Read-only session views for the monitoring API."""

from __future__ import annotations

from wavefleet.application.services.session_manifest import SessionManifestService
from wavefleet.domain.monitoring_models import (
    ReadinessResponse,
    SessionDetailResponse,
    SessionListResponse,
    SessionStatsResponse,
    SessionSummaryResponse,
)
from wavefleet.domain.ports import ClosableObjectStore


class SessionMonitorService:
    """Builds monitoring responses from manifests and task records."""

    def __init__(self, manifest_service: SessionManifestService) -> None:
        self._manifest_service = manifest_service

    async def check_ready(self) -> ReadinessResponse:
        """List manifest keys to prove the state store answers."""

        session_ids = await self._manifest_service.state_store.list_session_ids()
        return ReadinessResponse(status="ready", sessions=len(session_ids))

    async def list_sessions(self) -> SessionListResponse:
        """List every readable session, newest first."""

        manifests = await self._manifest_service.list_sessions()
        return SessionListResponse(
            sessions=[SessionSummaryResponse.from_manifest(manifest) for manifest in manifests]
        )

    async def get_session(self, session_id: str) -> SessionDetailResponse:
        """Return one session with stats counted from its task records."""

        manifest = await self._manifest_service.get(session_id)
        task_stats = await self._manifest_service.count_stats(session_id)
        summary = SessionSummaryResponse.from_manifest(manifest)
        snapshot = manifest.wave_queue
        return SessionDetailResponse(
            **summary.model_dump(),
            task_stats=SessionStatsResponse.from_stats(task_stats),
            queued_task_ids=list(snapshot.pending) if snapshot else [],
            in_flight_task_ids=list(snapshot.in_flight) if snapshot else [],
            worker_refs=dict(manifest.worker_refs),
        )

    async def close(self) -> None:
        store = self._manifest_service.state_store.object_store
        if isinstance(store, ClosableObjectStore):
            await store.close()


__all__ = ["SessionMonitorService"]
