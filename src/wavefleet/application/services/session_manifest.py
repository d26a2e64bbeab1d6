"""Session manifest lifecycle with optimistic-concurrency updates."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from datetime import timedelta

from wavefleet.application.services.state_store import ObjectStateStore
from wavefleet.domain.errors import (
    DispatchError,
    ManifestConflictError,
    SessionNotFoundError,
)
from wavefleet.domain.records import (
    SessionManifestRecord,
    SessionState,
    SessionStats,
    TaskState,
    WorkerPoolConfig,
    utc_now,
)

logger = logging.getLogger(__name__)

ManifestMutation = Callable[[SessionManifestRecord], None]

_DEFAULT_MAX_RETRIES = 3
_CONFLICT_BACKOFF_LOW_SECONDS = 0.1
_CONFLICT_BACKOFF_HIGH_SECONDS = 0.5
_STATS_FIELDS = frozenset(SessionStats.model_fields)


class SessionManifestService:
    """Create, read and update session manifests.

    Every write is a read-modify-write guarded by the manifest version. The
    mutation is re-applied to a freshly read manifest after each lost race.
    """

    def __init__(
        self,
        state_store: ObjectStateStore,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        jitter: Callable[[float, float], float] | None = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        self._state_store = state_store
        self._max_retries = max_retries
        self._sleep = sleep or asyncio.sleep
        self._jitter = jitter or random.uniform

    @property
    def state_store(self) -> ObjectStateStore:
        return self._state_store

    async def create(
        self,
        session_id: str,
        backend_config: WorkerPoolConfig,
        absolute_timeout_seconds: float,
    ) -> SessionManifestRecord:
        """Write the initial manifest; raises `SessionExistsError` for a known id."""

        now = utc_now()
        manifest = SessionManifestRecord(
            session_id=session_id,
            backend_config=backend_config,
            created_at=now,
            last_activity=now,
            absolute_timeout_at=now + timedelta(seconds=absolute_timeout_seconds),
        )
        await self._state_store.create_manifest(manifest)
        logger.info(
            "Created session '%s' with %s workers per wave.",
            session_id,
            backend_config.workers_per_wave,
        )
        return manifest

    async def get(self, session_id: str) -> SessionManifestRecord:
        """Return the manifest."""

        current = await self._state_store.get_manifest(session_id)
        if current is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found.")
        return current.record

    async def update(
        self,
        session_id: str,
        mutate: ManifestMutation,
        max_retries: int | None = None,
    ) -> SessionManifestRecord:
        """Apply `mutate` with compare-and-swap, retrying lost races.

        Makes at most `max_retries + 1` attempts and then raises
        `ManifestConflictError`.
        """

        retries = self._max_retries if max_retries is None else max_retries
        attempts = retries + 1
        for attempt in range(1, attempts + 1):
            current = await self._state_store.get_manifest(session_id)
            if current is None:
                raise SessionNotFoundError(f"Session '{session_id}' not found.")

            updated = current.record.model_copy(deep=True)
            mutate(updated)
            updated.last_activity = utc_now()
            if await self._state_store.put_manifest_if_version(updated, current.version):
                return updated

            if attempt < attempts:
                delay = self._jitter(
                    _CONFLICT_BACKOFF_LOW_SECONDS,
                    _CONFLICT_BACKOFF_HIGH_SECONDS,
                ) * (2 ** (attempt - 1))
                logger.warning(
                    "Manifest update for session '%s' lost a race (attempt %s/%s); "
                    "retrying in %.2fs.",
                    session_id,
                    attempt,
                    attempts,
                    delay,
                )
                await self._sleep(delay)

        raise ManifestConflictError(
            f"Manifest update for session '{session_id}' failed after {attempts} attempts."
        )

    async def apply_stats_delta(self, session_id: str, **deltas: int) -> SessionManifestRecord:
        """Add integer deltas to the manifest stats."""

        unknown = set(deltas) - _STATS_FIELDS
        if unknown:
            raise ValueError(f"Unknown stats fields: {', '.join(sorted(unknown))}.")

        def _apply(manifest: SessionManifestRecord) -> None:
            for name, delta in deltas.items():
                setattr(manifest.stats, name, getattr(manifest.stats, name) + delta)

        return await self.update(session_id, _apply)

    async def count_stats(self, session_id: str) -> SessionStats:
        """Count task states from the task records without writing anything."""

        records = [versioned.record for versioned in await self._state_store.list_tasks(session_id)]
        return SessionStats(
            total=len(records),
            pending=sum(1 for record in records if record.state is TaskState.PENDING),
            running=sum(
                1
                for record in records
                if record.state in {TaskState.CLAIMED, TaskState.RUNNING}
            ),
            completed=sum(1 for record in records if record.state is TaskState.COMPLETED),
            failed=sum(1 for record in records if record.state is TaskState.FAILED),
        )

    async def recompute_stats(self, session_id: str) -> SessionManifestRecord:
        """Rebuild stats from task records and store them."""

        stats = await self.count_stats(session_id)

        def _replace(manifest: SessionManifestRecord) -> None:
            manifest.stats = stats

        return await self.update(session_id, _replace)

    async def extend(self, session_id: str, seconds: float) -> SessionManifestRecord:
        """Set the absolute timeout to `seconds` from now."""

        deadline = utc_now() + timedelta(seconds=seconds)

        def _extend(manifest: SessionManifestRecord) -> None:
            manifest.absolute_timeout_at = deadline

        manifest = await self.update(session_id, _extend)
        logger.info("Extended session '%s' until %s.", session_id, deadline.isoformat())
        return manifest

    async def terminate(
        self,
        session_id: str,
        delete_record: bool = False,
    ) -> SessionManifestRecord:
        """Mark the session terminated and optionally delete all of its objects.

        The terminated state is written before deleting so other writers see
        it first. Writers racing the delete can still recreate keys.
        """

        def _terminate(manifest: SessionManifestRecord) -> None:
            if manifest.state is not SessionState.TERMINATED:
                manifest.state = SessionState.TERMINATED
                manifest.terminated_at = utc_now()

        manifest = await self.update(session_id, _terminate)
        if delete_record:
            await self._state_store.delete_session(session_id)
        logger.info("Terminated session '%s' (deleted=%s).", session_id, delete_record)
        return manifest

    async def list_sessions(self) -> list[SessionManifestRecord]:
        """Return every readable manifest, newest first."""

        manifests: list[SessionManifestRecord] = []
        for session_id in await self._state_store.list_session_ids():
            try:
                current = await self._state_store.get_manifest(session_id)
            except DispatchError as exc:
                logger.warning("Skipping unreadable manifest of session '%s': %s", session_id, exc)
                continue
            if current is not None:
                manifests.append(current.record)
        manifests.sort(key=lambda manifest: manifest.created_at, reverse=True)
        return manifests


__all__ = ["ManifestMutation", "SessionManifestService"]
