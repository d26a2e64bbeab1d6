"""Session-level task submission, progress and lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from wavefleet.application.services.session_manifest import (
    ManifestMutation,
    SessionManifestService,
)
from wavefleet.application.services.state_store import ObjectStateStore
from wavefleet.application.services.task_handle import TaskHandle
from wavefleet.application.services.wave_scheduler import WaveScheduler, WorkerRegistry
from wavefleet.domain.errors import ControlPlaneError, DispatchError, SessionExpiredError
from wavefleet.domain.payloads import ChunkPayload, ExpressionPayload, function_reference
from wavefleet.domain.ports import ClosableObjectStore, LaunchRequest, WorkerLauncher
from wavefleet.domain.records import (
    SessionManifestRecord,
    SessionState,
    SessionStats,
    TaskOutcome,
    TaskState,
    TaskStatusRecord,
    WaveQueueSnapshot,
    WorkerPoolConfig,
)
from wavefleet.domain.scheduling import WaveStatus
from wavefleet.infrastructure.retry import RetryPolicy

logger = logging.getLogger(__name__)

_DEFAULT_COLLECT_TIMEOUT_SECONDS = 3600.0
_DEFAULT_POLL_INTERVAL_SECONDS = 2.0
_DEFAULT_EXTEND_SECONDS = 3600.0


def new_session_id() -> str:
    return f"session-{uuid4().hex}"


def new_task_id() -> str:
    return f"task-{uuid4().hex}"


@dataclass(slots=True, frozen=True)
class SessionCleanup:
    """Summary of a session cleanup."""

    session_id: str
    stopped_workers: int
    deleted: bool


class SessionDispatcher:
    """Submit tasks to one session and drive their waves.

    The dispatcher owns the session's wave queue in this process. Progress is
    made only while some coroutine polls a handle, `collect`s, or submits.
    """

    def __init__(
        self,
        session_id: str,
        state_store: ObjectStateStore,
        manifest_service: SessionManifestService,
        worker_launcher: WorkerLauncher,
        workers_per_wave: int,
        launch_retry_policy: RetryPolicy | None = None,
        worker_environment: Mapping[str, str] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        collect_poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        if collect_poll_interval_seconds <= 0:
            raise ValueError("collect_poll_interval_seconds must be > 0.")
        self._session_id = session_id
        self._state_store = state_store
        self._manifest_service = manifest_service
        self._worker_launcher = worker_launcher
        self._launch_retry = launch_retry_policy or RetryPolicy.for_worker_orchestration()
        self._worker_environment = dict(worker_environment or {})
        self._sleep = sleep or asyncio.sleep
        self._collect_poll_interval = collect_poll_interval_seconds
        self._registry = WorkerRegistry()
        self._scheduler: WaveScheduler[TaskHandle] = WaveScheduler(
            workers_per_wave=workers_per_wave,
            launch_worker=self._launch_worker,
            resolved=self._probe_handle,
            registry=self._registry,
            on_admitted=self._record_admission,
        )
        self._handles: dict[str, TaskHandle] = {}

    @property
    def session_id(self) -> str:
        """Return the session id."""

        return self._session_id

    @property
    def scheduler(self) -> WaveScheduler[TaskHandle]:
        """Return the wave scheduler of this session."""

        return self._scheduler

    async def start(
        self,
        backend_config: WorkerPoolConfig,
        absolute_timeout_seconds: float,
    ) -> SessionManifestRecord:
        """Create the session manifest."""

        return await self._manifest_service.create(
            self._session_id,
            backend_config,
            absolute_timeout_seconds,
        )

    async def attach(self) -> SessionManifestRecord:
        """Load an existing session and rebuild the wave queue from its manifest.

        Pending tasks missing from the stored snapshot are appended in
        submission order.
        """

        manifest = await self._manifest_service.get(self._session_id)
        if manifest.state is SessionState.TERMINATED:
            raise SessionExpiredError(f"Session '{self._session_id}' was terminated.")
        if manifest.is_expired():
            raise SessionExpiredError(f"Session '{self._session_id}' expired.")

        records = {
            versioned.record.task_id: versioned.record
            for versioned in await self._state_store.list_tasks(self._session_id)
        }
        handles = {task_id: self._new_handle(task_id) for task_id in records}
        self._handles.update(handles)

        snapshot = manifest.wave_queue or WaveQueueSnapshot()
        known = set(snapshot.pending) | set(snapshot.in_flight)
        unqueued = sorted(
            (
                record
                for record in records.values()
                if record.task_id not in known and record.state is TaskState.PENDING
            ),
            key=lambda record: (record.created_at, record.task_id),
        )
        if unqueued:
            snapshot = snapshot.model_copy(
                update={"pending": [*snapshot.pending, *(record.task_id for record in unqueued)]}
            )

        for task_id, worker_ref in manifest.worker_refs.items():
            self._registry.record(task_id, worker_ref)
        self._scheduler.restore(snapshot, handles)
        logger.info(
            "Attached to session '%s' with %s tasks (%s queued, %s in flight).",
            self._session_id,
            len(records),
            len(self._scheduler.pending_task_ids()),
            len(self._scheduler.in_flight_task_ids()),
        )
        return manifest

    async def submit(
        self,
        function: str | Callable[..., Any],
        /,
        *args: Any,
        **kwargs: Any,
    ) -> TaskHandle:
        """Submit one `function(*args, **kwargs)` call."""

        task_id = new_task_id()
        payload = ExpressionPayload(
            session_id=self._session_id,
            task_id=task_id,
            function=function_reference(function),
            args=list(args),
            kwargs=kwargs,
        )
        return await self._submit(payload)

    async def submit_chunk(
        self,
        function: str | Callable[..., Any],
        items: list[Any],
        chunk_index: int = 0,
        **kwargs: Any,
    ) -> TaskHandle:
        """Submit one chunk applying `function(item, **kwargs)` to each item."""

        task_id = new_task_id()
        payload = ChunkPayload(
            session_id=self._session_id,
            task_id=task_id,
            function=function_reference(function),
            items=list(items),
            chunk_index=chunk_index,
            kwargs=kwargs,
        )
        return await self._submit(payload)

    async def resolved(self, handle: TaskHandle) -> bool:
        """Return whether the task finished, driving wave admission."""

        return await handle.resolved()

    async def result(self, handle: TaskHandle) -> TaskOutcome:
        """Return value or failure of a resolved task."""

        return await handle.result()

    def get_handle(self, task_id: str) -> TaskHandle | None:
        return self._handles.get(task_id)

    def handles(self) -> list[TaskHandle]:
        """Return handles in submission order."""

        return list(self._handles.values())

    def status(self) -> WaveStatus:
        """Return local wave progress."""

        return self._scheduler.status()

    async def session_status(self) -> SessionStats:
        """Return stats recomputed from the task records."""

        manifest = await self._manifest_service.recompute_stats(self._session_id)
        return manifest.stats

    async def manifest(self) -> SessionManifestRecord:
        return await self._manifest_service.get(self._session_id)

    async def collect(
        self,
        wait: bool = False,
        timeout_seconds: float = _DEFAULT_COLLECT_TIMEOUT_SECONDS,
        poll_interval_seconds: float | None = None,
    ) -> dict[str, TaskOutcome]:
        """Return outcomes of resolved tasks, optionally waiting for all of them.

        Without `poll_interval_seconds` the dispatcher's configured interval is used.
        """

        interval = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else self._collect_poll_interval
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        outcomes: dict[str, TaskOutcome] = {}
        while True:
            for task_id, handle in list(self._handles.items()):
                if task_id in outcomes:
                    continue
                if await handle.resolved():
                    outcomes[task_id] = await handle.result()

            if not wait or len(outcomes) == len(self._handles):
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    "Collection timeout for session '%s': %s of %s tasks resolved.",
                    self._session_id,
                    len(outcomes),
                    len(self._handles),
                )
                break
            await self._sleep(min(interval, remaining))
        return outcomes

    async def extend(self, seconds: float = _DEFAULT_EXTEND_SECONDS) -> SessionManifestRecord:
        """Move the absolute session timeout to `seconds` from now."""

        return await self._manifest_service.extend(self._session_id, seconds)

    async def cleanup(self, stop_workers: bool = True, force: bool = False) -> SessionCleanup:
        """Stop launched workers and terminate the session.

        With `force` every stored object of the session is deleted as well.
        """

        stopped = 0
        if stop_workers:
            manifest = await self._manifest_service.get(self._session_id)
            worker_refs = list(
                dict.fromkeys([*manifest.worker_refs.values(), *self._registry.worker_refs()])
            )
            try:
                stopped = await self._worker_launcher.stop_workers(
                    worker_refs,
                    reason=f"Session cleanup: {self._session_id}",
                )
            except ControlPlaneError as exc:
                logger.warning(
                    "Failed to stop workers of session '%s': %s",
                    self._session_id,
                    exc,
                )

        await self._manifest_service.terminate(self._session_id, delete_record=force)
        return SessionCleanup(session_id=self._session_id, stopped_workers=stopped, deleted=force)

    async def close(self) -> None:
        """Release object store connections."""

        store = self._state_store.object_store
        if isinstance(store, ClosableObjectStore):
            await store.close()

    async def _submit(self, payload: ExpressionPayload | ChunkPayload) -> TaskHandle:
        task_id = payload.task_id
        payload_ref = await self._state_store.put_payload(payload)
        await self._state_store.create_task(
            TaskStatusRecord(
                session_id=self._session_id,
                task_id=task_id,
                state=TaskState.PENDING,
                payload_ref=payload_ref,
            )
        )

        handle = self._new_handle(task_id)
        self._handles[task_id] = handle
        try:
            await self._scheduler.enqueue(task_id, handle)
        except ControlPlaneError as exc:
            # The task stays queued; the next poll retries the launch.
            logger.warning("Deferred launch for task '%s': %s", task_id, exc)

        snapshot = self._scheduler.snapshot()

        def _record_submission(manifest: SessionManifestRecord) -> None:
            manifest.stats.total += 1
            manifest.stats.pending += 1
            manifest.wave_queue = snapshot

        await self._best_effort_update(_record_submission, f"submission of '{task_id}'")
        return handle

    def _new_handle(self, task_id: str) -> TaskHandle:
        return TaskHandle(
            session_id=self._session_id,
            task_id=task_id,
            state_store=self._state_store,
            scheduler=self._scheduler,
            on_terminal=self._record_terminal,
        )

    async def _launch_worker(self, task_id: str) -> str | None:
        request = LaunchRequest(
            session_id=self._session_id,
            task_id=task_id,
            environment=self._worker_environment,
        )
        return await self._launch_retry.call(
            lambda: self._worker_launcher.launch_worker(request),
            operation_name=f"launch worker for {task_id}",
        )

    async def _probe_handle(self, handle: TaskHandle) -> bool:
        return await handle.check_terminal()

    async def _record_admission(self, task_ids: list[str]) -> None:
        admitted = len(task_ids)
        worker_refs = {
            task_id: worker_ref
            for task_id in task_ids
            if (worker_ref := self._registry.get(task_id)) is not None
        }
        snapshot = self._scheduler.snapshot()

        def _admit(manifest: SessionManifestRecord) -> None:
            manifest.stats.pending -= admitted
            manifest.stats.running += admitted
            manifest.worker_refs.update(worker_refs)
            manifest.wave_queue = snapshot

        await self._best_effort_update(_admit, f"admission of {admitted} tasks")

    async def _record_terminal(self, handle: TaskHandle, state: TaskState) -> None:
        # Only tasks admitted by a wave were counted as running.
        if not self._scheduler.is_in_flight(handle.task_id):
            return

        def _finish(manifest: SessionManifestRecord) -> None:
            manifest.stats.running -= 1
            if state is TaskState.COMPLETED:
                manifest.stats.completed += 1
            else:
                manifest.stats.failed += 1

        await self._best_effort_update(_finish, f"completion of '{handle.task_id}'")

    async def _best_effort_update(self, mutate: ManifestMutation, description: str) -> None:
        try:
            await self._manifest_service.update(self._session_id, mutate)
        except DispatchError as exc:
            logger.warning(
                "Skipped manifest stats for %s in session '%s': %s",
                description,
                self._session_id,
                exc,
            )


__all__ = ["SessionCleanup", "SessionDispatcher", "new_session_id", "new_task_id"]
