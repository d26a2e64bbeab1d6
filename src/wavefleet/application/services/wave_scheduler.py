"""Wave-based admission of tasks to a quota-bound worker pool."""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from wavefleet.domain.records import WaveQueueSnapshot
from wavefleet.domain.scheduling import WaveStatus

logger = logging.getLogger(__name__)

HandleT = TypeVar("HandleT")

LaunchWorker = Callable[[str], Awaitable[str | None]]
AdmissionListener = Callable[[list[str]], Awaitable[None]]


@dataclass(slots=True)
class WaveQueue(Generic[HandleT]):
    """Caller-side queue state.

    `pending` and `wave_futures` never share a task id, and `wave_futures`
    never holds more than `workers_per_wave` entries.
    """

    pending: deque[str] = field(default_factory=deque)
    wave_futures: dict[str, HandleT] = field(default_factory=dict)
    completed: int = 0
    current_wave: int = 0


class WorkerRegistry:
    """Worker references of launched tasks, kept for cleanup."""

    def __init__(self, refs: Mapping[str, str] | None = None) -> None:
        self._refs: dict[str, str] = dict(refs or {})

    def record(self, task_id: str, worker_ref: str) -> None:
        self._refs[task_id] = worker_ref

    def get(self, task_id: str) -> str | None:
        return self._refs.get(task_id)

    def worker_refs(self) -> list[str]:
        """Return distinct worker references in launch order."""

        return list(dict.fromkeys(self._refs.values()))

    def as_dict(self) -> dict[str, str]:
        return dict(self._refs)

    def __len__(self) -> int:
        return len(self._refs)


class WaveScheduler(Generic[HandleT]):
    """Release tasks to workers in waves of at most `workers_per_wave`.

    - Admission is FIFO over submission order.
    - A new wave is admitted only after every task of the previous wave
      resolved (strict drain-before-admit).
    - There is no background loop; callers drive progress by calling
      `admit_ready_wave`, usually through a handle poll.
    """

    def __init__(
        self,
        workers_per_wave: int,
        launch_worker: LaunchWorker,
        resolved: Callable[[HandleT], Awaitable[bool]],
        registry: WorkerRegistry | None = None,
        on_admitted: AdmissionListener | None = None,
    ) -> None:
        if workers_per_wave < 1:
            raise ValueError("workers_per_wave must be >= 1.")
        self._workers_per_wave = workers_per_wave
        self._launch_worker = launch_worker
        self._resolved = resolved
        self._registry = registry if registry is not None else WorkerRegistry()
        self._on_admitted = on_admitted
        self._queue: WaveQueue[HandleT] = WaveQueue()
        self._pending_handles: dict[str, HandleT] = {}
        self._admission_lock = asyncio.Lock()

    @property
    def workers_per_wave(self) -> int:
        """Return the wave size ceiling."""

        return self._workers_per_wave

    @property
    def registry(self) -> WorkerRegistry:
        """Return the worker registry of launched tasks."""

        return self._registry

    def pending_task_ids(self) -> list[str]:
        """Return backlog task ids in admission order."""

        return list(self._queue.pending)

    def in_flight_task_ids(self) -> list[str]:
        """Return task ids of the current wave."""

        return list(self._queue.wave_futures)

    def is_pending(self, task_id: str) -> bool:
        return task_id in self._pending_handles

    def is_in_flight(self, task_id: str) -> bool:
        return task_id in self._queue.wave_futures

    def tracks(self, task_id: str) -> bool:
        """Return whether the task is still queued or in flight."""

        return self.is_pending(task_id) or self.is_in_flight(task_id)

    async def enqueue(self, task_id: str, handle: HandleT) -> WaveStatus:
        """Append a task to the backlog and try to admit a wave."""

        if self.tracks(task_id):
            raise ValueError(f"Task '{task_id}' is already queued.")
        self._queue.pending.append(task_id)
        self._pending_handles[task_id] = handle
        return await self.admit_ready_wave()

    async def admit_ready_wave(self) -> WaveStatus:
        """Reap resolved tasks of the current wave and admit the next one when drained.

        If a launch fails after its retries, the tasks not launched yet go
        back to the front of the backlog in their original order and the
        error propagates.
        """

        async with self._admission_lock:
            await self._reap_resolved()
            if self._queue.wave_futures or not self._queue.pending:
                return self.status()

            batch_size = min(self._workers_per_wave, len(self._queue.pending))
            batch = [self._queue.pending.popleft() for _ in range(batch_size)]
            launched: list[str] = []
            try:
                for task_id in batch:
                    worker_ref = await self._launch_worker(task_id)
                    self._queue.wave_futures[task_id] = self._pending_handles.pop(task_id)
                    if worker_ref:
                        self._registry.record(task_id, worker_ref)
                    launched.append(task_id)
            except Exception:
                self._queue.pending.extendleft(reversed(batch[len(launched) :]))
                logger.warning(
                    "Wave launch stopped after %s of %s workers; %s tasks requeued.",
                    len(launched),
                    len(batch),
                    len(batch) - len(launched),
                )
                if launched:
                    await self._finish_wave(launched)
                raise

            await self._finish_wave(launched)
            return self.status()

    def status(self) -> WaveStatus:
        """Return wave progress; `total_waves` projects the remaining backlog."""

        pending = len(self._queue.pending)
        return WaveStatus(
            current_wave=self._queue.current_wave,
            pending=pending,
            running=len(self._queue.wave_futures),
            completed=self._queue.completed,
            total_waves=self._queue.current_wave + math.ceil(pending / self._workers_per_wave),
        )

    def snapshot(self) -> WaveQueueSnapshot:
        """Serialize queue state for the session manifest."""

        return WaveQueueSnapshot(
            pending=list(self._queue.pending),
            in_flight=list(self._queue.wave_futures),
            completed=self._queue.completed,
            current_wave=self._queue.current_wave,
        )

    def restore(self, snapshot: WaveQueueSnapshot, handles: Mapping[str, HandleT]) -> None:
        """Rebuild queue state from a snapshot; tasks without a handle are dropped."""

        if self._queue.pending or self._queue.wave_futures:
            raise RuntimeError("Cannot restore into a scheduler that already tracks tasks.")

        for task_id in snapshot.pending:
            handle = handles.get(task_id)
            if handle is None:
                logger.warning("Dropping queued task '%s' without a task record.", task_id)
                continue
            self._queue.pending.append(task_id)
            self._pending_handles[task_id] = handle
        for task_id in snapshot.in_flight:
            handle = handles.get(task_id)
            if handle is None:
                logger.warning("Dropping in-flight task '%s' without a task record.", task_id)
                continue
            self._queue.wave_futures[task_id] = handle
        self._queue.completed = snapshot.completed
        self._queue.current_wave = snapshot.current_wave

    async def _reap_resolved(self) -> None:
        for task_id, handle in list(self._queue.wave_futures.items()):
            if await self._resolved(handle):
                del self._queue.wave_futures[task_id]
                self._queue.completed += 1

    async def _finish_wave(self, launched: list[str]) -> None:
        self._queue.current_wave += 1
        logger.info(
            "Admitted wave %s with %s tasks; %s tasks waiting.",
            self._queue.current_wave,
            len(launched),
            len(self._queue.pending),
        )
        if self._on_admitted is not None:
            await self._on_admitted(list(launched))


__all__ = ["LaunchWorker", "WaveQueue", "WaveScheduler", "WorkerRegistry"]
