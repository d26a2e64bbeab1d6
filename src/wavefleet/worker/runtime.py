"""Worker-side task lifecycle: claim, execute, report."""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import uuid4

from wavefleet.application.services.claims import ClaimProtocol
from wavefleet.application.services.state_store import ObjectStateStore
from wavefleet.domain.errors import DispatchError, RecordValidationError
from wavefleet.domain.records import TaskResultRecord, TaskState
from wavefleet.worker.executor import execute_payload

logger = logging.getLogger(__name__)

_DEFAULT_IDLE_TIMEOUT_SECONDS = 300.0
_DEFAULT_INITIAL_POLL_SECONDS = 1.0
_DEFAULT_MAX_POLL_SECONDS = 30.0


@dataclass(slots=True, frozen=True)
class WorkerRunResult:
    """What happened to one task this worker tried to run."""

    task_id: str
    claimed: bool
    state: TaskState | None = None


class WorkerRuntime:
    """Runs tasks of one session under the single-winner claim protocol.

    A worker that loses the claim for its assigned task exits without
    executing anything. Execution errors become `failed` task records with an
    error result object; they are never raised.
    """

    def __init__(
        self,
        session_id: str,
        state_store: ObjectStateStore,
        worker_id: str | None = None,
        idle_timeout_seconds: float = _DEFAULT_IDLE_TIMEOUT_SECONDS,
        initial_poll_seconds: float = _DEFAULT_INITIAL_POLL_SECONDS,
        max_poll_seconds: float = _DEFAULT_MAX_POLL_SECONDS,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._session_id = session_id
        self._state_store = state_store
        self._claims = ClaimProtocol(state_store)
        self._worker_id = worker_id or f"worker-{uuid4().hex[:12]}"
        self._idle_timeout_seconds = idle_timeout_seconds
        self._initial_poll_seconds = initial_poll_seconds
        self._max_poll_seconds = max(max_poll_seconds, initial_poll_seconds)
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

    @property
    def worker_id(self) -> str:
        """Return the identity written into claims."""

        return self._worker_id

    async def run_assigned(self, task_id: str) -> WorkerRunResult:
        """Claim and run the task this worker was launched for."""

        if not await self._claims.atomic_claim_task(self._session_id, task_id, self._worker_id):
            logger.info("Task '%s' was claimed by another worker; exiting.", task_id)
            return WorkerRunResult(task_id=task_id, claimed=False)
        return await self._run_claimed(task_id)

    async def run_work_stealing(self, first_task_id: str | None = None) -> list[WorkerRunResult]:
        """Keep claiming pending tasks until none shows up for the idle timeout.

        Polls back off exponentially between empty scans and reset after
        every claimed task.
        """

        results: list[WorkerRunResult] = []
        if first_task_id is not None:
            results.append(await self.run_assigned(first_task_id))

        delay = self._initial_poll_seconds
        idle_since = self._clock()
        while True:
            task_id = await self._claims.claim_next_pending(self._session_id, self._worker_id)
            if task_id is not None:
                results.append(await self._run_claimed(task_id))
                delay = self._initial_poll_seconds
                idle_since = self._clock()
                continue

            if self._clock() - idle_since >= self._idle_timeout_seconds:
                logger.info(
                    "Worker '%s' idle for %.0fs; stopping after %s tasks.",
                    self._worker_id,
                    self._idle_timeout_seconds,
                    len(results),
                )
                return results

            await self._sleep(delay)
            delay = min(delay * 2, self._max_poll_seconds)

    async def _run_claimed(self, task_id: str) -> WorkerRunResult:
        await self._claims.mark_running(self._session_id, task_id, self._worker_id)
        result = await self._execute(task_id)

        try:
            result_ref = await self._state_store.put_result(task_id, result)
        except DispatchError as exc:
            logger.exception("Failed to upload result of task '%s'.", task_id)
            await self._claims.mark_failed(
                self._session_id,
                task_id,
                self._worker_id,
                error=f"Result upload failed: {exc}",
            )
            raise

        if result.error:
            await self._claims.mark_failed(
                self._session_id,
                task_id,
                self._worker_id,
                error=result.message or "Task failed",
                result_ref=result_ref,
            )
            return WorkerRunResult(task_id=task_id, claimed=True, state=TaskState.FAILED)

        await self._claims.mark_completed(
            self._session_id,
            task_id,
            self._worker_id,
            result_ref=result_ref,
        )
        logger.info("Task '%s' completed.", task_id)
        return WorkerRunResult(task_id=task_id, claimed=True, state=TaskState.COMPLETED)

    async def _execute(self, task_id: str) -> TaskResultRecord:
        try:
            payload = await self._state_store.get_payload(task_id)
            if payload is None:
                raise RecordValidationError(f"Payload of task '{task_id}' is missing.")
            result = TaskResultRecord.success(await execute_payload(payload))
            # Surface unserializable values as task failures.
            result.model_dump_json()
        except Exception as exc:
            logger.exception("Task '%s' failed.", task_id)
            return TaskResultRecord.failure(
                f"{type(exc).__name__}: {exc}",
                traceback.format_exc(),
            )
        return result


__all__ = ["WorkerRunResult", "WorkerRuntime"]
