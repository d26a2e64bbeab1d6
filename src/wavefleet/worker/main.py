"""Worker process entrypoint."""

import asyncio
import logging

from wavefleet.bootstrap import build_state_store
from wavefleet.config import WorkerSettings
from wavefleet.domain.ports import ClosableObjectStore
from wavefleet.domain.records import TaskState
from wavefleet.worker.runtime import WorkerRunResult, WorkerRuntime

logger = logging.getLogger(__name__)


async def run_worker(settings: WorkerSettings) -> list[WorkerRunResult]:
    """Run the assigned task, then keep stealing work when enabled."""

    state_store = build_state_store(settings)
    runtime = WorkerRuntime(
        session_id=settings.session_id,
        state_store=state_store,
        worker_id=settings.worker_id,
        idle_timeout_seconds=settings.idle_timeout_seconds,
        initial_poll_seconds=settings.initial_poll_interval_seconds,
        max_poll_seconds=settings.max_poll_interval_seconds,
    )
    try:
        if settings.work_stealing:
            return await runtime.run_work_stealing(settings.task_id)
        assert settings.task_id is not None
        return [await runtime.run_assigned(settings.task_id)]
    finally:
        store = state_store.object_store
        if isinstance(store, ClosableObjectStore):
            await store.close()


def exit_code(results: list[WorkerRunResult]) -> int:
    """Return 1 when any task this worker ran failed."""

    return 1 if any(result.state is TaskState.FAILED for result in results) else 0


def run() -> None:
    """Run one worker process configured from the environment."""

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = WorkerSettings()
    logger.info(
        "Starting worker for session '%s' (task=%s, work_stealing=%s).",
        settings.session_id,
        settings.task_id,
        settings.work_stealing,
    )
    raise SystemExit(exit_code(asyncio.run(run_worker(settings))))


__all__ = ["exit_code", "run", "run_worker"]
