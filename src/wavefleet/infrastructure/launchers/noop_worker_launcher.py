"""No-op worker launcher for externally provisioned worker pools."""

from __future__ import annotations

import logging

from wavefleet.domain.ports import LaunchRequest, WorkerLauncher

logger = logging.getLogger(__name__)


class NoopWorkerLauncher(WorkerLauncher):
    """Launcher used when workers are started outside this process.

    Work-stealing workers pick pending tasks up on their own, so admitting a
    wave only needs to record that the task is in flight.
    """

    async def launch_worker(self, request: LaunchRequest) -> str | None:
        """Skip launching."""

        logger.debug(
            "Noop worker launch for task '%s' in session '%s'.",
            request.task_id,
            request.session_id,
        )
        return None

    async def stop_workers(self, worker_refs: list[str], reason: str) -> int:
        """Nothing to stop."""

        return 0


__all__ = ["NoopWorkerLauncher"]
