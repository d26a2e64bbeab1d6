"""Worker launcher implementations."""

from wavefleet.infrastructure.launchers.ecs_worker_launcher import EcsClient, EcsWorkerLauncher
from wavefleet.infrastructure.launchers.noop_worker_launcher import NoopWorkerLauncher

__all__ = ["EcsClient", "EcsWorkerLauncher", "NoopWorkerLauncher"]
