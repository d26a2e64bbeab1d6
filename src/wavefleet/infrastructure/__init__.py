"""Infrastructure layer public API."""

from wavefleet.infrastructure.launchers import EcsWorkerLauncher, NoopWorkerLauncher
from wavefleet.infrastructure.object_stores import (
    InMemoryObjectStore,
    PostgresObjectStore,
    S3ObjectStore,
)
from wavefleet.infrastructure.retry import RetryCategory, RetryConfig, RetryPolicy

__all__ = [
    "EcsWorkerLauncher",
    "InMemoryObjectStore",
    "NoopWorkerLauncher",
    "PostgresObjectStore",
    "RetryCategory",
    "RetryConfig",
    "RetryPolicy",
    "S3ObjectStore",
]
