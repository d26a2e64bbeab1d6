"""Application bootstrap/wiring."""

import logging

from wavefleet.application.services import (
    ObjectStateStore,
    SessionDispatcher,
    SessionManifestService,
    SessionMonitorService,
    new_session_id,
)
from wavefleet.config import (
    ObjectStoreBackend,
    Settings,
    StorageSettings,
    WorkerLauncherBackend,
)
from wavefleet.domain.ports import ObjectStore, WorkerLauncher
from wavefleet.domain.records import WorkerPoolConfig
from wavefleet.infrastructure.launchers import EcsWorkerLauncher, NoopWorkerLauncher
from wavefleet.infrastructure.object_stores import (
    InMemoryObjectStore,
    PostgresObjectStore,
    S3ObjectStore,
)
from wavefleet.infrastructure.retry import RetryConfig, RetryPolicy

logger = logging.getLogger(__name__)


def build_object_store(settings: StorageSettings) -> ObjectStore:
    """Select the object store adapter."""

    if settings.object_store_backend == ObjectStoreBackend.S3:
        if settings.s3_bucket is None:
            raise ValueError(
                "WAVEFLEET_S3_BUCKET is required when WAVEFLEET_OBJECT_STORE_BACKEND=s3."
            )
        return S3ObjectStore(bucket=settings.s3_bucket, region=settings.aws_region)
    if settings.object_store_backend == ObjectStoreBackend.POSTGRES:
        if settings.postgres_dsn is None:
            raise ValueError(
                "WAVEFLEET_POSTGRES_DSN is required when WAVEFLEET_OBJECT_STORE_BACKEND=postgres."
            )
        return PostgresObjectStore(
            dsn=settings.postgres_dsn,
            min_pool_size=settings.postgres_pool_min_size,
            max_pool_size=settings.postgres_pool_max_size,
        )
    return InMemoryObjectStore()


def build_retry_config(settings: StorageSettings) -> RetryConfig:
    return RetryConfig(
        max_attempts=settings.max_retry_attempts,
        base_delay_seconds=settings.retry_base_delay_seconds,
        max_delay_seconds=settings.retry_max_delay_seconds,
    )


def build_state_store(
    settings: StorageSettings,
    object_store: ObjectStore | None = None,
) -> ObjectStateStore:
    """Wrap the configured object store with the object-store retry policy."""

    return ObjectStateStore(
        object_store or build_object_store(settings),
        RetryPolicy.for_object_store(build_retry_config(settings)),
    )


def build_manifest_service(
    settings: Settings,
    state_store: ObjectStateStore | None = None,
) -> SessionManifestService:
    return SessionManifestService(
        state_store or build_state_store(settings),
        max_retries=settings.manifest_max_retries,
    )


def build_session_monitor(settings: Settings) -> SessionMonitorService:
    """Compose the read-only monitoring graph."""

    return SessionMonitorService(build_manifest_service(settings))


def _build_worker_launcher(settings: Settings) -> WorkerLauncher:
    if settings.worker_launcher_backend == WorkerLauncherBackend.ECS:
        if settings.ecs_cluster is None or settings.ecs_task_definition is None:
            raise ValueError(
                "WAVEFLEET_ECS_CLUSTER and WAVEFLEET_ECS_TASK_DEFINITION are required when "
                "WAVEFLEET_WORKER_LAUNCHER_BACKEND=ecs."
            )
        if settings.object_store_backend == ObjectStoreBackend.POSTGRES:
            logger.warning(
                "Workers of task definition '%s' must define WAVEFLEET_POSTGRES_DSN; "
                "it is not forwarded in container overrides.",
                settings.ecs_task_definition,
            )
        return EcsWorkerLauncher(
            cluster=settings.ecs_cluster,
            task_definition=settings.ecs_task_definition,
            container_name=settings.ecs_container_name,
            region=settings.aws_region,
            launch_type=settings.ecs_launch_type.value,
            capacity_provider=settings.ecs_capacity_provider,
            subnets=settings.ecs_subnets,
            security_groups=settings.ecs_security_groups,
            assign_public_ip=settings.ecs_assign_public_ip,
        )
    return NoopWorkerLauncher()


def _worker_environment(settings: Settings) -> dict[str, str]:
    """Storage coordinates handed to every launched worker."""

    environment = {
        "WAVEFLEET_OBJECT_STORE_BACKEND": settings.object_store_backend.value,
        "WAVEFLEET_AWS_REGION": settings.aws_region,
        "WAVEFLEET_MAX_RETRY_ATTEMPTS": str(settings.max_retry_attempts),
    }
    if settings.s3_bucket is not None:
        environment["WAVEFLEET_S3_BUCKET"] = settings.s3_bucket
    return environment


def worker_pool_config(settings: Settings) -> WorkerPoolConfig:
    """Snapshot of the backend stored in new session manifests."""

    ecs = settings.worker_launcher_backend == WorkerLauncherBackend.ECS
    return WorkerPoolConfig(
        workers=settings.workers,
        workers_per_wave=settings.workers_per_wave,
        cpu=settings.worker_cpu,
        memory=settings.worker_memory,
        region=settings.aws_region,
        bucket=settings.s3_bucket,
        cluster=settings.ecs_cluster if ecs else None,
        task_definition=settings.ecs_task_definition if ecs else None,
        launch_type=settings.ecs_launch_type.value if ecs else None,
        container_name=settings.ecs_container_name if ecs else None,
        object_store_backend=settings.object_store_backend.value,
        launcher_backend=settings.worker_launcher_backend.value,
    )


def build_session_dispatcher(
    settings: Settings,
    session_id: str | None = None,
    object_store: ObjectStore | None = None,
    worker_launcher: WorkerLauncher | None = None,
    workers_per_wave: int | None = None,
) -> SessionDispatcher:
    """Compose the dispatcher graph for one session without touching the store."""

    state_store = build_state_store(settings, object_store)
    return SessionDispatcher(
        session_id=session_id or new_session_id(),
        state_store=state_store,
        manifest_service=build_manifest_service(settings, state_store),
        worker_launcher=worker_launcher or _build_worker_launcher(settings),
        workers_per_wave=workers_per_wave or settings.workers_per_wave,
        launch_retry_policy=RetryPolicy.for_worker_orchestration(build_retry_config(settings)),
        worker_environment=_worker_environment(settings),
        collect_poll_interval_seconds=settings.collect_poll_interval_seconds,
    )


async def create_session(
    settings: Settings,
    session_id: str | None = None,
    object_store: ObjectStore | None = None,
    worker_launcher: WorkerLauncher | None = None,
) -> SessionDispatcher:
    """Start a new session and return its dispatcher."""

    plan = settings.wave_plan
    if plan.quota_limited:
        logger.warning(
            "vCPU quota %s limits %s workers to %s per wave (%s waves).",
            settings.vcpu_quota,
            plan.workers,
            plan.workers_per_wave,
            plan.num_waves,
        )
    dispatcher = build_session_dispatcher(
        settings,
        session_id=session_id,
        object_store=object_store,
        worker_launcher=worker_launcher,
    )
    await dispatcher.start(
        worker_pool_config(settings),
        settings.session_absolute_timeout_seconds,
    )
    return dispatcher


async def attach_session(
    settings: Settings,
    session_id: str,
    object_store: ObjectStore | None = None,
    worker_launcher: WorkerLauncher | None = None,
) -> SessionDispatcher:
    """Reattach to an existing session using the wave size it was started with."""

    state_store = build_state_store(settings, object_store)
    manifest = await build_manifest_service(settings, state_store).get(session_id)
    dispatcher = build_session_dispatcher(
        settings,
        session_id=session_id,
        object_store=state_store.object_store,
        worker_launcher=worker_launcher,
        workers_per_wave=manifest.backend_config.workers_per_wave,
    )
    await dispatcher.attach()
    return dispatcher


__all__ = [
    "attach_session",
    "build_manifest_service",
    "build_object_store",
    "build_retry_config",
    "build_session_monitor",
    "build_session_dispatcher",
    "build_state_store",
    "create_session",
    "worker_pool_config",
]
