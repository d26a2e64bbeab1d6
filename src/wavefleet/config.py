"""Application settings."""

from enum import StrEnum

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from wavefleet.domain.scheduling import WavePlan, plan_waves


class ObjectStoreBackend(StrEnum):
    """Available object store adapters for session state."""

    IN_MEMORY = "in_memory"
    S3 = "s3"
    POSTGRES = "postgres"


class WorkerLauncherBackend(StrEnum):
    """Available worker launchers."""

    NOOP = "noop"
    ECS = "ecs"


class LaunchType(StrEnum):
    """ECS launch types."""

    FARGATE = "FARGATE"
    EC2 = "EC2"


class StorageSettings(BaseSettings):
    """Object store and retry settings shared by coordinators and workers."""

    aws_region: str = "us-east-1"
    object_store_backend: ObjectStoreBackend = ObjectStoreBackend.IN_MEMORY
    s3_bucket: str | None = None
    postgres_dsn: str | None = None
    postgres_pool_min_size: int = 1
    postgres_pool_max_size: int = 10
    max_retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 60.0

    @model_validator(mode="after")
    def validate_storage_settings(self) -> "StorageSettings":
        """Ensure backend-specific settings are valid."""

        if self.object_store_backend == ObjectStoreBackend.S3 and not self.s3_bucket:
            raise ValueError(
                "WAVEFLEET_S3_BUCKET is required when WAVEFLEET_OBJECT_STORE_BACKEND=s3."
            )
        if self.object_store_backend == ObjectStoreBackend.POSTGRES and not self.postgres_dsn:
            raise ValueError(
                "WAVEFLEET_POSTGRES_DSN is required when WAVEFLEET_OBJECT_STORE_BACKEND=postgres."
            )
        if self.postgres_pool_min_size < 1:
            raise ValueError("WAVEFLEET_POSTGRES_POOL_MIN_SIZE must be >= 1.")
        if self.postgres_pool_max_size < self.postgres_pool_min_size:
            raise ValueError(
                "WAVEFLEET_POSTGRES_POOL_MAX_SIZE must be >= WAVEFLEET_POSTGRES_POOL_MIN_SIZE."
            )
        if self.max_retry_attempts < 1:
            raise ValueError("WAVEFLEET_MAX_RETRY_ATTEMPTS must be >= 1.")
        if self.retry_base_delay_seconds < 0:
            raise ValueError("WAVEFLEET_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                "WAVEFLEET_RETRY_MAX_DELAY_SECONDS must be >= "
                "WAVEFLEET_RETRY_BASE_DELAY_SECONDS."
            )
        return self

    model_config = SettingsConfigDict(env_prefix="WAVEFLEET_", extra="ignore")


class Settings(StorageSettings):
    """Coordinator settings loaded from environment variables.

    Launched workers receive the object store backend, bucket, region and
    retry budget as container overrides. `WAVEFLEET_POSTGRES_DSN` carries
    credentials and is never forwarded: with the ecs launcher and the postgres
    backend the worker task definition must provide it, usually as an ECS secret.
    """

    app_name: str = "Wavefleet"
    api_prefix: str = ""
    host: str = "0.0.0.0"
    port: int = 8080
    worker_launcher_backend: WorkerLauncherBackend = WorkerLauncherBackend.NOOP
    ecs_cluster: str | None = None
    ecs_task_definition: str | None = None
    ecs_container_name: str = "wavefleet-worker"
    ecs_launch_type: LaunchType = LaunchType.FARGATE
    ecs_capacity_provider: str | None = None
    ecs_subnets: list[str] = Field(default_factory=list)
    ecs_security_groups: list[str] = Field(default_factory=list)
    ecs_assign_public_ip: bool = False
    workers: int = 10
    worker_cpu: float = 4.0
    worker_memory: str = "8GB"
    vcpu_quota: int | None = None
    manifest_max_retries: int = 3
    session_absolute_timeout_seconds: float = 86400.0
    collect_poll_interval_seconds: float = 2.0

    @field_validator("ecs_subnets", "ecs_security_groups", mode="before")
    @classmethod
    def parse_csv_list(cls, value: object) -> object:
        """Support comma-separated env var values in addition to JSON arrays."""

        if not isinstance(value, str):
            return value
        return [item.strip() for item in value.split(",") if item.strip()]

    @model_validator(mode="after")
    def validate_dispatch_settings(self) -> "Settings":
        """Ensure launcher and wave settings are valid."""

        if self.worker_launcher_backend == WorkerLauncherBackend.ECS:
            if not self.ecs_cluster or not self.ecs_task_definition:
                raise ValueError(
                    "WAVEFLEET_ECS_CLUSTER and WAVEFLEET_ECS_TASK_DEFINITION are required when "
                    "WAVEFLEET_WORKER_LAUNCHER_BACKEND=ecs."
                )
            if self.object_store_backend == ObjectStoreBackend.IN_MEMORY:
                raise ValueError(
                    "WAVEFLEET_OBJECT_STORE_BACKEND must be shared with remote workers when "
                    "WAVEFLEET_WORKER_LAUNCHER_BACKEND=ecs."
                )
            if self.ecs_launch_type == LaunchType.FARGATE and not self.ecs_subnets:
                raise ValueError(
                    "WAVEFLEET_ECS_SUBNETS is required when WAVEFLEET_ECS_LAUNCH_TYPE=FARGATE."
                )
        if self.workers < 1:
            raise ValueError("WAVEFLEET_WORKERS must be >= 1.")
        if self.worker_cpu <= 0:
            raise ValueError("WAVEFLEET_WORKER_CPU must be > 0.")
        if self.vcpu_quota is not None and self.vcpu_quota < self.worker_cpu:
            raise ValueError("WAVEFLEET_VCPU_QUOTA must be >= WAVEFLEET_WORKER_CPU.")
        if self.manifest_max_retries < 0:
            raise ValueError("WAVEFLEET_MANIFEST_MAX_RETRIES must be >= 0.")
        if self.session_absolute_timeout_seconds <= 0:
            raise ValueError("WAVEFLEET_SESSION_ABSOLUTE_TIMEOUT_SECONDS must be > 0.")
        if self.collect_poll_interval_seconds <= 0:
            raise ValueError("WAVEFLEET_COLLECT_POLL_INTERVAL_SECONDS must be > 0.")
        return self

    @property
    def wave_plan(self) -> WavePlan:
        """Return the wave split implied by the worker count and vCPU quota."""

        return plan_waves(self.workers, self.worker_cpu, self.vcpu_quota)

    @property
    def workers_per_wave(self) -> int:
        """Return how many workers may run concurrently."""

        return self.wave_plan.workers_per_wave


class WorkerSettings(StorageSettings):
    """Settings of one remote worker process.

    `TASK_ID` and `AWS_DEFAULT_REGION` are read without the `WAVEFLEET_` prefix
    so the launcher's container overrides map directly onto them.
    """

    task_id: str | None = Field(default=None, validation_alias=AliasChoices("TASK_ID", "task_id"))
    session_id: str = Field(
        validation_alias=AliasChoices("WAVEFLEET_SESSION_ID", "session_id"),
    )
    aws_region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("WAVEFLEET_AWS_REGION", "AWS_DEFAULT_REGION", "aws_region"),
    )
    worker_id: str | None = None
    work_stealing: bool = False
    idle_timeout_seconds: float = 300.0
    initial_poll_interval_seconds: float = 1.0
    max_poll_interval_seconds: float = 30.0

    @model_validator(mode="after")
    def validate_worker_settings(self) -> "WorkerSettings":
        """Ensure the worker knows what to run."""

        if self.task_id is None and not self.work_stealing:
            raise ValueError("TASK_ID is required unless WAVEFLEET_WORK_STEALING=true.")
        if self.object_store_backend == ObjectStoreBackend.IN_MEMORY:
            raise ValueError("WAVEFLEET_OBJECT_STORE_BACKEND must be s3 or postgres for workers.")
        if self.idle_timeout_seconds <= 0:
            raise ValueError("WAVEFLEET_IDLE_TIMEOUT_SECONDS must be > 0.")
        if self.initial_poll_interval_seconds <= 0:
            raise ValueError("WAVEFLEET_INITIAL_POLL_INTERVAL_SECONDS must be > 0.")
        if self.max_poll_interval_seconds < self.initial_poll_interval_seconds:
            raise ValueError(
                "WAVEFLEET_MAX_POLL_INTERVAL_SECONDS must be >= "
                "WAVEFLEET_INITIAL_POLL_INTERVAL_SECONDS."
            )
        return self


__all__ = [
    "LaunchType",
    "ObjectStoreBackend",
    "Settings",
    "StorageSettings",
    "WorkerLauncherBackend",
    "WorkerSettings",
]
