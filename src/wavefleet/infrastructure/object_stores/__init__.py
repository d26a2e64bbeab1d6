"""Object store implementations."""

from wavefleet.infrastructure.object_stores.in_memory_object_store import InMemoryObjectStore
from wavefleet.infrastructure.object_stores.postgres_object_store import PostgresObjectStore
from wavefleet.infrastructure.object_stores.s3_object_store import S3Client, S3ObjectStore

__all__ = ["InMemoryObjectStore", "PostgresObjectStore", "S3Client", "S3ObjectStore"]
