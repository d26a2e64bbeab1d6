"""Ports for object storage and remote worker orchestration."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(slots=True, frozen=True)
class StoredObject:
    """Raw object body and the opaque version it was read at."""

    body: bytes
    version: str


@dataclass(slots=True, frozen=True)
class LaunchRequest:
    """Everything a launcher needs to start one worker for one task."""

    session_id: str
    task_id: str
    environment: Mapping[str, str] = field(default_factory=dict)


class ObjectStore(Protocol):
    """Eventually consistent key/value store with single-key conditional writes.

    Conditional writes return `False` when the precondition fails and raise
    `ObjectStoreError` only when the store itself fails.
    """

    async def get(self, key: str) -> StoredObject | None:
        """Return body and version, or `None` when the key does not exist."""

    async def put(self, key: str, body: bytes) -> str:
        """Write unconditionally and return the new version."""

    async def put_if_absent(self, key: str, body: bytes) -> bool:
        """Create the key only when it does not exist yet."""

    async def put_if_version(self, key: str, body: bytes, expected_version: str) -> bool:
        """Replace the key only when its version still equals `expected_version`."""

    async def delete(self, key: str) -> None:
        """Delete the key; missing keys are ignored."""

    async def list_keys(self, prefix: str) -> list[str]:
        """Return all keys starting with `prefix` in lexical order."""


@runtime_checkable
class ClosableObjectStore(Protocol):
    """Object stores holding connections that must be released."""

    async def close(self) -> None:
        """Release pooled resources."""


class WorkerLauncher(Protocol):
    """Starts and stops remote workers."""

    async def launch_worker(self, request: LaunchRequest) -> str | None:
        """Start one worker and return its reference when the backend has one."""

    async def stop_workers(self, worker_refs: list[str], reason: str) -> int:
        """Stop the given workers and return how many stop requests succeeded."""


__all__ = [
    "ClosableObjectStore",
    "LaunchRequest",
    "ObjectStore",
    "StoredObject",
    "WorkerLauncher",
]
