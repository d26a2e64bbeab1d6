"""In-memory object store for local development and tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from wavefleet.domain.ports import ObjectStore, StoredObject


@dataclass(slots=True)
class _InMemoryObject:
    body: bytes
    version: int


class InMemoryObjectStore(ObjectStore):
    """Dictionary-backed store with monotonically increasing versions."""

    def __init__(self) -> None:
        self._objects: dict[str, _InMemoryObject] = {}
        self._lock = asyncio.Lock()
        self._next_version = 1

    async def get(self, key: str) -> StoredObject | None:
        """Return body and version for `key`."""

        async with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                return None
            return StoredObject(body=stored.body, version=str(stored.version))

    async def put(self, key: str, body: bytes) -> str:
        """Write unconditionally."""

        async with self._lock:
            return self._write(key, body)

    async def put_if_absent(self, key: str, body: bytes) -> bool:
        """Create `key` unless it exists."""

        async with self._lock:
            if key in self._objects:
                return False
            self._write(key, body)
            return True

    async def put_if_version(self, key: str, body: bytes, expected_version: str) -> bool:
        """Compare-and-swap on the stored version."""

        async with self._lock:
            stored = self._objects.get(key)
            if stored is None or str(stored.version) != expected_version:
                return False
            self._write(key, body)
            return True

    async def delete(self, key: str) -> None:
        """Remove `key` when present."""

        async with self._lock:
            self._objects.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        """Return keys under `prefix`."""

        async with self._lock:
            return sorted(key for key in self._objects if key.startswith(prefix))

    def _write(self, key: str, body: bytes) -> str:
        version = self._next_version
        self._next_version += 1
        self._objects[key] = _InMemoryObject(body=bytes(body), version=version)
        return str(version)


__all__ = ["InMemoryObjectStore"]
