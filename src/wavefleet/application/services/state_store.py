"""Typed access to task, manifest, payload and result objects."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from wavefleet.domain.errors import RecordValidationError, SessionExistsError
from wavefleet.domain.payloads import (
    ChunkPayload,
    ExpressionPayload,
    decode_task_payload,
    encode_task_payload,
)
from wavefleet.domain.ports import ObjectStore, StoredObject
from wavefleet.domain.records import (
    SessionManifestRecord,
    TaskResultRecord,
    TaskStatusRecord,
    Versioned,
)
from wavefleet.infrastructure.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

SESSIONS_PREFIX = "sessions/"
_MANIFEST_SUFFIX = "/manifest"


def manifest_key(session_id: str) -> str:
    return f"{SESSIONS_PREFIX}{session_id}{_MANIFEST_SUFFIX}"


def task_record_prefix(session_id: str) -> str:
    return f"{SESSIONS_PREFIX}{session_id}/tasks/"


def task_record_key(session_id: str, task_id: str) -> str:
    return f"{task_record_prefix(session_id)}{task_id}"


def payload_key(task_id: str) -> str:
    return f"tasks/{task_id}"


def result_key(task_id: str) -> str:
    return f"results/{task_id}"


class ObjectStateStore:
    """Record-level view of the object store.

    Every raw store call runs through the object-store retry policy. Lost
    conditional writes come back as `False` and are never retried here; the
    caller must re-read before trying again.
    """

    def __init__(self, object_store: ObjectStore, retry_policy: RetryPolicy | None = None) -> None:
        self._store = object_store
        self._retry = retry_policy or RetryPolicy.for_object_store()

    @property
    def object_store(self) -> ObjectStore:
        """Return the underlying raw store."""

        return self._store

    async def get_task(self, session_id: str, task_id: str) -> Versioned[TaskStatusRecord] | None:
        """Return the task status record and its version."""

        key = task_record_key(session_id, task_id)
        stored = await self._get(key)
        if stored is None:
            return None
        return Versioned(_decode(TaskStatusRecord, stored.body, key), stored.version)

    async def create_task(self, record: TaskStatusRecord) -> str:
        """Write a new task status record and return its version."""

        key = task_record_key(record.session_id, record.task_id)
        body = _encode(record)
        return await self._call(lambda: self._store.put(key, body), f"put {key}")

    async def put_task_if_version(self, record: TaskStatusRecord, expected_version: str) -> bool:
        """Replace the task record only if it is still at `expected_version`."""

        key = task_record_key(record.session_id, record.task_id)
        body = _encode(record)
        return await self._call(
            lambda: self._store.put_if_version(key, body, expected_version),
            f"put_if_version {key}",
        )

    async def list_task_ids(self, session_id: str) -> list[str]:
        """Return the ids of every task recorded for the session."""

        prefix = task_record_prefix(session_id)
        keys = await self._call(lambda: self._store.list_keys(prefix), f"list {prefix}")
        return [key[len(prefix) :] for key in keys if len(key) > len(prefix)]

    async def list_tasks(self, session_id: str) -> list[Versioned[TaskStatusRecord]]:
        """Return every task record of the session; records deleted meanwhile are skipped."""

        records: list[Versioned[TaskStatusRecord]] = []
        for task_id in await self.list_task_ids(session_id):
            versioned = await self.get_task(session_id, task_id)
            if versioned is not None:
                records.append(versioned)
        return records

    async def get_manifest(self, session_id: str) -> Versioned[SessionManifestRecord] | None:
        """Return the session manifest and its version."""

        key = manifest_key(session_id)
        stored = await self._get(key)
        if stored is None:
            return None
        return Versioned(_decode(SessionManifestRecord, stored.body, key), stored.version)

    async def create_manifest(self, record: SessionManifestRecord) -> None:
        """Create the manifest; fails when the session already exists."""

        key = manifest_key(record.session_id)
        body = _encode(record)
        created = await self._call(
            lambda: self._store.put_if_absent(key, body),
            f"put_if_absent {key}",
        )
        if not created:
            raise SessionExistsError(f"Session '{record.session_id}' already exists.")

    async def put_manifest_if_version(
        self,
        record: SessionManifestRecord,
        expected_version: str,
    ) -> bool:
        """Replace the manifest only if it is still at `expected_version`."""

        key = manifest_key(record.session_id)
        body = _encode(record)
        return await self._call(
            lambda: self._store.put_if_version(key, body, expected_version),
            f"put_if_version {key}",
        )

    async def list_session_ids(self) -> list[str]:
        """Return ids of all sessions that have a manifest."""

        keys = await self._call(
            lambda: self._store.list_keys(SESSIONS_PREFIX),
            f"list {SESSIONS_PREFIX}",
        )
        return [
            key[len(SESSIONS_PREFIX) : -len(_MANIFEST_SUFFIX)]
            for key in keys
            if key.endswith(_MANIFEST_SUFFIX) and key.count("/") == 2
        ]

    async def put_payload(self, payload: ExpressionPayload | ChunkPayload) -> str:
        """Upload the payload and return its key."""

        key = payload_key(payload.task_id)
        body = encode_task_payload(payload)
        await self._call(lambda: self._store.put(key, body), f"put {key}")
        return key

    async def get_payload(self, task_id: str) -> ExpressionPayload | ChunkPayload | None:
        """Download and decode a task payload."""

        stored = await self._get(payload_key(task_id))
        if stored is None:
            return None
        return decode_task_payload(stored.body)

    async def put_result(self, task_id: str, result: TaskResultRecord) -> str:
        """Upload the result and return its key."""

        key = result_key(task_id)
        body = _encode(result)
        await self._call(lambda: self._store.put(key, body), f"put {key}")
        return key

    async def get_result(self, task_id: str) -> TaskResultRecord | None:
        """Download a task result."""

        key = result_key(task_id)
        stored = await self._get(key)
        if stored is None:
            return None
        return _decode(TaskResultRecord, stored.body, key)

    async def delete_session(self, session_id: str) -> int:
        """Delete every object of the session and return how many keys were removed.

        Task payloads and results are found through the session's task
        records. The manifest is removed last.
        """

        task_ids = await self.list_task_ids(session_id)
        prefix = f"{SESSIONS_PREFIX}{session_id}/"
        session_keys = await self._call(lambda: self._store.list_keys(prefix), f"list {prefix}")

        keys: list[str] = []
        for task_id in task_ids:
            keys.extend((payload_key(task_id), result_key(task_id)))
        keys.extend(key for key in session_keys if key != manifest_key(session_id))
        keys.append(manifest_key(session_id))

        for key in keys:
            await self._delete(key)
        logger.info("Deleted %s objects of session '%s'.", len(keys), session_id)
        return len(keys)

    async def _get(self, key: str) -> StoredObject | None:
        return await self._call(lambda: self._store.get(key), f"get {key}")

    async def _delete(self, key: str) -> None:
        await self._call(lambda: self._store.delete(key), f"delete {key}")

    async def _call(self, operation: Callable[[], Awaitable[T]], operation_name: str) -> T:
        return await self._retry.call(operation, operation_name=operation_name)


def _encode(record: BaseModel) -> bytes:
    return record.model_dump_json().encode("utf-8")


def _decode(model: type[ModelT], body: bytes, key: str) -> ModelT:
    try:
        return model.model_validate_json(body)
    except ValidationError as exc:
        raise RecordValidationError(f"Invalid {model.__name__} at '{key}': {exc}") from exc


__all__ = [
    "ObjectStateStore",
    "manifest_key",
    "payload_key",
    "result_key",
    "task_record_key",
]
