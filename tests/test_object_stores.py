from __future__ import annotations

import asyncio
import io
import threading
from typing import Any

import pytest
from botocore.exceptions import ClientError, ConnectTimeoutError

from wavefleet.application.services import ClaimProtocol, ObjectStateStore
from wavefleet.domain.errors import ObjectStoreError
from wavefleet.domain.records import TaskState, TaskStatusRecord
from wavefleet.infrastructure.object_stores import InMemoryObjectStore, S3ObjectStore
from wavefleet.infrastructure.retry import RetryPolicy


def _client_error(code: str, status: int, operation: str = "PutObject") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeS3Client:
    """Thread-safe fake S3 client with ETags and conditional puts."""

    def __init__(self, page_size: int = 1000) -> None:
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()
        self._page_size = page_size
        self._etag_counter = 0
        self.put_calls: list[dict[str, Any]] = []
        self.list_calls = 0
        self.fail_next: ClientError | None = None
        self.fail_next_if_match: ClientError | None = None
        self.competing_write: bytes | None = None

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        with self._lock:
            self._raise_injected()
            if Key not in self._objects:
                raise _client_error("NoSuchKey", 404, "GetObject")
            body, etag = self._objects[Key]
        return {"Body": io.BytesIO(body), "ETag": etag}

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self.put_calls.append({"Key": Key, **kwargs})
            self._raise_injected()
            current = self._objects.get(Key)
            if "IfMatch" in kwargs and self.fail_next_if_match is not None:
                error, self.fail_next_if_match = self.fail_next_if_match, None
                if self.competing_write is not None:
                    self._store(Key, self.competing_write)
                raise error
            if kwargs.get("IfNoneMatch") == "*" and current is not None:
                raise _client_error("PreconditionFailed", 412)
            if "IfMatch" in kwargs and (current is None or current[1] != kwargs["IfMatch"]):
                raise _client_error("PreconditionFailed", 412)
            etag = self._store(Key, bytes(Body))
        return {"ETag": etag}

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        with self._lock:
            self._objects.pop(Key, None)
        return {}

    def list_objects_v2(self, *, Bucket: str, Prefix: str, **kwargs: Any) -> dict[str, Any]:
        with self._lock:
            self.list_calls += 1
            keys = sorted(key for key in self._objects if key.startswith(Prefix))
        start = int(kwargs.get("ContinuationToken", "0"))
        page = keys[start : start + self._page_size]
        next_start = start + self._page_size
        response: dict[str, Any] = {
            "Contents": [{"Key": key} for key in page],
            "IsTruncated": next_start < len(keys),
        }
        if next_start < len(keys):
            response["NextContinuationToken"] = str(next_start)
        return response

    def _store(self, key: str, body: bytes) -> str:
        self._etag_counter += 1
        etag = f'"etag-{self._etag_counter}"'
        self._objects[key] = (body, etag)
        return etag

    def _raise_injected(self) -> None:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error


class TimingOutS3Client(FakeS3Client):
    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        raise ConnectTimeoutError(endpoint_url="https://s3.amazonaws.com")


def _s3_store(client: FakeS3Client) -> S3ObjectStore:
    return S3ObjectStore(bucket="wavefleet-state", s3_client_factory=lambda _: client)


def test_in_memory_store_conditional_writes() -> None:
    store = InMemoryObjectStore()

    async def scenario() -> None:
        assert await store.get("sessions/s1/manifest") is None
        assert await store.put_if_absent("sessions/s1/manifest", b"v1") is True
        assert await store.put_if_absent("sessions/s1/manifest", b"other") is False

        stored = await store.get("sessions/s1/manifest")
        assert stored is not None
        assert stored.body == b"v1"

        assert await store.put_if_version("sessions/s1/manifest", b"v2", stored.version) is True
        assert await store.put_if_version("sessions/s1/manifest", b"v3", stored.version) is False
        assert await store.put_if_version("missing", b"v1", stored.version) is False

        latest = await store.get("sessions/s1/manifest")
        assert latest is not None
        assert latest.body == b"v2"
        assert latest.version != stored.version

    asyncio.run(scenario())


def test_in_memory_store_lists_prefix_and_deletes() -> None:
    store = InMemoryObjectStore()

    async def scenario() -> None:
        await store.put("sessions/s1/tasks/b", b"{}")
        await store.put("sessions/s1/tasks/a", b"{}")
        await store.put("sessions/s2/tasks/c", b"{}")

        assert await store.list_keys("sessions/s1/") == [
            "sessions/s1/tasks/a",
            "sessions/s1/tasks/b",
        ]

        await store.delete("sessions/s1/tasks/a")
        await store.delete("sessions/s1/tasks/unknown")
        assert await store.list_keys("sessions/s1/") == ["sessions/s1/tasks/b"]

    asyncio.run(scenario())


def test_in_memory_store_single_winner_under_concurrent_writers() -> None:
    store = InMemoryObjectStore()

    async def scenario() -> list[bool]:
        version = await store.put("tasks/t1", b"pending")
        return list(
            await asyncio.gather(
                *(
                    store.put_if_version("tasks/t1", f"worker-{index}".encode(), version)
                    for index in range(8)
                )
            )
        )

    outcomes = asyncio.run(scenario())

    assert outcomes.count(True) == 1


def test_s3_store_uses_etags_for_conditional_writes() -> None:
    client = FakeS3Client()
    store = _s3_store(client)

    async def scenario() -> None:
        assert await store.put_if_absent("sessions/s1/manifest", b"v1") is True
        assert await store.put_if_absent("sessions/s1/manifest", b"v1") is False

        stored = await store.get("sessions/s1/manifest")
        assert stored is not None
        assert stored.version == '"etag-1"'

        assert await store.put_if_version("sessions/s1/manifest", b"v2", stored.version) is True
        assert await store.put_if_version("sessions/s1/manifest", b"v3", stored.version) is False

    asyncio.run(scenario())

    assert client.put_calls[0]["IfNoneMatch"] == "*"
    assert client.put_calls[2]["IfMatch"] == '"etag-1"'


def test_s3_store_returns_none_for_missing_key() -> None:
    store = _s3_store(FakeS3Client())

    assert asyncio.run(store.get("results/unknown")) is None


def test_s3_store_raises_retryable_error_on_conditional_conflict() -> None:
    client = FakeS3Client()
    store = _s3_store(client)
    client.fail_next = _client_error("ConditionalRequestConflict", 409)

    with pytest.raises(ObjectStoreError) as exc_info:
        asyncio.run(store.put_if_absent("sessions/s1/manifest", b"v1"))

    assert exc_info.value.code == "ConditionalRequestConflict"
    assert exc_info.value.status_code == 409
    assert RetryPolicy.for_object_store().is_retryable(exc_info.value) is True


def _claim_setup(client: FakeS3Client) -> tuple[ObjectStateStore, ClaimProtocol]:
    policy = RetryPolicy.for_object_store(sleep=_no_sleep, jitter=lambda low, high: 1.0)
    state_store = ObjectStateStore(_s3_store(client), retry_policy=policy)
    return state_store, ClaimProtocol(state_store)


async def _no_sleep(_: float) -> None:
    return None


def test_s3_claim_retries_conditional_conflict_and_wins() -> None:
    client = FakeS3Client()
    state_store, claims = _claim_setup(client)
    record = TaskStatusRecord(session_id="s1", task_id="t1", payload_ref="tasks/t1")

    async def scenario() -> tuple[bool, TaskStatusRecord]:
        await state_store.create_task(record)
        client.fail_next_if_match = _client_error("ConditionalRequestConflict", 409)
        won = await claims.atomic_claim_task("s1", "t1", "w1")
        current = await state_store.get_task("s1", "t1")
        assert current is not None
        return won, current.record

    won, current = asyncio.run(scenario())

    assert won is True
    assert current.state is TaskState.CLAIMED
    assert current.claimed_by == "w1"
    assert [call.get("IfMatch") for call in client.put_calls[1:]] == ['"etag-1"', '"etag-1"']


def test_s3_claim_loses_when_conflicting_write_lands_first() -> None:
    client = FakeS3Client()
    state_store, claims = _claim_setup(client)
    record = TaskStatusRecord(session_id="s1", task_id="t1", payload_ref="tasks/t1")
    competitor = record.model_copy(update={"state": TaskState.CLAIMED, "claimed_by": "w2"})

    async def scenario() -> tuple[bool, TaskStatusRecord]:
        await state_store.create_task(record)
        client.fail_next_if_match = _client_error("ConditionalRequestConflict", 409)
        client.competing_write = competitor.model_dump_json().encode("utf-8")
        won = await claims.atomic_claim_task("s1", "t1", "w1")
        current = await state_store.get_task("s1", "t1")
        assert current is not None
        return won, current.record

    won, current = asyncio.run(scenario())

    assert won is False
    assert current.claimed_by == "w2"


def test_s3_store_follows_continuation_tokens() -> None:
    client = FakeS3Client(page_size=2)
    store = _s3_store(client)

    async def scenario() -> list[str]:
        for index in range(5):
            await store.put(f"sessions/s1/tasks/t{index}", b"{}")
        await store.put("sessions/s2/manifest", b"{}")
        return await store.list_keys("sessions/s1/")

    keys = asyncio.run(scenario())

    assert keys == [f"sessions/s1/tasks/t{index}" for index in range(5)]
    assert client.list_calls == 3


def test_s3_store_maps_client_errors_to_object_store_error() -> None:
    client = FakeS3Client()
    store = _s3_store(client)
    client.fail_next = _client_error("InternalError", 500)

    with pytest.raises(ObjectStoreError) as exc_info:
        asyncio.run(store.put("tasks/t1", b"{}"))

    assert exc_info.value.code == "InternalError"
    assert exc_info.value.status_code == 500


def test_s3_store_maps_transport_timeouts_to_request_timeout() -> None:
    store = _s3_store(TimingOutS3Client())

    with pytest.raises(ObjectStoreError) as exc_info:
        asyncio.run(store.get("tasks/t1"))

    assert exc_info.value.code == "RequestTimeout"
