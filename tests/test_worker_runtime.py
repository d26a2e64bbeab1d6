from __future__ import annotations

import asyncio
import json

import pytest

from wavefleet.application.services import ClaimProtocol, ObjectStateStore
from wavefleet.domain.errors import PayloadResolutionError, RecordValidationError
from wavefleet.domain.payloads import (
    ChunkPayload,
    ExpressionPayload,
    decode_task_payload,
    encode_task_payload,
    function_reference,
)
from wavefleet.domain.records import TaskState, TaskStatusRecord
from wavefleet.infrastructure.object_stores import InMemoryObjectStore
from wavefleet.worker import (
    ChunkItemError,
    WorkerRunResult,
    WorkerRuntime,
    execute_payload,
    resolve_function,
)
from wavefleet.worker.main import exit_code


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


async def _submit(
    state_store: ObjectStateStore,
    task_id: str,
    payload: ExpressionPayload | ChunkPayload | None = None,
) -> None:
    payload = payload or ExpressionPayload(
        session_id="session-1",
        task_id=task_id,
        function="operator:add",
        args=[1, 2],
    )
    payload_ref = await state_store.put_payload(payload)
    await state_store.create_task(
        TaskStatusRecord(session_id="session-1", task_id=task_id, payload_ref=payload_ref)
    )


def test_payload_decoding_selects_the_tagged_variant() -> None:
    expression = decode_task_payload(
        json.dumps(
            {
                "kind": "expression",
                "session_id": "session-1",
                "task_id": "t1",
                "function": "operator:add",
                "args": [1, 2],
            }
        ).encode()
    )
    chunk = decode_task_payload(
        encode_task_payload(
            ChunkPayload(
                session_id="session-1",
                task_id="t2",
                function="math:sqrt",
                items=[1, 4],
                chunk_index=3,
            )
        )
    )

    assert isinstance(expression, ExpressionPayload)
    assert expression.args == [1, 2]
    assert isinstance(chunk, ChunkPayload)
    assert chunk.chunk_index == 3


@pytest.mark.parametrize(
    "body",
    [
        b"not json",
        b'{"kind": "shell", "session_id": "s", "task_id": "t", "function": "os:system"}',
        b'{"kind": "expression", "session_id": "s", "task_id": "t", "function": "no-colon"}',
        b'{"kind": "chunk", "session_id": "s", "task_id": "t", "function": "math:sqrt"}',
    ],
)
def test_payload_decoding_rejects_invalid_documents(body: bytes) -> None:
    with pytest.raises(RecordValidationError):
        decode_task_payload(body)


def test_function_reference_accepts_module_level_callables_only() -> None:
    def local_function() -> None:
        return None

    assert function_reference(json.dumps) == "json:dumps"
    assert function_reference("operator:add") == "operator:add"
    with pytest.raises(PayloadResolutionError):
        function_reference(local_function)


@pytest.mark.parametrize(
    "reference",
    ["wavefleet_missing_module:run", "math:not_there", "math:pi"],
)
def test_resolve_function_rejects_unusable_references(reference: str) -> None:
    with pytest.raises(PayloadResolutionError):
        resolve_function(reference)


def test_execute_payload_awaits_coroutine_functions() -> None:
    payload = ExpressionPayload(
        session_id="session-1",
        task_id="t1",
        function="asyncio:sleep",
        args=[0, "done"],
    )

    assert asyncio.run(execute_payload(payload)) == "done"


def test_chunk_failure_reports_failing_item() -> None:
    payload = ChunkPayload(
        session_id="session-1",
        task_id="t1",
        function="math:sqrt",
        items=[4, "nine", 16],
        chunk_index=7,
    )

    with pytest.raises(ChunkItemError) as exc_info:
        asyncio.run(execute_payload(payload))

    assert exc_info.value.chunk_index == 7
    assert exc_info.value.item_index == 1
    assert isinstance(exc_info.value.__cause__, TypeError)


def test_assigned_worker_completes_task_and_uploads_result() -> None:
    state_store = ObjectStateStore(InMemoryObjectStore())
    runtime = WorkerRuntime("session-1", state_store, worker_id="worker-a")

    async def scenario() -> None:
        await _submit(state_store, "t1")
        result = await runtime.run_assigned("t1")
        assert result == WorkerRunResult(task_id="t1", claimed=True, state=TaskState.COMPLETED)

        current = await state_store.get_task("session-1", "t1")
        assert current is not None
        assert current.record.state is TaskState.COMPLETED
        assert current.record.claimed_by == "worker-a"
        assert current.record.result_ref == "results/t1"

        stored = await state_store.get_result("t1")
        assert stored is not None
        assert stored.error is False
        assert stored.value == 3

    asyncio.run(scenario())


def test_worker_that_loses_the_claim_exits_without_running() -> None:
    state_store = ObjectStateStore(InMemoryObjectStore())
    runtime = WorkerRuntime("session-1", state_store, worker_id="worker-late")

    async def scenario() -> None:
        await _submit(state_store, "t1")
        assert await ClaimProtocol(state_store).atomic_claim_task("session-1", "t1", "worker-a")

        result = await runtime.run_assigned("t1")
        assert result == WorkerRunResult(task_id="t1", claimed=False)
        assert await state_store.get_result("t1") is None

        current = await state_store.get_task("session-1", "t1")
        assert current is not None
        assert current.record.state is TaskState.CLAIMED
        assert current.record.claimed_by == "worker-a"

    asyncio.run(scenario())


@pytest.mark.parametrize(
    ("function", "args", "message"),
    [
        ("operator:truediv", [1, 0], "ZeroDivisionError"),
        ("builtins:object", [], "PydanticSerializationError"),
    ],
)
def test_execution_errors_become_failed_records(
    function: str,
    args: list[object],
    message: str,
) -> None:
    state_store = ObjectStateStore(InMemoryObjectStore())
    runtime = WorkerRuntime("session-1", state_store)
    payload = ExpressionPayload(session_id="session-1", task_id="t1", function=function, args=args)

    async def scenario() -> None:
        await _submit(state_store, "t1", payload)
        result = await runtime.run_assigned("t1")
        assert result.state is TaskState.FAILED

        current = await state_store.get_task("session-1", "t1")
        assert current is not None
        assert current.record.state is TaskState.FAILED
        assert current.record.error is not None
        assert current.record.error.startswith(message)

        stored = await state_store.get_result("t1")
        assert stored is not None
        assert stored.error is True
        assert stored.traceback is not None

    asyncio.run(scenario())


def test_missing_payload_fails_the_task() -> None:
    state_store = ObjectStateStore(InMemoryObjectStore())
    runtime = WorkerRuntime("session-1", state_store)

    async def scenario() -> None:
        await state_store.create_task(
            TaskStatusRecord(session_id="session-1", task_id="t1", payload_ref="tasks/t1")
        )
        result = await runtime.run_assigned("t1")
        assert result.state is TaskState.FAILED

    asyncio.run(scenario())


def test_work_stealing_drains_pending_tasks_then_stops_when_idle() -> None:
    state_store = ObjectStateStore(InMemoryObjectStore())
    clock = FakeClock()
    runtime = WorkerRuntime(
        "session-1",
        state_store,
        worker_id="worker-a",
        idle_timeout_seconds=5,
        initial_poll_seconds=1,
        max_poll_seconds=2,
        sleep=clock.sleep,
        clock=clock,
    )

    async def scenario() -> list[WorkerRunResult]:
        for task_id in ("t1", "t2", "t3"):
            await _submit(state_store, task_id)
        return await runtime.run_work_stealing(first_task_id="t2")

    results = asyncio.run(scenario())

    assert [result.task_id for result in results] == ["t2", "t1", "t3"]
    assert all(result.state is TaskState.COMPLETED for result in results)
    assert clock.sleeps == [1, 2, 2]


def test_exit_code_reflects_failed_tasks() -> None:
    completed = WorkerRunResult(task_id="t1", claimed=True, state=TaskState.COMPLETED)
    failed = WorkerRunResult(task_id="t2", claimed=True, state=TaskState.FAILED)
    lost = WorkerRunResult(task_id="t3", claimed=False)

    assert exit_code([completed, lost]) == 0
    assert exit_code([completed, failed]) == 1
