from __future__ import annotations

import asyncio

import pytest
from botocore.exceptions import ClientError

from wavefleet.domain.errors import ControlPlaneError, ObjectStoreError, WorkerLaunchError
from wavefleet.infrastructure.retry import RetryCategory, RetryConfig, RetryPolicy


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": f"{code} happened"},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "PutObject",
    )


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ObjectStoreError("slow", code="SlowDown"), True),
        (ObjectStoreError("throttled", code="ThrottlingException"), True),
        (ControlPlaneError("unavailable", status_code=503), True),
        (ControlPlaneError("denied", code="AccessDenied", status_code=403), False),
        (TimeoutError("timed out"), True),
        (RuntimeError("upstream answered 502 Bad Gateway"), False),
        (ValueError("expected at most 500 items"), False),
        (ValueError("bad input"), False),
        (_client_error("RequestLimitExceeded", 400), True),
        (_client_error("NoSuchBucket", 404), False),
        (_client_error("InternalError", 500), True),
    ],
)
def test_object_store_policy_classifies_errors(error: BaseException, expected: bool) -> None:
    policy = RetryPolicy.for_object_store()

    assert policy.is_retryable(error) is expected


def test_policy_variants_add_backend_specific_codes() -> None:
    slow_down = ObjectStoreError("slow", code="SlowDown")
    server_exception = WorkerLaunchError("ecs", code="ServerException")
    limit_exceeded = ControlPlaneError("ecr", code="LimitExceededException")

    assert RetryPolicy().is_retryable(slow_down) is False
    assert RetryPolicy.for_object_store().is_retryable(slow_down) is True
    assert RetryPolicy.for_worker_orchestration().is_retryable(server_exception) is True
    assert RetryPolicy.for_object_store().is_retryable(server_exception) is False
    assert RetryPolicy.for_image_registry().is_retryable(limit_exceeded) is True


def test_disabled_categories_are_not_retried() -> None:
    policy = RetryPolicy(RetryConfig(categories=frozenset({RetryCategory.THROTTLING})))

    assert policy.is_retryable(ControlPlaneError("throttled", code="Throttling")) is True
    assert policy.is_retryable(TimeoutError()) is False
    assert policy.is_retryable(ControlPlaneError("unavailable", status_code=503)) is False


def test_backoff_doubles_and_caps_before_jitter() -> None:
    policy = RetryPolicy(
        RetryConfig(max_attempts=5, base_delay_seconds=1.0, max_delay_seconds=3.0),
        jitter=lambda low, high: 1.0,
    )

    assert [policy.backoff_seconds(attempt) for attempt in range(1, 5)] == [1.0, 2.0, 3.0, 3.0]


def test_backoff_jitter_spans_half_to_one_and_a_half() -> None:
    low = RetryPolicy(RetryConfig(base_delay_seconds=2.0), jitter=lambda low, high: low)
    high = RetryPolicy(RetryConfig(base_delay_seconds=2.0), jitter=lambda low, high: high)

    assert low.backoff_seconds(1) == pytest.approx(1.0)
    assert high.backoff_seconds(1) == pytest.approx(3.0)


def test_call_retries_transient_errors_then_returns() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy.for_object_store(sleep=sleep, jitter=lambda low, high: 1.0)
    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ObjectStoreError("slow down", code="SlowDown", status_code=503)
        return "ok"

    result = asyncio.run(policy.call(flaky, operation_name="put tasks/t1"))

    assert result == "ok"
    assert attempts == 3
    assert sleep.delays == [1.0, 2.0]


def test_call_awaits_coroutines_returned_by_plain_callables() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy.for_object_store(sleep=sleep, jitter=lambda low, high: 1.0)
    attempts = 0

    async def read(key: str) -> str:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise ObjectStoreError("slow down", code="SlowDown", status_code=503)
        return f"body of {key}"

    result = asyncio.run(policy.call(lambda: read("tasks/t1"), operation_name="get tasks/t1"))

    assert result == "body of tasks/t1"
    assert attempts == 2
    assert sleep.delays == [1.0]


def test_call_reraises_fatal_error_without_sleeping() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy.for_object_store(sleep=sleep)
    attempts = 0

    async def denied() -> None:
        nonlocal attempts
        attempts += 1
        raise ObjectStoreError("denied", code="AccessDenied", status_code=403)

    with pytest.raises(ObjectStoreError, match="denied"):
        asyncio.run(policy.call(denied))

    assert attempts == 1
    assert sleep.delays == []


def test_call_reraises_last_error_after_max_attempts() -> None:
    sleep = RecordingSleep()
    policy = RetryPolicy.for_worker_orchestration(
        RetryConfig(max_attempts=3),
        sleep=sleep,
        jitter=lambda low, high: 1.0,
    )
    attempts = 0

    async def throttled() -> None:
        nonlocal attempts
        attempts += 1
        raise WorkerLaunchError(f"throttled {attempts}", code="ThrottlingException")

    with pytest.raises(WorkerLaunchError, match="throttled 3"):
        asyncio.run(policy.call(throttled))

    assert attempts == 3
    assert len(sleep.delays) == 2


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay_seconds": -1.0},
        {"base_delay_seconds": 5.0, "max_delay_seconds": 1.0},
    ],
)
def test_retry_config_rejects_invalid_values(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RetryConfig(**kwargs)
