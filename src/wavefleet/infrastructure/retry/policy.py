"""Retry with exponential backoff for control-plane calls."""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunction = Callable[[float], Awaitable[None]]
JitterFunction = Callable[[float, float], float]

_DEFAULT_MAX_ATTEMPTS = 3
_DEFAULT_BASE_DELAY_SECONDS = 1.0
_DEFAULT_MAX_DELAY_SECONDS = 60.0
_JITTER_LOW = 0.5
_JITTER_HIGH = 1.5


class RetryCategory(StrEnum):
    """Failure classes that are considered transient."""

    THROTTLING = "throttling"
    TIMEOUT = "timeout"
    TRANSIENT_SERVER_ERROR = "transient_server_error"
    REQUEST_LIMIT_EXCEEDED = "request_limit_exceeded"


_CATEGORY_CODES: dict[RetryCategory, frozenset[str]] = {
    RetryCategory.THROTTLING: frozenset(
        {"Throttling", "ThrottlingException", "TooManyRequests", "TooManyRequestsException"}
    ),
    RetryCategory.TIMEOUT: frozenset({"RequestTimeout", "RequestTimeoutException"}),
    RetryCategory.TRANSIENT_SERVER_ERROR: frozenset(
        {"ServiceUnavailable", "InternalError", "InternalServerError", "InternalFailure"}
    ),
    RetryCategory.REQUEST_LIMIT_EXCEEDED: frozenset({"RequestLimitExceeded"}),
}


@dataclass(slots=True, frozen=True)
class RetryConfig:
    """Retry tuning shared by every policy variant."""

    max_attempts: int = _DEFAULT_MAX_ATTEMPTS
    base_delay_seconds: float = _DEFAULT_BASE_DELAY_SECONDS
    max_delay_seconds: float = _DEFAULT_MAX_DELAY_SECONDS
    categories: frozenset[RetryCategory] = field(default_factory=lambda: frozenset(RetryCategory))
    extra_retryable_codes: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds.")


class RetryPolicy:
    """Run async operations with classified retry and jittered exponential backoff.

    Attempt `n` (1-based) that fails with a retryable error waits
    `min(max_delay, base_delay * 2 ** (n - 1)) * U(0.5, 1.5)` before the next
    attempt. Fatal errors and the error of the final attempt are re-raised
    unchanged.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        sleep: SleepFunction | None = None,
        jitter: JitterFunction | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._sleep = sleep or asyncio.sleep
        self._jitter = jitter or random.uniform
        codes: set[str] = set(self._config.extra_retryable_codes)
        for category in self._config.categories:
            codes.update(_CATEGORY_CODES[category])
        self._retryable_codes = frozenset(codes)
        self._message_pattern = (
            re.compile("|".join(re.escape(code) for code in sorted(codes, key=len, reverse=True)))
            if codes
            else None
        )

    @classmethod
    def for_object_store(cls, config: RetryConfig | None = None, **kwargs: Any) -> RetryPolicy:
        """Policy for object-store reads and writes.

        S3 adds `SlowDown` and `ConditionalRequestConflict`, the 409 returned while
        another conditional write to the same key is still in flight.
        """

        return cls(_with_codes(config, {"SlowDown", "ConditionalRequestConflict"}), **kwargs)

    @classmethod
    def for_worker_orchestration(
        cls,
        config: RetryConfig | None = None,
        **kwargs: Any,
    ) -> RetryPolicy:
        """Policy for container orchestration calls such as ECS `RunTask`."""

        return cls(_with_codes(config, {"ServerException", "ClusterNotFoundException"}), **kwargs)

    @classmethod
    def for_image_registry(cls, config: RetryConfig | None = None, **kwargs: Any) -> RetryPolicy:
        """Policy for image registry calls."""

        codes = {"TooManyRequestsException", "LimitExceededException"}
        return cls(_with_codes(config, codes), **kwargs)

    @property
    def config(self) -> RetryConfig:
        """Return active retry tuning."""

        return self._config

    def is_retryable(self, error: BaseException) -> bool:
        """Return whether `error` belongs to one of the configured transient categories."""

        if isinstance(error, TimeoutError) and RetryCategory.TIMEOUT in self._config.categories:
            return True

        code = _error_code(error)
        if code is not None and code in self._retryable_codes:
            return True

        if RetryCategory.TRANSIENT_SERVER_ERROR in self._config.categories:
            status_code = _status_code(error)
            if status_code is not None and 500 <= status_code <= 599:
                return True

        if self._message_pattern is None:
            return False
        return bool(self._message_pattern.search(str(error)))

    def backoff_seconds(self, attempt: int) -> float:
        """Return the jittered delay after failed attempt number `attempt`."""

        exponent = max(0, attempt - 1)
        capped = min(
            self._config.max_delay_seconds,
            self._config.base_delay_seconds * (2**exponent),
        )
        return capped * self._jitter(_JITTER_LOW, _JITTER_HIGH)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        operation_name: str = "operation",
    ) -> T:
        """Await `operation()` until it succeeds, fails fatally, or attempts run out."""

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(self.is_retryable),
            sleep=self._sleep,
            before_sleep=lambda retry_state: _log_retry(operation_name, retry_state),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await operation()
        raise RuntimeError("Unexpected state in retry loop")  # pragma: no cover

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.backoff_seconds(retry_state.attempt_number)


def _with_codes(config: RetryConfig | None, codes: Iterable[str]) -> RetryConfig:
    base = config or RetryConfig()
    return replace(base, extra_retryable_codes=base.extra_retryable_codes | frozenset(codes))


def _error_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code

    # botocore ClientError carries the code in its parsed response.
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        response_code = response.get("Error", {}).get("Code")
        if isinstance(response_code, str) and response_code:
            return response_code
    return None


def _status_code(error: BaseException) -> int | None:
    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        return status_code

    response = getattr(error, "response", None)
    if isinstance(response, dict):
        http_status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(http_status, int):
            return http_status
    return None


def _log_retry(operation_name: str, retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome is not None else None
    delay = retry_state.next_action.sleep if retry_state.next_action is not None else 0.0
    logger.warning(
        "Retrying %s after attempt %s failed: %s. Next attempt in %.2fs.",
        operation_name,
        retry_state.attempt_number,
        error,
        delay,
    )


__all__ = ["RetryCategory", "RetryConfig", "RetryPolicy"]
