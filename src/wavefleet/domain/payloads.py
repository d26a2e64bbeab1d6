"""Task payload shapes uploaded for remote workers."""

from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any, Literal

from pydantic import Field, TypeAdapter, ValidationError, field_validator

from wavefleet.domain.errors import PayloadResolutionError, RecordValidationError
from wavefleet.domain.records import StoredRecord


class _CallablePayload(StoredRecord):
    session_id: str
    task_id: str
    function: str
    kwargs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("function")
    @classmethod
    def validate_function_reference(cls, value: str) -> str:
        """Require `package.module:attribute` import references."""

        module_name, separator, attribute = value.partition(":")
        if not separator or not module_name.strip() or not attribute.strip():
            raise ValueError("function must be an import reference like 'package.module:name'.")
        return value


class ExpressionPayload(_CallablePayload):
    """Single call `function(*args, **kwargs)`."""

    kind: Literal["expression"] = "expression"
    args: list[Any] = Field(default_factory=list)


class ChunkPayload(_CallablePayload):
    """Apply `function(item, **kwargs)` to every item of one chunk."""

    kind: Literal["chunk"] = "chunk"
    items: list[Any]
    chunk_index: int = Field(default=0, ge=0)


TaskPayload = Annotated[ExpressionPayload | ChunkPayload, Field(discriminator="kind")]

_TASK_PAYLOAD_ADAPTER: TypeAdapter[ExpressionPayload | ChunkPayload] = TypeAdapter(TaskPayload)


def decode_task_payload(body: bytes) -> ExpressionPayload | ChunkPayload:
    """Decode a stored payload into its tagged variant."""

    try:
        return _TASK_PAYLOAD_ADAPTER.validate_json(body)
    except ValidationError as exc:
        raise RecordValidationError(f"Invalid task payload: {exc}") from exc


def encode_task_payload(payload: ExpressionPayload | ChunkPayload) -> bytes:
    """Serialize a payload for upload."""

    return payload.model_dump_json().encode("utf-8")


def function_reference(function: str | Callable[..., Any]) -> str:
    """Return the import reference workers use to locate `function`."""

    if isinstance(function, str):
        return function

    module_name = getattr(function, "__module__", None)
    qualname = getattr(function, "__qualname__", None)
    if not module_name or not qualname or "<" in qualname or module_name == "__main__":
        raise PayloadResolutionError(
            f"Callable {function!r} is not importable by remote workers; "
            "define it at module level in an installed module."
        )
    return f"{module_name}:{qualname}"


__all__ = [
    "ChunkPayload",
    "ExpressionPayload",
    "TaskPayload",
    "decode_task_payload",
    "encode_task_payload",
    "function_reference",
]
