"""Payload execution inside a worker."""

from __future__ import annotations

import importlib
import inspect
from collections.abc import Callable
from typing import Any

from wavefleet.domain.errors import PayloadResolutionError
from wavefleet.domain.payloads import ChunkPayload, ExpressionPayload


class ChunkItemError(RuntimeError):
    """Raised when one item of a chunk fails; the whole chunk fails with it."""

    def __init__(self, chunk_index: int, item_index: int, error: BaseException) -> None:
        super().__init__(f"Chunk {chunk_index} item {item_index} failed: {error}")
        self.chunk_index = chunk_index
        self.item_index = item_index


def resolve_function(reference: str) -> Callable[..., Any]:
    """Import `package.module:attribute` and return the callable."""

    module_name, _, attribute_path = reference.partition(":")
    try:
        target: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise PayloadResolutionError(f"Cannot import module '{module_name}': {exc}") from exc

    for attribute in attribute_path.split("."):
        try:
            target = getattr(target, attribute)
        except AttributeError as exc:
            raise PayloadResolutionError(f"'{reference}' does not resolve: {exc}") from exc

    if not callable(target):
        raise PayloadResolutionError(f"'{reference}' is not callable.")
    return target


async def execute_payload(payload: ExpressionPayload | ChunkPayload) -> Any:
    """Run the payload and return its JSON-compatible value."""

    function = resolve_function(payload.function)
    if isinstance(payload, ChunkPayload):
        values: list[Any] = []
        for item_index, item in enumerate(payload.items):
            try:
                values.append(await _maybe_await(function(item, **payload.kwargs)))
            except Exception as exc:
                raise ChunkItemError(payload.chunk_index, item_index, exc) from exc
        return values

    return await _maybe_await(function(*payload.args, **payload.kwargs))


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


__all__ = ["ChunkItemError", "execute_payload", "resolve_function"]
