"""S3-backed object store using conditional writes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Protocol, cast

from botocore.exceptions import BotoCoreError, ClientError

from wavefleet.domain.errors import ObjectStoreError
from wavefleet.domain.ports import ObjectStore, StoredObject

logger = logging.getLogger(__name__)

# S3 reports a failed If-Match/If-None-Match precondition as 412. A 409
# ConditionalRequestConflict only means another conditional write is still in
# flight; it surfaces as a retryable ObjectStoreError.
_LOST_RACE_CODES = frozenset({"PreconditionFailed"})
_LOST_RACE_STATUSES = frozenset({412})
_MISSING_KEY_CODES = frozenset({"NoSuchKey", "NotFound", "404"})


class S3Client(Protocol):
    """Subset of S3 client operations used by the object store."""

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        """Download one object."""

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, **kwargs: Any) -> dict[str, Any]:
        """Upload one object, optionally guarded by IfMatch/IfNoneMatch."""

    def delete_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        """Delete one object."""

    def list_objects_v2(self, *, Bucket: str, Prefix: str, **kwargs: Any) -> dict[str, Any]:
        """List one page of keys."""


class S3ObjectStore(ObjectStore):
    """Object store adapter for one S3 bucket.

    - Versions are S3 ETags.
    - `put_if_version` sends `IfMatch`, `put_if_absent` sends `IfNoneMatch="*"`.
    - boto3 calls run in worker threads so the event loop never blocks.
    """

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        s3_client_factory: Callable[[str], S3Client] | None = None,
    ) -> None:
        self._bucket = bucket
        self._region = region
        self._s3_client_factory = s3_client_factory or _build_default_s3_client
        self._client: S3Client | None = None

    @property
    def bucket(self) -> str:
        """Return the bucket all keys live in."""

        return self._bucket

    async def get(self, key: str) -> StoredObject | None:
        """Download `key` and return its body and ETag."""

        client = self._get_client()

        def _download() -> StoredObject | None:
            try:
                response = client.get_object(Bucket=self._bucket, Key=key)
            except ClientError as exc:
                if _client_error_code(exc) in _MISSING_KEY_CODES:
                    return None
                raise
            body = response["Body"].read()
            return StoredObject(body=body, version=_require_etag(response, "get_object"))

        return await self._run("get_object", key, _download)

    async def put(self, key: str, body: bytes) -> str:
        """Upload unconditionally."""

        client = self._get_client()

        def _upload() -> str:
            response = client.put_object(Bucket=self._bucket, Key=key, Body=body)
            return _require_etag(response, "put_object")

        return await self._run("put_object", key, _upload)

    async def put_if_absent(self, key: str, body: bytes) -> bool:
        """Upload with `IfNoneMatch="*"`."""

        return await self._conditional_put(key, body, IfNoneMatch="*")

    async def put_if_version(self, key: str, body: bytes, expected_version: str) -> bool:
        """Upload with `IfMatch=<etag>`."""

        return await self._conditional_put(key, body, IfMatch=expected_version)

    async def delete(self, key: str) -> None:
        """Delete `key`; S3 treats missing keys as success."""

        client = self._get_client()
        await self._run(
            "delete_object",
            key,
            lambda: client.delete_object(Bucket=self._bucket, Key=key),
        )

    async def list_keys(self, prefix: str) -> list[str]:
        """Return every key under `prefix`, following continuation tokens."""

        client = self._get_client()

        def _list() -> list[str]:
            keys: list[str] = []
            continuation_token: str | None = None
            while True:
                kwargs: dict[str, Any] = {}
                if continuation_token is not None:
                    kwargs["ContinuationToken"] = continuation_token
                page = client.list_objects_v2(Bucket=self._bucket, Prefix=prefix, **kwargs)
                keys.extend(item["Key"] for item in page.get("Contents", []))
                if not page.get("IsTruncated"):
                    return sorted(keys)
                continuation_token = page.get("NextContinuationToken")
                if not continuation_token:
                    return sorted(keys)

        return await self._run("list_objects_v2", prefix, _list)

    async def _conditional_put(self, key: str, body: bytes, **condition: str) -> bool:
        client = self._get_client()

        def _upload() -> bool:
            try:
                client.put_object(Bucket=self._bucket, Key=key, Body=body, **condition)
            except ClientError as exc:
                if _is_lost_race(exc):
                    logger.debug(
                        "Conditional write to s3://%s/%s lost: %s",
                        self._bucket,
                        key,
                        _client_error_code(exc),
                    )
                    return False
                raise
            return True

        return await self._run("put_object", key, _upload)

    async def _run(self, operation: str, key: str, call: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(call)
        except ClientError as exc:
            code = _client_error_code(exc)
            message = exc.response.get("Error", {}).get("Message") or str(exc)
            raise ObjectStoreError(
                f"S3 {operation} failed for s3://{self._bucket}/{key}: {code}: {message}",
                code=code,
                status_code=_client_error_status(exc),
            ) from exc
        except BotoCoreError as exc:
            code = "RequestTimeout" if "Timeout" in type(exc).__name__ else "ServiceUnavailable"
            raise ObjectStoreError(
                f"S3 {operation} failed for s3://{self._bucket}/{key}: {exc}",
                code=code,
            ) from exc

    def _get_client(self) -> S3Client:
        if self._client is None:
            self._client = self._s3_client_factory(self._region)
        return self._client


def _client_error_code(exc: ClientError) -> str | None:
    code = exc.response.get("Error", {}).get("Code")
    return str(code) if code is not None else None


def _client_error_status(exc: ClientError) -> int | None:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return status if isinstance(status, int) else None


def _is_lost_race(exc: ClientError) -> bool:
    return (
        _client_error_code(exc) in _LOST_RACE_CODES
        or _client_error_status(exc) in _LOST_RACE_STATUSES
    )


def _require_etag(response: dict[str, Any], operation: str) -> str:
    etag = response.get("ETag")
    if not isinstance(etag, str) or not etag:
        raise ObjectStoreError(f"{operation} did not return an ETag", code="MissingETag")
    return etag


def _build_default_s3_client(region: str) -> S3Client:
    """Create a boto3 S3 client lazily to avoid import-time hard dependency."""

    try:
        import boto3  # type: ignore[import-not-found]
    except ModuleNotFoundError as exc:
        raise RuntimeError(
            "boto3 is required for the S3 object store. Install project dependencies first."
        ) from exc

    return cast(S3Client, boto3.client("s3", region_name=region))


__all__ = ["S3Client", "S3ObjectStore"]
