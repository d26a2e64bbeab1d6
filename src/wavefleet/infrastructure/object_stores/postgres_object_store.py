"""PostgreSQL-backed object store with row-version compare-and-swap."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]

from wavefleet.domain.errors import ObjectStoreError
from wavefleet.domain.ports import ObjectStore, StoredObject

T = TypeVar("T")


class PostgresObjectStore(ObjectStore):
    """Object store backed by one PostgreSQL table.

    Versions come from a sequence so a deleted and recreated key never
    reuses an old version.
    """

    def __init__(
        self,
        dsn: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        self._dsn = dsn
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def get(self, key: str) -> StoredObject | None:
        """Return body and version."""

        row = await self._run(
            "get",
            key,
            lambda pool: pool.fetchrow(
                "SELECT body, version FROM wavefleet_objects WHERE key = $1",
                key,
            ),
        )
        if row is None:
            return None
        return StoredObject(body=bytes(row["body"]), version=str(row["version"]))

    async def put(self, key: str, body: bytes) -> str:
        """Insert or overwrite."""

        version = await self._run(
            "put",
            key,
            lambda pool: pool.fetchval(
                """
                INSERT INTO wavefleet_objects (key, body, version, updated_at)
                VALUES ($1, $2, nextval('wavefleet_object_versions'), NOW())
                ON CONFLICT (key) DO UPDATE SET
                    body = EXCLUDED.body,
                    version = EXCLUDED.version,
                    updated_at = NOW()
                RETURNING version
                """,
                key,
                body,
            ),
        )
        return str(version)

    async def put_if_absent(self, key: str, body: bytes) -> bool:
        """Insert only when the key is new."""

        version = await self._run(
            "put_if_absent",
            key,
            lambda pool: pool.fetchval(
                """
                INSERT INTO wavefleet_objects (key, body, version, updated_at)
                VALUES ($1, $2, nextval('wavefleet_object_versions'), NOW())
                ON CONFLICT (key) DO NOTHING
                RETURNING version
                """,
                key,
                body,
            ),
        )
        return version is not None

    async def put_if_version(self, key: str, body: bytes, expected_version: str) -> bool:
        """Update only when the stored version still matches."""

        try:
            expected = int(expected_version)
        except ValueError:
            return False

        version = await self._run(
            "put_if_version",
            key,
            lambda pool: pool.fetchval(
                """
                UPDATE wavefleet_objects
                SET body = $2,
                    version = nextval('wavefleet_object_versions'),
                    updated_at = NOW()
                WHERE key = $1 AND version = $3
                RETURNING version
                """,
                key,
                body,
                expected,
            ),
        )
        return version is not None

    async def delete(self, key: str) -> None:
        """Delete when present."""

        await self._run(
            "delete",
            key,
            lambda pool: pool.execute("DELETE FROM wavefleet_objects WHERE key = $1", key),
        )

    async def list_keys(self, prefix: str) -> list[str]:
        """Return keys under `prefix`."""

        rows = await self._run(
            "list_keys",
            prefix,
            lambda pool: pool.fetch(
                """
                SELECT key FROM wavefleet_objects
                WHERE left(key, char_length($1)) = $1
                ORDER BY key ASC
                """,
                prefix,
            ),
        )
        return [row["key"] for row in rows]

    async def close(self) -> None:
        """Close the pool if it was initialized."""

        pool = self._pool
        self._pool = None
        if pool is not None:
            await pool.close()

    async def _run(
        self,
        operation: str,
        key: str,
        call: Callable[[asyncpg.Pool], Awaitable[T]],
    ) -> T:
        try:
            pool = await self._get_pool()
            return await call(pool)
        except asyncpg.exceptions.TooManyConnectionsError as exc:
            raise ObjectStoreError(
                f"PostgreSQL {operation} throttled for '{key}': {exc}",
                code="Throttling",
            ) from exc
        except asyncpg.exceptions.QueryCanceledError as exc:
            raise ObjectStoreError(
                f"PostgreSQL {operation} timed out for '{key}': {exc}",
                code="RequestTimeout",
            ) from exc
        except (
            asyncpg.exceptions.PostgresConnectionError,
            asyncpg.exceptions.InterfaceError,
            OSError,
        ) as exc:
            raise ObjectStoreError(
                f"PostgreSQL {operation} unavailable for '{key}': {exc}",
                code="ServiceUnavailable",
            ) from exc
        except asyncpg.exceptions.PostgresError as exc:
            raise ObjectStoreError(
                f"PostgreSQL {operation} failed for '{key}': {exc}",
                code=getattr(exc, "sqlstate", None),
            ) from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is None:
                pool = await asyncpg.create_pool(
                    dsn=self._dsn,
                    min_size=self._min_pool_size,
                    max_size=self._max_pool_size,
                )
                await self._ensure_schema(pool)
                self._pool = pool
        assert self._pool is not None
        return self._pool

    async def _ensure_schema(self, pool: asyncpg.Pool) -> None:
        await pool.execute("CREATE SEQUENCE IF NOT EXISTS wavefleet_object_versions;")
        await pool.execute(
            """
            CREATE TABLE IF NOT EXISTS wavefleet_objects (
                key TEXT PRIMARY KEY,
                body BYTEA NOT NULL,
                version BIGINT NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """
        )


__all__ = ["PostgresObjectStore"]
