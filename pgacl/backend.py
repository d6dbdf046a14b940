"""
PostgreSQL storage backend for bucket-based ACL engines.

Each flat-set bucket is a table of ``(key text primary key, value jsonb)``
rows whose value is a JSON array of members. All ``allows`` buckets share
the permissions table, keyed by bucket name, whose value is a JSON object
mapping sub-keys to arrays.

Writes never rely on an atomic merge from the database. ``add`` first tries
a conflict-ignoring insert and only when the key already exists falls back
to a row-locked read-modify-write at READ COMMITTED. ``remove`` and the
nested-map ``delete`` always take the locked path.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from psycopg import sql
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from pgacl import sets
from pgacl.batch import Batch, run_batch
from pgacl.buckets import BucketResolver, ResolvedBucket
from pgacl.config import load_settings
from pgacl.errors import BackendClosedError
from pgacl.validation import check_batch, check_members, check_name, check_names

logger = logging.getLogger(__name__)

_SELECT_ONE = "SELECT value FROM {} WHERE key = %s"
_SELECT_MANY = "SELECT value FROM {} WHERE key = ANY(%s)"
_SELECT_FOR_UPDATE = "SELECT value FROM {} WHERE key = %s FOR UPDATE"
_INSERT_IGNORE = (
    "INSERT INTO {} (key, value) VALUES (%s, %s) ON CONFLICT (key) DO NOTHING"
)
_UPDATE = "UPDATE {} SET value = %s WHERE key = %s"
_DELETE_ONE = "DELETE FROM {} WHERE key = %s"
_DELETE_MANY = "DELETE FROM {} WHERE key = ANY(%s)"
_DELETE_ALL = "DELETE FROM {}"


def _query(template: str, table: str) -> sql.Composed:
    return sql.SQL(template).format(sql.Identifier(table))


@dataclass(frozen=True)
class _Slot:
    """
    The member set addressed by (bucket, key).

    For flat-set buckets the slot is the whole row ``key``. For nested-map
    buckets the row is the bucket itself and ``subkey`` picks the set
    inside its document.
    """

    bucket: ResolvedBucket
    row_key: str
    subkey: str | None = None

    @classmethod
    def of(cls, bucket: ResolvedBucket, key: str) -> _Slot:
        if bucket.is_nested:
            return cls(bucket, bucket.name, key)
        return cls(bucket, key)

    @property
    def table(self) -> str:
        return self.bucket.table

    def members(self, stored: Any) -> list[str]:
        if stored is None:
            return []
        if self.subkey is None:
            return sets.union(stored)
        return sets.union(stored.get(self.subkey))

    def seed(self, values: list[str]) -> Any:
        if self.subkey is None:
            return sets.canonical(values)
        return {self.subkey: sets.canonical(values)}

    def merged(self, stored: Any, values: list[str]) -> Any:
        if self.subkey is None:
            return sets.union(stored, values)
        return sets.document_add(stored, self.subkey, values)

    def reduced(self, stored: Any, values: list[str]) -> Any:
        # A flat set may be stored empty; an empty document is deleted.
        if self.subkey is None:
            return sets.difference(stored, values)
        return sets.document_remove(stored, self.subkey, values) or None


class PostgresBackend:
    """
    ACL storage backend on top of an async psycopg connection pool.

    The backend owns the pool from construction until close().

    Example:
        backend = await PostgresBackend.connect(DATABASE_URL, prefix="acl_")

        batch = await backend.begin()
        await backend.add(batch, "roles", "admin", ["users", "groups"])
        await backend.end(batch)

        await backend.get("roles", "admin")  # ["groups", "users"]
        await backend.close()
    """

    def __init__(
        self,
        pool: AsyncConnectionPool,
        *,
        prefix: str = "",
        buckets: dict[str, str] | None = None,
    ):
        self.pool = pool
        self.resolver = BucketResolver(prefix, buckets)
        self._closed = False

    @classmethod
    async def connect(
        cls,
        conninfo: str | None = None,
        *,
        prefix: str | None = None,
        buckets: dict[str, str] | None = None,
        **pool_kwargs,
    ) -> PostgresBackend:
        """
        Open a connection pool and return a backend that owns it.

        Args:
            conninfo: libpq connection string (default: DATABASE_URL)
            prefix: Table name prefix (default: ACL_TABLE_PREFIX)
            buckets: Bucket name overrides merged over the defaults
            **pool_kwargs: Passed to AsyncConnectionPool (min_size, max_size, ...)
        """
        settings = load_settings()
        if conninfo is None:
            conninfo = settings.database_url
        if prefix is None:
            prefix = settings.table_prefix

        connection_kwargs = {**pool_kwargs.pop("kwargs", {}), "autocommit": True}
        pool = AsyncConnectionPool(
            conninfo, open=False, kwargs=connection_kwargs, **pool_kwargs
        )
        await pool.open()
        logger.info("Opened ACL backend pool (prefix=%r)", prefix)
        return cls(pool, prefix=prefix, buckets=buckets)

    async def __aenter__(self) -> PostgresBackend:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        """Release the connection pool. Later calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        await self.pool.close()
        logger.info("Closed ACL backend pool")

    def _check_open(self) -> None:
        if self._closed:
            raise BackendClosedError("backend is closed")

    @asynccontextmanager
    async def _connection(self):
        self._check_open()
        async with self.pool.connection() as conn:
            if not conn.autocommit:
                await conn.set_autocommit(True)
            yield conn

    def _slot(self, bucket: str, key: str) -> _Slot:
        return _Slot.of(self.resolver.resolve(bucket), key)

    # =========================================================================
    # Batches
    # =========================================================================

    async def begin(self) -> Batch:
        """Return an empty batch for add/remove/delete to queue work on."""
        self._check_open()
        return Batch()

    async def end(self, batch: Batch) -> None:
        """
        Run every unit queued on ``batch`` concurrently.

        The first failure is raised; units already running are not
        cancelled and their effects are kept.
        """
        check_batch(batch)
        self._check_open()
        await run_batch(batch)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, bucket: str, key: str) -> list[str]:
        """Members stored at ``key`` in ``bucket``; [] when nothing is stored."""
        check_name(bucket, "bucket")
        check_name(key, "key")
        slot = self._slot(bucket, key)
        async with self._connection() as conn:
            cur = await conn.execute(_query(_SELECT_ONE, slot.table), (slot.row_key,))
            row = await cur.fetchone()
        return slot.members(row[0] if row else None)

    async def union(self, bucket: str, keys: list[str]) -> list[str]:
        """Union of the members stored at every key in ``keys``."""
        check_name(bucket, "bucket")
        keys = check_names(keys, "keys")
        resolved = self.resolver.resolve(bucket)

        if resolved.is_nested:
            async with self._connection() as conn:
                cur = await conn.execute(
                    _query(_SELECT_ONE, resolved.table), (resolved.name,)
                )
                row = await cur.fetchone()
            if not row or not row[0]:
                return []
            document = row[0]
            return sets.union(*(document.get(key) for key in keys))

        if not keys:
            return []
        async with self._connection() as conn:
            cur = await conn.execute(_query(_SELECT_MANY, resolved.table), (keys,))
            rows = await cur.fetchall()
        return sets.union(*(row[0] for row in rows))

    async def unions(self, buckets: list[str], keys: list[str]) -> dict[str, list[str]]:
        """
        Union of ``keys`` in each of ``buckets``.

        Returns:
            Dictionary mapping every bucket to its union

        Example:
            await backend.unions(["bucket1", "bucket2"], ["key1"])
            # {"bucket1": ["1", "2", "3"], "bucket2": ["1", "2", "3"]}
        """
        buckets = check_names(buckets, "buckets")
        keys = check_names(keys, "keys")
        results = await asyncio.gather(*(self.union(b, keys) for b in buckets))
        return dict(zip(buckets, results))

    # =========================================================================
    # Writes (queued on a batch)
    # =========================================================================

    async def add(self, batch: Batch, bucket: str, key: str, values: str | list[str]):
        """Queue adding ``values`` to the set at ``key``."""
        check_batch(batch)
        check_name(bucket, "bucket")
        check_name(key, "key")
        values = check_members(values)
        self._check_open()
        slot = self._slot(bucket, key)
        if slot.subkey is not None and not values:
            # Sub-keys only exist with members; nothing to store.
            return

        async def unit():
            await self._add(slot, values)

        batch.append(unit)

    async def remove(self, batch: Batch, bucket: str, key: str, values: str | list[str]):
        """Queue removing ``values`` from the set at ``key``."""
        check_batch(batch)
        check_name(bucket, "bucket")
        check_name(key, "key")
        values = check_members(values)
        self._check_open()
        slot = self._slot(bucket, key)

        async def unit():
            async with self._connection() as conn:
                await self._read_modify_write(
                    conn, slot, lambda stored: slot.reduced(stored, values)
                )

        batch.append(unit)

    async def delete(self, batch: Batch, bucket: str, keys: str | list[str]):
        """
        Queue deleting ``keys`` from ``bucket``.

        For flat-set buckets the rows are deleted outright. For nested-map
        buckets the keys are sub-keys of the bucket's document; the row goes
        away once its document is empty.
        """
        check_batch(batch)
        check_name(bucket, "bucket")
        keys = check_members(keys, "keys")
        self._check_open()
        resolved = self.resolver.resolve(bucket)

        if resolved.is_nested:
            slot = _Slot(resolved, resolved.name)

            async def unit():
                async with self._connection() as conn:
                    await self._read_modify_write(
                        conn, slot, lambda stored: sets.document_omit(stored, keys) or None
                    )

        else:
            # No row lock: a concurrent add may recreate a deleted key.
            async def unit():
                if not keys:
                    return
                async with self._connection() as conn:
                    await conn.execute(_query(_DELETE_MANY, resolved.table), (keys,))

        batch.append(unit)

    async def _add(self, slot: _Slot, values: list[str]) -> None:
        async with self._connection() as conn:
            while True:
                cur = await conn.execute(
                    _query(_INSERT_IGNORE, slot.table),
                    (slot.row_key, Jsonb(slot.seed(values))),
                )
                if cur.rowcount == 1:
                    return

                logger.debug(
                    "Key %r exists in %s, merging under row lock", slot.row_key, slot.table
                )
                merged = await self._read_modify_write(
                    conn, slot, lambda stored: slot.merged(stored, values)
                )
                if merged:
                    return
                # Deleted between the insert and the lock; insert again.
                logger.debug("Key %r vanished from %s, retrying insert", slot.row_key, slot.table)

    async def _read_modify_write(
        self, conn, slot: _Slot, change: Callable[[Any], Any]
    ) -> bool:
        """
        Lock the row for ``slot``, apply ``change`` to its value and write back.

        ``change`` returning None deletes the row. Returns False when there
        is no row to lock.
        """
        async with conn.transaction():
            await conn.execute("SET TRANSACTION ISOLATION LEVEL READ COMMITTED")
            cur = await conn.execute(
                _query(_SELECT_FOR_UPDATE, slot.table), (slot.row_key,)
            )
            row = await cur.fetchone()
            if row is None:
                return False

            value = change(row[0])
            if value is None:
                await conn.execute(_query(_DELETE_ONE, slot.table), (slot.row_key,))
            else:
                await conn.execute(
                    _query(_UPDATE, slot.table), (Jsonb(value), slot.row_key)
                )
        return True

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def clean(self) -> None:
        """Delete every row from every managed table."""
        self._check_open()
        tables = self.resolver.managed_tables
        logger.debug("Cleaning %d tables", len(tables))

        async def wipe(table: str):
            async with self._connection() as conn:
                await conn.execute(_query(_DELETE_ALL, table))

        await asyncio.gather(*(wipe(table) for table in tables))
