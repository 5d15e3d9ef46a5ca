from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class LockGuard(Protocol):
    async def release(self) -> None: ...


class SchedulerLock(Protocol):
    async def try_acquire(self) -> LockGuard | None: ...


class _PostgresGuard:
    def __init__(self, pool: Any, conn: Any, key: int) -> None:
        self._pool = pool
        self._conn = conn
        self._key = key
        self._released = False

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._conn.execute("select pg_advisory_unlock($1)", self._key)
        finally:
            await self._pool.release(self._conn)


class PostgresAdvisoryLock:
    """Cross-process lock on a Postgres session advisory lock.

    Advisory locks belong to the session that took them, so the guard keeps one pooled
    connection checked out until release and unlocks on that same connection.
    """

    def __init__(self, *, pool_factory: Callable[[], Awaitable[Any]], key: int) -> None:
        self._pool_factory = pool_factory
        self.key = key

    async def try_acquire(self) -> _PostgresGuard | None:
        pool = await self._pool_factory()
        conn = await pool.acquire()
        try:
            acquired = await conn.fetchval("select pg_try_advisory_lock($1)", self.key)
        except Exception:
            await pool.release(conn)
            raise
        if not acquired:
            await pool.release(conn)
            return None
        return _PostgresGuard(pool, conn, self.key)


class _InMemoryGuard:
    def __init__(self, lock: InMemoryLock) -> None:
        self._lock = lock

    async def release(self) -> None:
        self._lock.held = False


class InMemoryLock:
    """Single-process stand-in for the advisory lock."""

    def __init__(self) -> None:
        self.held = False

    async def try_acquire(self) -> _InMemoryGuard | None:
        if self.held:
            return None
        self.held = True
        return _InMemoryGuard(self)
