"""Named advisory locks guarding reconciliation runs.

Every instance of the service runs its own scheduler, so the same cron tick
fires everywhere at once. A task body only runs while holding the lock named
``reconciliation_<task_id>``; instances that lose the race skip the run.

Backends:
- ``PostgresAdvisoryLockProvider``: session-level ``pg_try_advisory_lock`` on a
  dedicated connection (shared database, no extra infrastructure).
- ``RedisLockProvider``: ``redis.asyncio`` lock with auto-expiry, renewed while
  the body runs.
- ``InProcessLockProvider``: named ``asyncio.Lock`` objects; only excludes runs
  inside one process (development, tests, single-instance deployments).

All providers acquire without blocking and release on every exit path.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Protocol, TypeVar

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

from email_reconciler.config import LOCK_SETTINGS
from email_reconciler.database import is_postgres_url
from email_reconciler.utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class LockOutcome(Generic[T]):
    """``acquired`` False means another holder has it (or the backend failed, see ``error``)."""
    acquired: bool
    result: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def success(self) -> bool:
        return self.acquired and self.error is None


class LockProvider(Protocol):
    backend: str

    async def with_lock(self, name: str, body: Callable[[], Awaitable[T]]) -> LockOutcome[T]: ...


async def _run_body(name: str, body: Callable[[], Awaitable[T]]) -> LockOutcome[T]:
    try:
        return LockOutcome(acquired=True, result=await body())
    except Exception as e:
        logger.error("Locked body raised", lock_name=name, error=str(e), exc_info=True)
        return LockOutcome(acquired=True, error=e)


class InProcessLockProvider:
    backend = "memory"

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    async def with_lock(self, name: str, body: Callable[[], Awaitable[T]]) -> LockOutcome[T]:
        lock = self._locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            return LockOutcome(acquired=False)
        async with lock:
            return await _run_body(name, body)

    def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return bool(lock and lock.locked())


class PostgresAdvisoryLockProvider:
    backend = "postgres"

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def _connect(self) -> Connection:
        return self._engine.connect().execution_options(isolation_level="AUTOCOMMIT")

    @staticmethod
    def _try_lock(conn: Connection, name: str) -> bool:
        return bool(conn.execute(text("SELECT pg_try_advisory_lock(hashtext(:name))"), {"name": name}).scalar())

    @staticmethod
    def _unlock(conn: Connection, name: str) -> None:
        conn.execute(text("SELECT pg_advisory_unlock(hashtext(:name))"), {"name": name})

    async def with_lock(self, name: str, body: Callable[[], Awaitable[T]]) -> LockOutcome[T]:
        try:
            conn = await asyncio.to_thread(self._connect)
        except Exception as e:
            logger.error("Could not open advisory lock connection", lock_name=name, error=str(e))
            return LockOutcome(acquired=False, error=e)

        try:
            try:
                acquired = await asyncio.to_thread(self._try_lock, conn, name)
            except Exception as e:
                logger.error("Advisory lock acquisition failed", lock_name=name, error=str(e))
                return LockOutcome(acquired=False, error=e)
            if not acquired:
                return LockOutcome(acquired=False)
            try:
                return await _run_body(name, body)
            finally:
                try:
                    await asyncio.to_thread(self._unlock, conn, name)
                except Exception as e:
                    # A pooled connection would keep the session, and the lock, alive.
                    logger.error("Advisory unlock failed, discarding connection", lock_name=name, error=str(e))
                    await asyncio.to_thread(conn.invalidate)
        finally:
            await asyncio.to_thread(conn.close)


class RedisLockProvider:
    backend = "redis"

    def __init__(self, redis_url: Optional[str] = None, timeout_seconds: Optional[float] = None, client: Any = None) -> None:
        self._redis_url = str(redis_url or LOCK_SETTINGS["redis_url"])
        self._timeout = float(timeout_seconds or LOCK_SETTINGS["redis_lock_timeout_seconds"])
        self._prefix = str(LOCK_SETTINGS["key_prefix"])
        self._client = client if client is not None else aioredis.from_url(self._redis_url)

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError) as e:
            logger.warning("Redis health check failed", error=str(e))
            return False

    async def with_lock(self, name: str, body: Callable[[], Awaitable[T]]) -> LockOutcome[T]:
        lock = self._client.lock(f"{self._prefix}{name}", timeout=self._timeout, blocking=False)
        try:
            acquired = await lock.acquire()
        except (RedisError, OSError) as e:
            logger.error("Redis lock acquisition failed", lock_name=name, error=str(e))
            return LockOutcome(acquired=False, error=e)
        if not acquired:
            return LockOutcome(acquired=False)
        keepalive = asyncio.create_task(self._keep_alive(lock, name), name=f"lock-keepalive-{name}")
        try:
            return await _run_body(name, body)
        finally:
            keepalive.cancel()
            try:
                await keepalive
            except asyncio.CancelledError:
                pass
            try:
                await lock.release()
            except LockError as e:
                # Expired while the body ran; someone else may now hold it.
                logger.warning("Redis lock already released", lock_name=name, error=str(e))

    async def _keep_alive(self, lock: Any, name: str) -> None:
        """Reset the TTL every third of it while the body runs."""
        interval = self._timeout / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await lock.extend(self._timeout, replace_ttl=True)
            except (LockError, RedisError, OSError) as e:
                logger.error("Redis lock renewal failed", lock_name=name, error=str(e))
                return

    async def close(self) -> None:
        await self._client.aclose()


async def create_lock_provider(database_url: str, engine: Optional[Engine] = None) -> LockProvider:
    """Create the lock provider selected by LOCK_SETTINGS["backend"]."""
    backend = str(LOCK_SETTINGS.get("backend", "auto"))
    if backend == "auto":
        backend = "postgres" if is_postgres_url(database_url) else "memory"
        if backend == "memory":
            logger.warning("Using in-process locks; runs are only exclusive within this process")

    if backend == "postgres":
        if engine is None or not is_postgres_url(database_url):
            logger.warning("PostgreSQL advisory locks need a PostgreSQL database. Using in-process locks.")
            return InProcessLockProvider()
        logger.info("Using PostgreSQL advisory locks")
        return PostgresAdvisoryLockProvider(engine)

    if backend == "redis":
        try:
            provider = RedisLockProvider()
            if await provider.health_check():
                logger.info("Using Redis-backed locks")
                return provider
            logger.warning("Redis server is not reachable. Using in-process locks.")
        except Exception as e:
            logger.warning("Error initializing Redis locks, falling back to in-process locks", error=str(e))
        return InProcessLockProvider()

    if backend != "memory":
        logger.warning("Unknown lock backend, using in-process locks", backend=backend)
    return InProcessLockProvider()


__all__ = [
    "LockOutcome",
    "LockProvider",
    "InProcessLockProvider",
    "PostgresAdvisoryLockProvider",
    "RedisLockProvider",
    "create_lock_provider",
]
