"""
PostgreSQL advisory locks for engines sharing a target across processes.

Each held lock pins one session, since PostgreSQL advisory locks belong to
the session that took them and vanish when it closes. Size the connection
pool for the number of migrate calls and rollback steps running at once.

Usage:
    >>> lock_manager = PostgreSQLLockManager(async_sessionmaker(engine))
    >>> engine = MigrationEngine(source, target, lock_manager=lock_manager)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ccmigrate.locks.interface import (
    LockAcquisitionError,
    LockInfo,
    LockNotHeldError,
    key_to_lock_id,
)
from ccmigrate.observability import Tracer, create_tracer
from ccmigrate.observability.attributes import (
    ATTR_DB_SYSTEM,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
)

logger = logging.getLogger(__name__)

_LOCK_SQL = text("SELECT pg_advisory_lock(:lock_id)")
_TRY_LOCK_SQL = text("SELECT pg_try_advisory_lock(:lock_id)")
_UNLOCK_SQL = text("SELECT pg_advisory_unlock(:lock_id)")


@dataclass
class _HeldLock:
    session: AsyncSession
    info: LockInfo


class PostgreSQLLockManager:
    """
    Lock manager backed by session-level PostgreSQL advisory locks.

    Without a timeout the acquire blocks inside PostgreSQL; with one the
    manager polls ``pg_try_advisory_lock`` every ``retry_interval`` seconds
    until the deadline.

    Example:
        >>> locks = PostgreSQLLockManager(session_factory, holder_id="worker-2")
        >>> key = migration_lock_key("org-1", "env-prod", EntityType.USER)
        >>> async with locks.acquire(key, timeout=30.0):
        ...     await create_users()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        holder_id: str | None = None,
        retry_interval: float = 0.1,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the lock manager.

        Args:
            session_factory: Builds the session each lock is held on
            holder_id: Identifier reported in LockInfo
            retry_interval: Seconds between polls when a timeout is given
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._session_factory = session_factory
        self._holder_id = holder_id
        self._retry_interval = retry_interval
        self._held: dict[str, _HeldLock] = {}
        self._guard = asyncio.Lock()

    @property
    def held_lock_count(self) -> int:
        return len(self._held)

    async def is_held(self, key: str) -> bool:
        async with self._guard:
            return key in self._held

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[LockInfo]:
        """
        Hold the advisory lock for ``key`` for the duration of the block.

        Raises:
            LockAcquisitionError: On timeout or when the database call fails.
                The session is closed before the error propagates.
        """
        lock_id = key_to_lock_id(key)
        attributes = {
            ATTR_LOCK_KEY: key,
            ATTR_LOCK_ID: lock_id,
            ATTR_LOCK_TIMEOUT: -1 if timeout is None else timeout,
            ATTR_DB_SYSTEM: "postgresql",
        }

        with self._tracer.span("ccmigrate.lock.acquire", attributes) as span:
            session = self._session_factory()
            try:
                await self._lock(session, key, lock_id, timeout)
            except BaseException:
                if span:
                    span.set_attribute(ATTR_LOCK_ACQUIRED, False)
                await session.close()
                raise
            if span:
                span.set_attribute(ATTR_LOCK_ACQUIRED, True)

        info = await self._hold(key, lock_id, session)

        try:
            yield info
        finally:
            await self._unlock(key)

    async def try_acquire(self, key: str) -> LockInfo | None:
        """
        Take the lock for ``key`` if no other session holds it.

        The lock stays held until ``release(key)``, so it can span several
        operations, for instance keeping migrations out of an environment
        during maintenance.

        Returns:
            LockInfo if acquired, None if the lock is already held

        Raises:
            LockAcquisitionError: When the database call fails
        """
        lock_id = key_to_lock_id(key)
        session = self._session_factory()
        try:
            acquired = (await session.execute(_TRY_LOCK_SQL, {"lock_id": lock_id})).scalar()
        except Exception as e:
            await session.close()
            raise LockAcquisitionError(key, f"Database error: {e}") from e
        if not acquired:
            await session.close()
            return None
        return await self._hold(key, lock_id, session)

    async def release(self, key: str) -> None:
        """
        Release a lock taken with try_acquire().

        Raises:
            LockNotHeldError: If this manager does not hold the lock
        """
        if not await self.is_held(key):
            raise LockNotHeldError(key)
        await self._unlock(key)

    async def _hold(self, key: str, lock_id: int, session: AsyncSession) -> LockInfo:
        info = LockInfo(
            key=key,
            lock_id=lock_id,
            acquired_at=datetime.now(UTC),
            holder_id=self._holder_id,
        )
        async with self._guard:
            self._held[key] = _HeldLock(session, info)
        logger.debug("Holding advisory lock %d for %s", lock_id, key)
        return info

    async def _lock(
        self,
        session: AsyncSession,
        key: str,
        lock_id: int,
        timeout: float | None,
    ) -> None:
        params = {"lock_id": lock_id}
        try:
            if timeout is None:
                await session.execute(_LOCK_SQL, params)
                return

            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while not (await session.execute(_TRY_LOCK_SQL, params)).scalar():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise LockAcquisitionError(key, f"Timeout after {timeout}s", timeout=timeout)
                await asyncio.sleep(min(self._retry_interval, remaining))
        except (LockAcquisitionError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise LockAcquisitionError(key, f"Database error: {e}") from e

    async def _unlock(self, key: str) -> None:
        async with self._guard:
            held = self._held.pop(key)
        lock_id = held.info.lock_id

        with self._tracer.span("ccmigrate.lock.release", {ATTR_LOCK_KEY: key, ATTR_LOCK_ID: lock_id}):
            try:
                await held.session.execute(_UNLOCK_SQL, {"lock_id": lock_id})
            except Exception as e:
                # closing the session drops the lock regardless
                logger.warning("Could not unlock advisory lock %d for %s: %s", lock_id, key, e)
            finally:
                await held.session.close()
        logger.debug("Released advisory lock %d for %s", lock_id, key)
