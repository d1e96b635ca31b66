"""
Process-local advisory locks.

The default lock manager of MigrationEngine. Guards overlapping operations
within one process; use PostgreSQLLockManager when several engine instances
share a target.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from ccmigrate.locks.interface import (
    LockAcquisitionError,
    LockInfo,
    LockNotHeldError,
    key_to_lock_id,
)
from ccmigrate.observability import Tracer, create_tracer
from ccmigrate.observability.attributes import (
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
)

logger = logging.getLogger(__name__)


class InMemoryLockManager:
    """
    Manages advisory locks with one asyncio.Lock per key.

    Example:
        >>> locks = InMemoryLockManager()
        >>> async with locks.acquire("ccmigrate:org-1:env-prod:user", timeout=5.0):
        ...     await migrate_users()
    """

    def __init__(
        self,
        *,
        holder_id: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._holder_id = holder_id
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> AsyncIterator[LockInfo]:
        """
        Acquire a lock as a context manager.

        Args:
            key: String key identifying the lock
            timeout: Maximum seconds to wait for lock (None = wait forever)

        Yields:
            LockInfo with lock details

        Raises:
            LockAcquisitionError: If lock cannot be acquired within timeout
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        lock_id = key_to_lock_id(key)

        with self._tracer.span(
            "ccmigrate.lock.acquire",
            {
                ATTR_LOCK_KEY: key,
                ATTR_LOCK_ID: lock_id,
                ATTR_LOCK_TIMEOUT: timeout if timeout is not None else -1,
            },
        ) as span:
            try:
                if timeout is None:
                    await lock.acquire()
                else:
                    await asyncio.wait_for(lock.acquire(), timeout)
            except TimeoutError:
                if span:
                    span.set_attribute(ATTR_LOCK_ACQUIRED, False)
                raise LockAcquisitionError(
                    key=key,
                    reason=f"Timeout after {timeout}s",
                    timeout=timeout,
                ) from None
            if span:
                span.set_attribute(ATTR_LOCK_ACQUIRED, True)

        logger.debug("Acquired lock: key=%s", key)
        try:
            yield LockInfo(
                key=key,
                lock_id=lock_id,
                acquired_at=datetime.now(UTC),
                holder_id=self._holder_id,
            )
        finally:
            lock.release()
            logger.debug("Released lock: key=%s", key)

    async def try_acquire(self, key: str) -> LockInfo | None:
        """
        Try to acquire a lock without blocking.

        Returns:
            LockInfo if acquired, None if the lock is already held

        The lock stays held until release() is called.
        """
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            return None
        await lock.acquire()
        logger.debug("Acquired lock (try): key=%s", key)
        return LockInfo(
            key=key,
            lock_id=key_to_lock_id(key),
            acquired_at=datetime.now(UTC),
            holder_id=self._holder_id,
        )

    async def release(self, key: str) -> None:
        """
        Release a lock taken with try_acquire().

        Raises:
            LockNotHeldError: If the lock is not held
        """
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            raise LockNotHeldError(key)
        lock.release()
        logger.debug("Released lock: key=%s", key)

    async def is_held(self, key: str) -> bool:
        """
        Check if a lock is currently held.

        Args:
            key: String key identifying the lock

        Returns:
            True if lock is held, False otherwise
        """
        lock = self._locks.get(key)
        return lock is not None and lock.locked()
