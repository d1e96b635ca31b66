"""
Lock types shared by the lock manager implementations.

Every migrate call and every rollback step holds an advisory lock keyed by
``(source org, target env, entity type)`` so overlapping operations against
the same pair cannot race and double-create entities.
"""

from __future__ import annotations

import hashlib
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from ccmigrate.entities import EntityType
from ccmigrate.exceptions import (
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    MigrationEngineError,
)


@dataclass(frozen=True)
class LockInfo:
    """
    Information about an acquired lock.

    Attributes:
        key: The string key used to identify the lock
        lock_id: Numeric lock id derived from the key hash
        acquired_at: When the lock was acquired
        holder_id: Optional identifier for the lock holder (for debugging)
    """

    key: str
    lock_id: int
    acquired_at: datetime
    holder_id: str | None = None


class LockAcquisitionError(MigrationEngineError):
    """
    Raised when a lock cannot be acquired.

    Attributes:
        key: The lock key that could not be acquired
        reason: Description of why acquisition failed
        timeout: The timeout value if timeout was the cause
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="LOCK_ACQUISITION_FAILED",
        category="concurrency",
        suggested_action=(
            "Another operation holds the lock for this source/target pair; "
            "wait for it to finish and re-run"
        ),
    )

    def __init__(
        self,
        key: str,
        reason: str,
        timeout: float | None = None,
    ):
        self.key = key
        self.reason = reason
        self.timeout = timeout
        super().__init__(f"Failed to acquire lock '{key}': {reason}")


class LockNotHeldError(MigrationEngineError):
    """
    Raised when attempting to release a lock not held.

    Attributes:
        key: The lock key that was not held
    """

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Lock '{key}' is not held by this manager")


@runtime_checkable
class LockManager(Protocol):
    """
    Protocol for advisory lock managers.

    ``acquire`` is an async context manager releasing the lock on exit,
    whether normally or due to an exception. ``try_acquire`` and ``release``
    hold a lock across calls, e.g. to keep migrations and rollbacks out of
    an environment during maintenance.
    """

    def acquire(
        self,
        key: str,
        *,
        timeout: float | None = None,
    ) -> AbstractAsyncContextManager[LockInfo]:
        """
        Acquire the lock for ``key``.

        Args:
            key: Lock key
            timeout: Maximum seconds to wait (None = wait forever)

        Raises:
            LockAcquisitionError: If the lock cannot be acquired within timeout
        """
        ...

    async def try_acquire(self, key: str) -> LockInfo | None:
        """
        Take the lock without waiting; None if it is already held.

        The lock stays held until ``release(key)``, for critical sections
        spanning several engine calls.
        """
        ...

    async def release(self, key: str) -> None:
        """
        Release a lock taken with try_acquire().

        Raises:
            LockNotHeldError: If the lock is not held
        """
        ...

    async def is_held(self, key: str) -> bool:
        """Check if a lock is currently held by this manager."""
        ...


def key_to_lock_id(key: str) -> int:
    """
    Convert a string key to a 63-bit lock id.

    Uses the first 8 bytes of the key's SHA-256 digest, masked to 63 bits so
    the id fits a signed PostgreSQL bigint.
    """
    hash_bytes = hashlib.sha256(key.encode()).digest()
    return int.from_bytes(hash_bytes[:8], byteorder="big") & 0x7FFFFFFFFFFFFFFF


def migration_lock_key(
    source_org_ref: str,
    target_env_ref: str,
    entity_type: EntityType,
) -> str:
    """
    Create the lock key guarding one source/target pair and entity type.

    Args:
        source_org_ref: Source organization reference
        target_env_ref: Target environment reference
        entity_type: Kind of entity being written

    Returns:
        Lock key string in format "ccmigrate:{source}:{target}:{entity_type}"

    Example:
        >>> migration_lock_key("org-1", "env-prod", EntityType.USER)
        'ccmigrate:org-1:env-prod:user'
    """
    return f"ccmigrate:{source_org_ref}:{target_env_ref}:{entity_type.value}"


__all__ = [
    "LockAcquisitionError",
    "LockInfo",
    "LockManager",
    "LockNotHeldError",
    "key_to_lock_id",
    "migration_lock_key",
]
