"""
Advisory locks guarding overlapping migrate and rollback operations.

Example:
    >>> from ccmigrate.locks import InMemoryLockManager, migration_lock_key
    >>>
    >>> locks = InMemoryLockManager()
    >>> key = migration_lock_key("org-1", "env-prod", EntityType.USER)
    >>> try:
    ...     async with locks.acquire(key, timeout=5.0):
    ...         await migrate_users()
    ... except LockAcquisitionError:
    ...     print("Another migration of users for this pair is running")
"""

from ccmigrate.locks.in_memory import InMemoryLockManager
from ccmigrate.locks.interface import (
    LockAcquisitionError,
    LockInfo,
    LockManager,
    LockNotHeldError,
    key_to_lock_id,
    migration_lock_key,
)
from ccmigrate.locks.postgresql import PostgreSQLLockManager

__all__ = [
    "InMemoryLockManager",
    "LockAcquisitionError",
    "LockInfo",
    "LockManager",
    "LockNotHeldError",
    "PostgreSQLLockManager",
    "key_to_lock_id",
    "migration_lock_key",
]
