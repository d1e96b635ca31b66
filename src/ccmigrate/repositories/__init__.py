"""
Persistence for backups and rollback runs.
"""

from ccmigrate.repositories.backup import (
    BackupRepository,
    InMemoryBackupRepository,
    SQLBackupRepository,
)

__all__ = [
    "BackupRepository",
    "InMemoryBackupRepository",
    "SQLBackupRepository",
]
