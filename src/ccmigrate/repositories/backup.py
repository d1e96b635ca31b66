"""
BackupRepository - Storage for backups and the rollback runs restoring them.

The engine returns every manifest and run record to its caller; this
repository is the caller-owned durable store the backup and rollback
managers write through. Two implementations ship:

- InMemoryBackupRepository: default, process-local
- SQLBackupRepository: SQLAlchemy async, portable SQL tested on SQLite
  (aiosqlite) and intended for PostgreSQL (asyncpg)

Database Tables:
    ccmigrate_backups(backup_id, migration_id, created_at, manifest, snapshot)
    ccmigrate_rollback_runs(rollback_id, backup_id, status, run, updated_at)

    ``manifest``, ``snapshot`` and ``run`` hold the JSON of the records'
    ``to_dict()`` output. ``create_tables()`` creates both tables.

Usage:
    >>> engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    >>> repo = SQLBackupRepository(engine)
    >>> await repo.create_tables()
    >>> await repo.save_backup(manifest, snapshot)
    >>> latest = await repo.list_manifests(migration_id="mig-1")
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ccmigrate.models import BackupManifest, BackupSnapshot, RollbackRun
from ccmigrate.observability import Tracer, create_tracer
from ccmigrate.observability.attributes import (
    ATTR_BACKUP_ID,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_ID,
    ATTR_ROLLBACK_ID,
)

logger = logging.getLogger(__name__)


@runtime_checkable
class BackupRepository(Protocol):
    """
    Protocol for backup and rollback run persistence.

    Manifests and snapshots are written once and never updated. Rollback runs
    are upserted after every step.
    """

    async def save_backup(self, manifest: BackupManifest, snapshot: BackupSnapshot) -> None:
        """
        Persist a new backup.

        Args:
            manifest: Backup descriptor
            snapshot: Captured records
        """
        ...

    async def get_manifest(self, backup_id: str) -> BackupManifest | None:
        """
        Get a backup manifest by id.

        Returns:
            The manifest, or None if not found
        """
        ...

    async def get_snapshot(self, backup_id: str) -> BackupSnapshot | None:
        """
        Get the captured records of a backup.

        Returns:
            The snapshot, or None if not found
        """
        ...

    async def list_manifests(self, migration_id: str | None = None) -> list[BackupManifest]:
        """
        List backups, newest first.

        Args:
            migration_id: Restrict to one migration when given
        """
        ...

    async def delete_backup(self, backup_id: str) -> bool:
        """
        Delete a backup.

        Returns:
            True if a backup was deleted, False if it did not exist
        """
        ...

    async def save_rollback(self, run: RollbackRun) -> None:
        """Insert or replace a rollback run record."""
        ...

    async def get_rollback(self, rollback_id: str) -> RollbackRun | None:
        """
        Get a rollback run by id.

        Returns:
            The run, or None if not found
        """
        ...


class InMemoryBackupRepository:
    """
    In-memory implementation of BackupRepository.

    Records are stored as their dictionary form so callers never share
    mutable RollbackRun instances with the repository.

    Example:
        >>> repo = InMemoryBackupRepository()
        >>> await repo.save_backup(manifest, snapshot)
        >>> await repo.get_manifest(manifest.backup_id)
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._manifests: dict[str, BackupManifest] = {}
        self._snapshots: dict[str, BackupSnapshot] = {}
        self._runs: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def save_backup(self, manifest: BackupManifest, snapshot: BackupSnapshot) -> None:
        with self._tracer.span(
            "ccmigrate.backup_repo.save_backup",
            {ATTR_BACKUP_ID: manifest.backup_id, ATTR_MIGRATION_ID: manifest.migration_id},
        ):
            async with self._lock:
                self._manifests[manifest.backup_id] = manifest
                self._snapshots[manifest.backup_id] = BackupSnapshot.from_dict(
                    json.loads(json.dumps(snapshot.to_dict()))
                )

    async def get_manifest(self, backup_id: str) -> BackupManifest | None:
        async with self._lock:
            return self._manifests.get(backup_id)

    async def get_snapshot(self, backup_id: str) -> BackupSnapshot | None:
        async with self._lock:
            return self._snapshots.get(backup_id)

    async def list_manifests(self, migration_id: str | None = None) -> list[BackupManifest]:
        async with self._lock:
            manifests = [
                m
                for m in self._manifests.values()
                if migration_id is None or m.migration_id == migration_id
            ]
        return sorted(manifests, key=lambda m: (m.created_at, m.backup_id), reverse=True)

    async def delete_backup(self, backup_id: str) -> bool:
        with self._tracer.span(
            "ccmigrate.backup_repo.delete_backup",
            {ATTR_BACKUP_ID: backup_id},
        ):
            async with self._lock:
                self._snapshots.pop(backup_id, None)
                return self._manifests.pop(backup_id, None) is not None

    async def save_rollback(self, run: RollbackRun) -> None:
        async with self._lock:
            self._runs[run.rollback_id] = run.to_dict()

    async def get_rollback(self, rollback_id: str) -> RollbackRun | None:
        async with self._lock:
            data = self._runs.get(rollback_id)
        return RollbackRun.from_dict(data) if data else None


class SQLBackupRepository:
    """
    SQLAlchemy async implementation of BackupRepository.

    Uses plain ``text()`` SQL that runs on both PostgreSQL and SQLite
    (UPSERT requires SQLite 3.24+). Timestamps are stored as ISO 8601 text in
    UTC so lexical ordering is chronological.

    Example:
        >>> async with engine.begin() as conn:
        ...     repo = SQLBackupRepository(conn)
        ...     await repo.save_backup(manifest, snapshot)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the repository.

        Args:
            conn: Database connection or engine
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn
        self._db_system = conn.dialect.name

    def _attributes(self, operation: str, **extra: str) -> dict[str, str]:
        return {ATTR_DB_SYSTEM: self._db_system, ATTR_DB_OPERATION: operation, **extra}

    @asynccontextmanager
    async def _connect(self, *, write: bool) -> AsyncIterator[AsyncConnection]:
        # A connection handed in by the caller is used as is; the caller owns its transaction
        if not isinstance(self._conn, AsyncEngine):
            yield self._conn
        elif write:
            async with self._conn.begin() as conn:
                yield conn
        else:
            async with self._conn.connect() as conn:
                yield conn

    async def create_tables(self) -> None:
        """Create the backup and rollback run tables if they do not exist."""
        with self._tracer.span(
            "ccmigrate.backup_repo.create_tables",
            self._attributes("create_tables"),
        ):
            async with self._connect(write=True) as conn:
                await conn.execute(
                    text("""
                        CREATE TABLE IF NOT EXISTS ccmigrate_backups (
                            backup_id VARCHAR(255) PRIMARY KEY,
                            migration_id VARCHAR(255) NOT NULL,
                            created_at VARCHAR(64) NOT NULL,
                            manifest TEXT NOT NULL,
                            snapshot TEXT NOT NULL
                        )
                    """)
                )
                await conn.execute(
                    text("""
                        CREATE INDEX IF NOT EXISTS idx_ccmigrate_backups_migration
                        ON ccmigrate_backups (migration_id, created_at)
                    """)
                )
                await conn.execute(
                    text("""
                        CREATE TABLE IF NOT EXISTS ccmigrate_rollback_runs (
                            rollback_id VARCHAR(255) PRIMARY KEY,
                            backup_id VARCHAR(255) NOT NULL,
                            status VARCHAR(64) NOT NULL,
                            run TEXT NOT NULL,
                            updated_at VARCHAR(64) NOT NULL
                        )
                    """)
                )

    async def save_backup(self, manifest: BackupManifest, snapshot: BackupSnapshot) -> None:
        """
        Persist a new backup.

        Args:
            manifest: Backup descriptor
            snapshot: Captured records
        """
        with self._tracer.span(
            "ccmigrate.backup_repo.save_backup",
            self._attributes(
                "insert",
                **{ATTR_BACKUP_ID: manifest.backup_id, ATTR_MIGRATION_ID: manifest.migration_id},
            ),
        ):
            query = text("""
                INSERT INTO ccmigrate_backups (
                    backup_id, migration_id, created_at, manifest, snapshot
                ) VALUES (
                    :backup_id, :migration_id, :created_at, :manifest, :snapshot
                )
            """)
            params = {
                "backup_id": manifest.backup_id,
                "migration_id": manifest.migration_id,
                "created_at": manifest.created_at.astimezone(UTC).isoformat(),
                "manifest": json.dumps(manifest.to_dict()),
                "snapshot": json.dumps(snapshot.to_dict()),
            }
            async with self._connect(write=True) as conn:
                await conn.execute(query, params)

    async def get_manifest(self, backup_id: str) -> BackupManifest | None:
        """
        Get a backup manifest by id.

        Returns:
            The manifest, or None if not found
        """
        with self._tracer.span(
            "ccmigrate.backup_repo.get_manifest",
            self._attributes("select", **{ATTR_BACKUP_ID: backup_id}),
        ):
            query = text("SELECT manifest FROM ccmigrate_backups WHERE backup_id = :backup_id")
            async with self._connect(write=False) as conn:
                result = await conn.execute(query, {"backup_id": backup_id})
                row = result.fetchone()
            return BackupManifest.from_dict(json.loads(row[0])) if row else None

    async def get_snapshot(self, backup_id: str) -> BackupSnapshot | None:
        """
        Get the captured records of a backup.

        Returns:
            The snapshot, or None if not found
        """
        with self._tracer.span(
            "ccmigrate.backup_repo.get_snapshot",
            self._attributes("select", **{ATTR_BACKUP_ID: backup_id}),
        ):
            query = text("SELECT snapshot FROM ccmigrate_backups WHERE backup_id = :backup_id")
            async with self._connect(write=False) as conn:
                result = await conn.execute(query, {"backup_id": backup_id})
                row = result.fetchone()
            return BackupSnapshot.from_dict(json.loads(row[0])) if row else None

    async def list_manifests(self, migration_id: str | None = None) -> list[BackupManifest]:
        """
        List backups, newest first.

        Args:
            migration_id: Restrict to one migration when given
        """
        with self._tracer.span(
            "ccmigrate.backup_repo.list_manifests",
            self._attributes("select"),
        ):
            if migration_id is None:
                query = text("""
                    SELECT manifest FROM ccmigrate_backups
                    ORDER BY created_at DESC, backup_id DESC
                """)
                params: dict[str, str] = {}
            else:
                query = text("""
                    SELECT manifest FROM ccmigrate_backups
                    WHERE migration_id = :migration_id
                    ORDER BY created_at DESC, backup_id DESC
                """)
                params = {"migration_id": migration_id}

            async with self._connect(write=False) as conn:
                result = await conn.execute(query, params)
                rows = result.fetchall()
            return [BackupManifest.from_dict(json.loads(row[0])) for row in rows]

    async def delete_backup(self, backup_id: str) -> bool:
        """
        Delete a backup.

        Returns:
            True if a backup was deleted, False if it did not exist
        """
        with self._tracer.span(
            "ccmigrate.backup_repo.delete_backup",
            self._attributes("delete", **{ATTR_BACKUP_ID: backup_id}),
        ):
            query = text("DELETE FROM ccmigrate_backups WHERE backup_id = :backup_id")
            async with self._connect(write=True) as conn:
                result = await conn.execute(query, {"backup_id": backup_id})
            deleted = result.rowcount > 0
            if deleted:
                logger.info("Deleted backup %s", backup_id)
            return deleted

    async def save_rollback(self, run: RollbackRun) -> None:
        """Insert or replace a rollback run record."""
        with self._tracer.span(
            "ccmigrate.backup_repo.save_rollback",
            self._attributes(
                "upsert",
                **{ATTR_ROLLBACK_ID: run.rollback_id, ATTR_BACKUP_ID: run.backup_id},
            ),
        ):
            query = text("""
                INSERT INTO ccmigrate_rollback_runs (
                    rollback_id, backup_id, status, run, updated_at
                ) VALUES (
                    :rollback_id, :backup_id, :status, :run, :updated_at
                )
                ON CONFLICT (rollback_id) DO UPDATE
                SET status = excluded.status,
                    run = excluded.run,
                    updated_at = excluded.updated_at
            """)
            params = {
                "rollback_id": run.rollback_id,
                "backup_id": run.backup_id,
                "status": run.status.value,
                "run": json.dumps(run.to_dict()),
                "updated_at": datetime.now(UTC).isoformat(),
            }
            async with self._connect(write=True) as conn:
                await conn.execute(query, params)

    async def get_rollback(self, rollback_id: str) -> RollbackRun | None:
        """
        Get a rollback run by id.

        Returns:
            The run, or None if not found
        """
        with self._tracer.span(
            "ccmigrate.backup_repo.get_rollback",
            self._attributes("select", **{ATTR_ROLLBACK_ID: rollback_id}),
        ):
            query = text(
                "SELECT run FROM ccmigrate_rollback_runs WHERE rollback_id = :rollback_id"
            )
            async with self._connect(write=False) as conn:
                result = await conn.execute(query, {"rollback_id": rollback_id})
                row = result.fetchone()
            return RollbackRun.from_dict(json.loads(row[0])) if row else None
