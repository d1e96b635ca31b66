"""
Engine facade.

MigrationEngine wires one source/target connector pair to the executor, the
backup manager and the rollback manager so they share configuration, the
advisory lock manager, the backup repository, metrics and the tracer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

from ccmigrate.backup import BackupManager
from ccmigrate.cancellation import CancellationToken
from ccmigrate.config import EngineConfig
from ccmigrate.connectors import SourceConnector, TargetConnector
from ccmigrate.entities import EntityType
from ccmigrate.executor import MigrateOptions, MigrationExecutor
from ccmigrate.locks import InMemoryLockManager, LockManager
from ccmigrate.metrics import EngineMetrics
from ccmigrate.models import (
    BackupComponentName,
    BackupManifest,
    CompressionLevel,
    IntegrityChecks,
    MatchResult,
    MigrationBatchResult,
    RollbackRun,
    RollbackScope,
    ValidationReport,
)
from ccmigrate.observability import Tracer, create_tracer
from ccmigrate.reconciliation import ReconciliationMatcher
from ccmigrate.repositories import BackupRepository, InMemoryBackupRepository
from ccmigrate.rollback import RollbackManager

logger = logging.getLogger(__name__)


class MigrationEngine:
    """
    Migration, reconciliation, backup and rollback for one platform pair.

    Example:
        >>> engine = MigrationEngine(source, target)
        >>> result = await engine.migrate("user", "org-1", "env-prod", dry_run=True)
        >>> manifest = await engine.create_backup("mig-1", "org-1", "env-prod", ["Users"])
        >>> run = await engine.rollback("rb-1", manifest.backup_id, "env-prod")
    """

    def __init__(
        self,
        source: SourceConnector,
        target: TargetConnector,
        *,
        config: EngineConfig | None = None,
        repository: BackupRepository | None = None,
        lock_manager: LockManager | None = None,
        metrics: EngineMetrics | None = None,
        sandbox_factory: Callable[[], TargetConnector] | None = None,
        tracer: Tracer | None = None,
    ):
        """
        Initialize the engine.

        Args:
            source: Source platform connector
            target: Target platform connector
            config: Engine configuration (default: EngineConfig())
            repository: Backup and rollback run storage (default: in-memory)
            lock_manager: Advisory lock manager (default: process-local)
            metrics: Metrics container (default: created from config)
            sandbox_factory: Builds the target used by test restores
            tracer: Optional custom Tracer instance (default: from config)
        """
        self._config = config or EngineConfig()
        self._tracer = tracer or create_tracer(__name__, self._config.enable_tracing)
        self._metrics = metrics or EngineMetrics(enable_metrics=self._config.enable_metrics)
        self._locks = lock_manager or InMemoryLockManager(tracer=self._tracer)
        repository = repository or InMemoryBackupRepository(tracer=self._tracer)

        self.executor = MigrationExecutor(
            source,
            target,
            matcher=ReconciliationMatcher(),
            lock_manager=self._locks,
            config=self._config,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        self.backups = BackupManager(
            target,
            repository=repository,
            config=self._config,
            metrics=self._metrics,
            sandbox_factory=sandbox_factory,
            tracer=self._tracer,
        )
        self.rollbacks = RollbackManager(
            target,
            self.backups,
            lock_manager=self._locks,
            config=self._config,
            metrics=self._metrics,
            tracer=self._tracer,
        )
        logger.debug("Migration engine configured: %s", self._config.to_dict())

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def metrics(self) -> EngineMetrics:
        return self._metrics

    @property
    def lock_manager(self) -> LockManager:
        """Locks shared by migrate and rollback; hold one to fence off a target."""
        return self._locks

    async def migrate(
        self,
        entity_type: EntityType | str,
        source_org_ref: str,
        target_env_ref: str,
        id_filter: Sequence[str] | None = None,
        include_associations: bool = False,
        dry_run: bool = False,
        *,
        cancellation: CancellationToken | None = None,
    ) -> MigrationBatchResult:
        """Migrate one entity type. See MigrationExecutor.migrate."""
        options = MigrateOptions.from_config(
            self._config,
            id_filter=id_filter,
            include_associations=include_associations,
            dry_run=dry_run,
        )
        return await self.executor.migrate(
            entity_type, source_org_ref, target_env_ref, options, cancellation=cancellation
        )

    async def compare(
        self,
        entity_type: EntityType | str,
        source_org_ref: str,
        target_env_ref: str,
        id_filter: Sequence[str] | None = None,
        include_associations: bool = False,
        show_only_differences: bool = False,
        *,
        cancellation: CancellationToken | None = None,
    ) -> list[MatchResult]:
        """Reconcile one entity type. See MigrationExecutor.compare."""
        return await self.executor.compare(
            entity_type,
            source_org_ref,
            target_env_ref,
            id_filter=id_filter,
            include_associations=include_associations,
            show_only_differences=show_only_differences,
            cancellation=cancellation,
        )

    async def create_backup(
        self,
        migration_id: str,
        source_org_ref: str,
        target_env_ref: str,
        components: Sequence[str | BackupComponentName],
        compression_level: CompressionLevel | str = CompressionLevel.MEDIUM,
    ) -> BackupManifest:
        return await self.backups.create_backup(
            migration_id, source_org_ref, target_env_ref, components, compression_level
        )

    async def validate_backup_integrity(
        self,
        backup_id: str,
        migration_id: str,
        checks: IntegrityChecks | Mapping[str, bool] | None = None,
    ) -> ValidationReport:
        """
        Validate a backup.

        ``checks`` may be an IntegrityChecks or a mapping with the keys
        ``checksum``, ``structure`` and ``test_restore``; missing keys take
        the IntegrityChecks defaults.
        """
        if checks is not None and not isinstance(checks, IntegrityChecks):
            defaults = IntegrityChecks()
            checks = IntegrityChecks(
                checksum=bool(checks.get("checksum", defaults.checksum)),
                structure=bool(checks.get("structure", defaults.structure)),
                test_restore=bool(checks.get("test_restore", defaults.test_restore)),
            )
        return await self.backups.validate_backup_integrity(backup_id, migration_id, checks)

    async def rollback(
        self,
        rollback_id: str,
        backup_id: str,
        target_env_ref: str,
        scope: RollbackScope | str = RollbackScope.FULL,
        components: Sequence[str | BackupComponentName] | None = None,
        dry_run: bool = False,
        *,
        cancellation: CancellationToken | None = None,
    ) -> RollbackRun:
        return await self.rollbacks.rollback(
            rollback_id,
            backup_id,
            target_env_ref,
            scope,
            components,
            dry_run,
            cancellation=cancellation,
        )

    async def list_backups(self, migration_id: str | None = None) -> list[BackupManifest]:
        return await self.backups.list_backups(migration_id)

    async def get_backup(self, backup_id: str, migration_id: str | None = None) -> BackupManifest:
        return await self.backups.get_backup(backup_id, migration_id)

    async def delete_backup(self, backup_id: str) -> None:
        await self.backups.delete_backup(backup_id)

    async def get_rollback(self, rollback_id: str) -> RollbackRun:
        return await self.rollbacks.get_rollback(rollback_id)
