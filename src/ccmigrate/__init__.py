"""
ccmigrate - Contact-center migration and reconciliation engine.

This library provides:
- Field mapping from source platform entities to the target schema
- Reconciliation (match, diff, score) of source entities against the target
- Idempotent migrate batches with dry-run, cancellation and advisory locks
- Target backups with checksums and integrity validation
- Ordered, resumable rollback from a backup
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("ccmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Backup and rollback
from ccmigrate.backup import BackupManager, compressed_size
from ccmigrate.cancellation import CancellationToken
from ccmigrate.config import EngineConfig

# Connectors
from ccmigrate.connectors import (
    InMemorySourceConnector,
    InMemoryTargetConnector,
    SourceConnector,
    TargetConnector,
)

# Engine
from ccmigrate.engine import MigrationEngine

# Entities
from ccmigrate.entities import (
    Associations,
    EntityType,
    MappedEntity,
    SourceEntity,
    TargetEntity,
)

# Exceptions
from ccmigrate.exceptions import (
    BackupExpiredError,
    BackupNotFoundError,
    ConnectivityError,
    ErrorClassification,
    ErrorRecoverability,
    ErrorSeverity,
    FailureType,
    MigrationEngineError,
    NotFoundError,
    OperationCancelledError,
    RollbackAlreadyExistsError,
    RollbackNotFoundError,
    ValidationError,
    analyze_failure,
    classify_exception,
)
from ccmigrate.executor import MigrateOptions, MigrationExecutor

# Locks
from ccmigrate.locks import (
    InMemoryLockManager,
    LockAcquisitionError,
    LockManager,
    LockNotHeldError,
    PostgreSQLLockManager,
    migration_lock_key,
)
from ccmigrate.mapping import map_entity, map_state, map_state_code, map_type
from ccmigrate.metrics import EngineMetrics, EngineMetricSnapshot

# Result records
from ccmigrate.models import (
    BackupComponent,
    BackupComponentName,
    BackupManifest,
    BatchSummary,
    CheckResult,
    CheckStatus,
    CompressionLevel,
    Difference,
    DifferenceSeverity,
    IntegrityChecks,
    ItemStatus,
    MatchResult,
    MatchStatus,
    MigrationBatchResult,
    MigrationItemResult,
    RollbackRun,
    RollbackScope,
    RollbackStatus,
    RollbackStep,
    StepStatus,
    ValidationReport,
)

# Operation registry
from ccmigrate.operations import OPERATIONS, OperationSpec, describe_operations, invoke
from ccmigrate.reconciliation import ReconciliationMatcher, match_score

# Repositories
from ccmigrate.repositories import (
    BackupRepository,
    InMemoryBackupRepository,
    SQLBackupRepository,
)
from ccmigrate.rollback import COMPONENT_ORDER, RollbackManager

__all__ = [
    "__version__",
    # Engine
    "MigrationEngine",
    "EngineConfig",
    "CancellationToken",
    "MigrationExecutor",
    "MigrateOptions",
    "BackupManager",
    "RollbackManager",
    "COMPONENT_ORDER",
    "compressed_size",
    # Mapping and reconciliation
    "map_entity",
    "map_state",
    "map_state_code",
    "map_type",
    "ReconciliationMatcher",
    "match_score",
    # Entities
    "Associations",
    "EntityType",
    "MappedEntity",
    "SourceEntity",
    "TargetEntity",
    # Result records
    "BackupComponent",
    "BackupComponentName",
    "BackupManifest",
    "BatchSummary",
    "CheckResult",
    "CheckStatus",
    "CompressionLevel",
    "Difference",
    "DifferenceSeverity",
    "IntegrityChecks",
    "ItemStatus",
    "MatchResult",
    "MatchStatus",
    "MigrationBatchResult",
    "MigrationItemResult",
    "RollbackRun",
    "RollbackScope",
    "RollbackStatus",
    "RollbackStep",
    "StepStatus",
    "ValidationReport",
    # Connectors
    "SourceConnector",
    "TargetConnector",
    "InMemorySourceConnector",
    "InMemoryTargetConnector",
    # Repositories
    "BackupRepository",
    "InMemoryBackupRepository",
    "SQLBackupRepository",
    # Locks
    "LockManager",
    "InMemoryLockManager",
    "PostgreSQLLockManager",
    "LockAcquisitionError",
    "LockNotHeldError",
    "migration_lock_key",
    # Exceptions
    "MigrationEngineError",
    "ConnectivityError",
    "NotFoundError",
    "BackupNotFoundError",
    "RollbackNotFoundError",
    "ValidationError",
    "BackupExpiredError",
    "RollbackAlreadyExistsError",
    "OperationCancelledError",
    "ErrorClassification",
    "ErrorRecoverability",
    "ErrorSeverity",
    "FailureType",
    "analyze_failure",
    "classify_exception",
    # Metrics
    "EngineMetrics",
    "EngineMetricSnapshot",
    # Operation registry
    "OPERATIONS",
    "OperationSpec",
    "describe_operations",
    "invoke",
]
