"""
Result and record models for the migration engine.

This module defines the structured records every engine operation returns.
Status fields are enums; records are frozen dataclasses except RollbackRun,
which is updated step by step while a rollback executes.

Models in this module:

Reconciliation:
    - DifferenceSeverity, Difference: One field-level difference
    - MatchStatus, MatchResult: Outcome of matching one source entity

Migration:
    - ItemStatus, MigrationItemResult: Outcome for one source entity
    - BatchSummary, MigrationBatchResult: Aggregated batch outcome

Backup:
    - BackupComponentName, ComponentStatus, BackupComponent
    - CompressionLevel, BackupChecksums, BackupManifest, BackupSnapshot
    - CheckStatus, IntegrityChecks, CheckResult, ValidationReport

Rollback:
    - RollbackScope, StepStatus, RollbackStep
    - RollbackStatus, RollbackRun
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from ccmigrate.entities import EntityType, SourceEntity, TargetEntity


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Reconciliation
# =============================================================================


class DifferenceSeverity(Enum):
    """
    How much a single difference matters.

    Attributes:
        INFO: Expected cross-platform artifact (e.g. platform taxonomy).
        WARNING: Real drift that should be reviewed.
        CRITICAL: The entity is missing on the target.
    """

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Difference:
    """
    One field-level difference between a source entity and its target match.

    Attributes:
        field: Field or association compared (e.g. "name", "skills").
        source_value: Value on the source side.
        target_value: Value on the target side.
        severity: How much the difference matters.
        description: Human-readable descriptor.
    """

    field: str
    source_value: Any
    target_value: Any
    severity: DifferenceSeverity
    description: str

    def __str__(self) -> str:
        return self.description

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "source_value": _jsonable(self.source_value),
            "target_value": _jsonable(self.target_value),
            "severity": self.severity.value,
            "description": self.description,
        }


def _jsonable(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, tuple):
        return list(value)
    return value


class MatchStatus(Enum):
    """
    Classification of a reconciliation result.

    Attributes:
        IDENTICAL: A target match with no differences.
        SIMILAR: A target match whose only differences are expected artifacts.
        DIFFERENT: A target match with real differences.
        NOT_FOUND: No target candidate matched.
    """

    IDENTICAL = "identical"
    SIMILAR = "similar"
    DIFFERENT = "different"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of matching one source entity against the target entity set.

    Attributes:
        source: The source entity that was matched.
        matched_target: The selected target candidate, None when not found.
        differences: Ordered differences between source and match.
        match_percentage: Score 0-100 derived from the difference count.
        status: Classification of the result.
    """

    source: SourceEntity
    matched_target: TargetEntity | None
    differences: tuple[Difference, ...]
    match_percentage: int
    status: MatchStatus

    @property
    def is_match(self) -> bool:
        return self.matched_target is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source.id,
            "source_name": self.source.name,
            "entity_type": self.source.entity_type.value,
            "matched_target": (
                self.matched_target.model_dump(mode="json") if self.matched_target else None
            ),
            "differences": [str(d) for d in self.differences],
            "difference_details": [d.to_dict() for d in self.differences],
            "match_percentage": self.match_percentage,
            "status": self.status.value,
        }


# =============================================================================
# Migration
# =============================================================================


class ItemStatus(Enum):
    """
    Outcome for one source entity in a migration batch.

    Attributes:
        MIGRATED: Created on the target.
        SIMULATED: Would have been created (dry run).
        SKIPPED_DUPLICATE: A matching target entity already exists.
        FAILED: Processing failed; see the item's warnings.
    """

    MIGRATED = "migrated"
    SIMULATED = "simulated"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    FAILED = "failed"

    @property
    def is_successful(self) -> bool:
        return self in (ItemStatus.MIGRATED, ItemStatus.SIMULATED)


@dataclass(frozen=True)
class MigrationItemResult:
    """
    Result for one source entity processed by the executor.

    A ``skipped_duplicate`` or ``failed`` item never carries a target id
    created in the same run: duplicates report the pre-existing target id,
    failures report none.

    Attributes:
        source_id: Source entity id.
        status: Item outcome.
        target_id: Target id (new for migrated, existing for duplicates).
        name: Source entity name.
        warnings: Warning messages collected while processing the item.
    """

    source_id: str
    status: ItemStatus
    target_id: str | None = None
    name: str = ""
    warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.status in (ItemStatus.SIMULATED, ItemStatus.FAILED) and self.target_id:
            raise ValueError(f"{self.status.value} item must not carry a target id")

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "name": self.name,
            "status": self.status.value,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class BatchSummary:
    """
    Counts aggregated over a batch.

    Attributes:
        successful: Items migrated or simulated.
        failed: Items that failed.
        skipped: Items skipped as duplicates.
        warnings: Items carrying at least one warning.
    """

    successful: int = 0
    failed: int = 0
    skipped: int = 0
    warnings: int = 0

    @classmethod
    def from_items(cls, items: Iterable[MigrationItemResult]) -> BatchSummary:
        successful = failed = skipped = warnings = 0
        for item in items:
            if item.status.is_successful:
                successful += 1
            elif item.status == ItemStatus.FAILED:
                failed += 1
            else:
                skipped += 1
            if item.warnings:
                warnings += 1
        return cls(successful=successful, failed=failed, skipped=skipped, warnings=warnings)

    def to_dict(self) -> dict[str, int]:
        return {
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "warnings": self.warnings,
        }


@dataclass(frozen=True)
class MigrationBatchResult:
    """
    Aggregated result of one migrate call.

    Attributes:
        entity_type: Kind of entities migrated.
        source_org_ref: Source organization reference.
        target_env_ref: Target environment reference.
        dry_run: Whether the batch was simulated.
        total_items: Number of source entities selected for the batch.
        items: Per-item results in source fetch order.
        summary: Aggregated counts.
        started_at: When processing started.
        completed_at: When processing finished.
        cancelled: Whether the batch stopped early on cancellation.
    """

    entity_type: EntityType
    source_org_ref: str
    target_env_ref: str
    dry_run: bool
    total_items: int
    items: tuple[MigrationItemResult, ...]
    summary: BatchSummary
    started_at: datetime
    completed_at: datetime
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation suitable for JSON.
        """
        return {
            "entity_type": self.entity_type.value,
            "source_org_ref": self.source_org_ref,
            "target_env_ref": self.target_env_ref,
            "dry_run": self.dry_run,
            "total_items": self.total_items,
            "items": [item.to_dict() for item in self.items],
            "summary": self.summary.to_dict(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "cancelled": self.cancelled,
        }


# =============================================================================
# Backup
# =============================================================================


class BackupComponentName(Enum):
    """
    Components a backup can capture, in rollback order.

    Attributes:
        USERS: Users component.
        QUEUES: Queues component.
        FLOWS: Flows component.
        BOTS: Bots component.
    """

    USERS = "Users"
    QUEUES = "Queues"
    FLOWS = "Flows"
    BOTS = "Bots"

    @property
    def entity_type(self) -> EntityType:
        return _COMPONENT_ENTITY_TYPES[self]

    @classmethod
    def parse(cls, value: str | BackupComponentName) -> BackupComponentName:
        """
        Resolve a component from its name, case-insensitively.

        Raises:
            ValueError: If the value names no component.
        """
        if isinstance(value, BackupComponentName):
            return value
        normalized = value.strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise ValueError(f"Unknown backup component: {value!r}")


_COMPONENT_ENTITY_TYPES: dict[BackupComponentName, EntityType] = {
    BackupComponentName.USERS: EntityType.USER,
    BackupComponentName.QUEUES: EntityType.QUEUE,
    BackupComponentName.FLOWS: EntityType.FLOW,
    BackupComponentName.BOTS: EntityType.BOT,
}


class ComponentStatus(Enum):
    """Capture status of one backup component."""

    COMPLETED = "completed"
    FAILED = "failed"


class CompressionLevel(Enum):
    """Compression level of a backup archive."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class BackupComponent:
    """
    One captured component of a backup.

    Attributes:
        name: Component name.
        record_count: Number of records captured.
        size_bytes: Size of the component's canonical JSON.
        status: Capture status.
        error: Failure message when the capture failed.
    """

    name: BackupComponentName
    record_count: int
    size_bytes: int
    status: ComponentStatus = ComponentStatus.COMPLETED
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name.value,
            "record_count": self.record_count,
            "size_bytes": self.size_bytes,
            "status": self.status.value,
        }
        if self.error:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupComponent:
        return cls(
            name=BackupComponentName(data["name"]),
            record_count=data["record_count"],
            size_bytes=data["size_bytes"],
            status=ComponentStatus(data.get("status", "completed")),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class BackupChecksums:
    """Hex digests of the canonical snapshot JSON."""

    md5: str
    sha256: str

    def to_dict(self) -> dict[str, str]:
        return {"md5": self.md5, "sha256": self.sha256}


@dataclass(frozen=True)
class BackupManifest:
    """
    Descriptor of a backup snapshot.

    Immutable once created. A manifest past ``expires_at`` is ineligible for
    rollback but is never purged by the engine.

    Attributes:
        backup_id: Unique backup identifier.
        migration_id: Migration the backup belongs to.
        source_org_ref: Source organization of the migration.
        target_env_ref: Target environment the snapshot was taken from.
        components: Captured components.
        original_size_bytes: Sum of component sizes.
        compressed_size_bytes: Estimated archive size after compression.
        compression_level: Compression level applied.
        checksums: Digests of the snapshot.
        created_at: When the backup was taken.
        expires_at: End of the retention window.
    """

    backup_id: str
    migration_id: str
    source_org_ref: str
    target_env_ref: str
    components: tuple[BackupComponent, ...]
    original_size_bytes: int
    compressed_size_bytes: int
    compression_level: CompressionLevel
    checksums: BackupChecksums
    created_at: datetime
    expires_at: datetime

    @property
    def component_names(self) -> tuple[BackupComponentName, ...]:
        return tuple(component.name for component in self.components)

    def component(self, name: BackupComponentName) -> BackupComponent | None:
        for component in self.components:
            if component.name == name:
                return component
        return None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(UTC)) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation suitable for JSON.
        """
        return {
            "backup_id": self.backup_id,
            "migration_id": self.migration_id,
            "source_org_ref": self.source_org_ref,
            "target_env_ref": self.target_env_ref,
            "components": [component.to_dict() for component in self.components],
            "original_size_bytes": self.original_size_bytes,
            "compressed_size_bytes": self.compressed_size_bytes,
            "compression_level": self.compression_level.value,
            "checksums": self.checksums.to_dict(),
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupManifest:
        """
        Create from dictionary.

        Args:
            data: Dictionary produced by ``to_dict``.

        Returns:
            BackupManifest instance.
        """
        return cls(
            backup_id=data["backup_id"],
            migration_id=data["migration_id"],
            source_org_ref=data["source_org_ref"],
            target_env_ref=data["target_env_ref"],
            components=tuple(BackupComponent.from_dict(c) for c in data["components"]),
            original_size_bytes=data["original_size_bytes"],
            compressed_size_bytes=data["compressed_size_bytes"],
            compression_level=CompressionLevel(data["compression_level"]),
            checksums=BackupChecksums(**data["checksums"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass(frozen=True)
class BackupSnapshot:
    """
    Captured target records of a backup, keyed by component name.

    Attributes:
        backup_id: Backup the snapshot belongs to.
        records: Component name value ("Users", ...) -> JSON-ready records.
    """

    backup_id: str
    records: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def records_for(self, name: BackupComponentName) -> list[dict[str, Any]]:
        return self.records.get(name.value, [])

    def to_dict(self) -> dict[str, Any]:
        return {"backup_id": self.backup_id, "records": self.records}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackupSnapshot:
        return cls(backup_id=data["backup_id"], records=data.get("records", {}))


class CheckStatus(Enum):
    """
    Outcome of one integrity check, ordered passed < warning < failed.
    """

    PASSED = "passed"
    WARNING = "warning"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _CHECK_RANKS[self]

    @classmethod
    def worst(cls, statuses: Iterable[CheckStatus]) -> CheckStatus:
        """Return the most severe status, PASSED for an empty iterable."""
        return max(statuses, key=lambda status: status.rank, default=cls.PASSED)


_CHECK_RANKS: dict[CheckStatus, int] = {
    CheckStatus.PASSED: 0,
    CheckStatus.WARNING: 1,
    CheckStatus.FAILED: 2,
}


@dataclass(frozen=True)
class IntegrityChecks:
    """
    Selection of integrity checks to run against a backup.

    Attributes:
        checksum: Recompute and compare the snapshot digests.
        structure: Validate the snapshot against its manifest.
        test_restore: Replay the snapshot into a sandbox target.
    """

    checksum: bool = True
    structure: bool = True
    test_restore: bool = False

    @property
    def any_selected(self) -> bool:
        return self.checksum or self.structure or self.test_restore


@dataclass(frozen=True)
class CheckResult:
    """
    Result of one integrity check.

    Attributes:
        name: Check name ("checksum", "structure" or "test_restore").
        status: Check outcome.
        issues: Itemized problems found.
    """

    name: str
    status: CheckStatus
    issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "issues": list(self.issues)}


_DO_NOT_USE = "Do not use this backup for rollback"


@dataclass(frozen=True)
class ValidationReport:
    """
    Result of validating a backup's integrity.

    Attributes:
        backup_id: Backup validated.
        migration_id: Migration the backup belongs to.
        status: Worst status across the selected checks.
        checks: Individual check results.
        validated_at: When validation ran.
    """

    backup_id: str
    migration_id: str
    status: CheckStatus
    checks: tuple[CheckResult, ...]
    validated_at: datetime

    @property
    def usable_for_rollback(self) -> bool:
        return self.status != CheckStatus.FAILED

    @property
    def recommendation(self) -> str:
        if self.status == CheckStatus.FAILED:
            return _DO_NOT_USE
        if self.status == CheckStatus.WARNING:
            return "Backup is usable for rollback; review the reported warnings first"
        return "Backup is usable for rollback"

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "migration_id": self.migration_id,
            "status": self.status.value,
            "checks": [check.to_dict() for check in self.checks],
            "usable_for_rollback": self.usable_for_rollback,
            "recommendation": self.recommendation,
            "validated_at": _iso(self.validated_at),
        }


# =============================================================================
# Rollback
# =============================================================================


class RollbackScope(Enum):
    """Whether a rollback restores every manifest component or a subset."""

    FULL = "full"
    PARTIAL = "partial"


class StepStatus(Enum):
    """
    Status of one rollback step.

    Attributes:
        PENDING: Not started yet.
        COMPLETED: Restored without issues.
        WARNING: Restored, with itemized issues.
        FAILED: The restore could not complete.
        SKIPPED: Not attempted because an earlier step failed.
        SIMULATED: Computed in a dry run; nothing written.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    WARNING = "warning"
    FAILED = "failed"
    SKIPPED = "skipped"
    SIMULATED = "simulated"

    @property
    def is_done(self) -> bool:
        """True when the step does not need to run again on resume."""
        return self in (StepStatus.COMPLETED, StepStatus.WARNING)


@dataclass(frozen=True)
class RollbackStep:
    """
    One component restore within a rollback run.

    Attributes:
        component: Component restored.
        status: Step outcome.
        records_processed: Records written (or that would be written).
        duration_label: Elapsed time, "<n>ms" or "<x.y>s".
        issues: Itemized complications found while restoring.
    """

    component: BackupComponentName
    status: StepStatus = StepStatus.PENDING
    records_processed: int = 0
    duration_label: str = "0ms"
    issues: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component.value,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "duration_label": self.duration_label,
            "issues": list(self.issues),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackStep:
        return cls(
            component=BackupComponentName(data["component"]),
            status=StepStatus(data["status"]),
            records_processed=data.get("records_processed", 0),
            duration_label=data.get("duration_label", "0ms"),
            issues=tuple(data.get("issues", ())),
        )


class RollbackStatus(Enum):
    """
    Overall status of a rollback run.

    State machine transitions:
        PENDING -> RUNNING -> {COMPLETED, COMPLETED_WITH_WARNINGS, FAILED}
        PENDING -> DRY_RUN_COMPLETED
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    DRY_RUN_COMPLETED = "dry_run_completed"

    @property
    def is_terminal(self) -> bool:
        return self not in (RollbackStatus.PENDING, RollbackStatus.RUNNING)


@dataclass
class RollbackRun:
    """
    A multi-step rollback of a backup onto the target.

    This is a mutable dataclass because steps resolve one at a time and the
    run is persisted after each of them.

    Attributes:
        rollback_id: Caller-chosen run identifier.
        backup_id: Backup being restored.
        migration_id: Migration the backup belongs to.
        target_env_ref: Target environment restored into.
        scope: Full or partial restore.
        dry_run: Whether the run only simulates.
        steps: One step per selected component, in Users, Queues, Flows, Bots order.
        status: Overall status.
        started_at: When the run started.
        completed_at: When the run reached a terminal status.
    """

    rollback_id: str
    backup_id: str
    migration_id: str
    target_env_ref: str
    scope: RollbackScope
    dry_run: bool = False
    steps: list[RollbackStep] = field(default_factory=list)
    status: RollbackStatus = RollbackStatus.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def derive_status(self) -> RollbackStatus:
        """
        Compute the overall status from the step statuses.

        ``completed_with_warnings`` iff at least one step is ``warning`` and
        none is ``failed``.
        """
        statuses = [step.status for step in self.steps]
        if StepStatus.FAILED in statuses:
            return RollbackStatus.FAILED
        if self.dry_run:
            return RollbackStatus.DRY_RUN_COMPLETED
        if any(not status.is_done for status in statuses):
            return RollbackStatus.RUNNING
        if StepStatus.WARNING in statuses:
            return RollbackStatus.COMPLETED_WITH_WARNINGS
        return RollbackStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "rollback_id": self.rollback_id,
            "backup_id": self.backup_id,
            "migration_id": self.migration_id,
            "target_env_ref": self.target_env_ref,
            "scope": self.scope.value,
            "dry_run": self.dry_run,
            "steps": [step.to_dict() for step in self.steps],
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackRun:
        """
        Create from dictionary.

        Args:
            data: Dictionary produced by ``to_dict``.

        Returns:
            RollbackRun instance.
        """
        return cls(
            rollback_id=data["rollback_id"],
            backup_id=data["backup_id"],
            migration_id=data["migration_id"],
            target_env_ref=data["target_env_ref"],
            scope=RollbackScope(data["scope"]),
            dry_run=data.get("dry_run", False),
            steps=[RollbackStep.from_dict(step) for step in data.get("steps", [])],
            status=RollbackStatus(data["status"]),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )
