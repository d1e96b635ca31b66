"""
Backup manager.

Snapshots the target-side entity sets a migration is about to affect, keeps
them in a BackupRepository, and validates their integrity before a rollback.

Backups:
    One snapshot per selected component (Users, Queues, Flows, Bots) holding
    the component's current target records. Component size is the byte
    length of the records' canonical JSON; the compressed size applies the
    compression ratio of the selected level to the summed size, rounding
    half up. Checksums (md5, sha256) cover the canonical JSON of the whole
    snapshot. Backups expire ``backup_retention_days`` after creation and
    are never purged by the engine.

Integrity checks:
    - checksum: recomputed digests match the manifest
    - structure: snapshot matches the manifest and every record is well-formed
    - test_restore: the snapshot replays cleanly into a sandbox target

    Each check yields passed, warning or failed; the report's status is the
    worst of the selected checks. Integrity problems are reported, never
    raised.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import uuid4

from ccmigrate.config import DEFAULT_COMPRESSION_RATIOS, EngineConfig
from ccmigrate.connectors import IMPORT_RESTORE, InMemoryTargetConnector, TargetConnector
from ccmigrate.exceptions import BackupNotFoundError, ValidationError, describe_failure
from ccmigrate.executor import validate_refs
from ccmigrate.metrics import EngineMetrics
from ccmigrate.models import (
    BackupChecksums,
    BackupComponent,
    BackupComponentName,
    BackupManifest,
    BackupSnapshot,
    CheckResult,
    CheckStatus,
    ComponentStatus,
    CompressionLevel,
    IntegrityChecks,
    ValidationReport,
)
from ccmigrate.observability import Tracer, create_tracer
from ccmigrate.observability.attributes import (
    ATTR_BACKUP_COMPONENTS,
    ATTR_BACKUP_ID,
    ATTR_COMPRESSION_LEVEL,
    ATTR_MIGRATION_ID,
    ATTR_TARGET_ENV,
)
from ccmigrate.repositories import BackupRepository, InMemoryBackupRepository

logger = logging.getLogger(__name__)

SANDBOX_ENV = "sandbox"

# Components in the fixed restore order
COMPONENT_ORDER: tuple[BackupComponentName, ...] = (
    BackupComponentName.USERS,
    BackupComponentName.QUEUES,
    BackupComponentName.FLOWS,
    BackupComponentName.BOTS,
)


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksums(records: dict[str, list[dict[str, Any]]]) -> BackupChecksums:
    """Digest the canonical JSON of a snapshot's records."""
    data = canonical_json(records).encode("utf-8")
    return BackupChecksums(
        md5=hashlib.md5(data).hexdigest(),
        sha256=hashlib.sha256(data).hexdigest(),
    )


def compressed_size(
    original_size_bytes: int,
    level: CompressionLevel | str,
    ratios: dict[str, float] | None = None,
) -> int:
    """
    Estimate the compressed size of a backup.

    Args:
        original_size_bytes: Summed component size
        level: Compression level
        ratios: Ratio per level (default low 0.8, medium 0.6, high 0.4)

    Returns:
        ``ratio * original_size_bytes`` rounded half up

    Example:
        >>> compressed_size(2048576 + 1024000, "medium")
        1843546
    """
    level = parse_compression_level(level)
    ratio = (ratios or DEFAULT_COMPRESSION_RATIOS)[level.value]
    estimate = Decimal(str(ratio)) * Decimal(original_size_bytes)
    return int(estimate.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def parse_compression_level(value: CompressionLevel | str) -> CompressionLevel:
    """
    Raises:
        ValidationError: If the value names no compression level.
    """
    if isinstance(value, CompressionLevel):
        return value
    try:
        return CompressionLevel(str(value).strip().lower())
    except ValueError as e:
        raise ValidationError(
            f"Unknown compression level: {value!r} (expected low, medium or high)",
            field="compression_level",
        ) from e


def parse_components(components: Iterable[str | BackupComponentName]) -> tuple[BackupComponentName, ...]:
    """
    Resolve component names, collapse duplicates and sort them in restore order.

    Raises:
        ValidationError: If the selection is empty or names an unknown component.
    """
    selected: set[BackupComponentName] = set()
    for value in components:
        try:
            selected.add(BackupComponentName.parse(value))
        except (ValueError, AttributeError) as e:
            raise ValidationError(str(e), field="components") from e
    if not selected:
        raise ValidationError("At least one backup component must be selected", field="components")
    return tuple(name for name in COMPONENT_ORDER if name in selected)


def restore_payload(
    component: BackupComponentName,
    env_ref: str,
    records: list[dict[str, Any]],
) -> dict[str, Any]:
    """Build the import_batch payload restoring one component."""
    return {
        "operation": IMPORT_RESTORE,
        "component": component.value,
        "entity_type": component.entity_type.value,
        "env_ref": env_ref,
        "records": records,
    }


def find_unresolved_references(
    user_records: Sequence[dict[str, Any]],
    known_queue_ids: set[str],
) -> list[str]:
    """
    List users' workstream memberships that resolve to no known queue.

    Returns:
        One issue string per unresolved reference.
    """
    issues: list[str] = []
    for record in user_records:
        for workstream in record.get("workstreams") or ():
            if workstream not in known_queue_ids:
                issues.append(
                    f"user {record.get('id')} references unknown workstream {workstream}"
                )
    return issues


class BackupManager:
    """
    Creates, catalogues and validates backups of target entity sets.

    Example:
        >>> manager = BackupManager(target)
        >>> manifest = await manager.create_backup(
        ...     "mig-1", "org-1", "env-prod", ["Users", "Queues"], "medium"
        ... )
        >>> report = await manager.validate_backup_integrity(
        ...     manifest.backup_id, "mig-1", IntegrityChecks(test_restore=True)
        ... )
        >>> report.usable_for_rollback
        True
    """

    def __init__(
        self,
        target: TargetConnector,
        *,
        repository: BackupRepository | None = None,
        config: EngineConfig | None = None,
        metrics: EngineMetrics | None = None,
        sandbox_factory: Callable[[], TargetConnector] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the backup manager.

        Args:
            target: Target platform connector the snapshots are read from
            repository: Backup storage (default: in-memory)
            config: Engine configuration (default: EngineConfig())
            metrics: Metrics container (default: created from config)
            sandbox_factory: Builds the throwaway target used by test restores
                             (default: InMemoryTargetConnector)
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._target = target
        self._config = config or EngineConfig()
        self._repository = repository or InMemoryBackupRepository(tracer=self._tracer)
        self._metrics = metrics or EngineMetrics(enable_metrics=self._config.enable_metrics)
        self._sandbox_factory = sandbox_factory or InMemoryTargetConnector

    @property
    def repository(self) -> BackupRepository:
        return self._repository

    async def create_backup(
        self,
        migration_id: str,
        source_org_ref: str,
        target_env_ref: str,
        components: Sequence[str | BackupComponentName],
        compression_level: CompressionLevel | str = CompressionLevel.MEDIUM,
    ) -> BackupManifest:
        """
        Snapshot the selected components of a target environment.

        A component whose records cannot be fetched is recorded as failed
        with zero counts; the backup is still created.

        Args:
            migration_id: Migration the backup protects
            source_org_ref: Source organization of the migration
            target_env_ref: Target environment to snapshot
            components: Component names ("Users", "Queues", "Flows", "Bots")
            compression_level: "low", "medium" or "high"

        Returns:
            The stored BackupManifest

        Raises:
            ValidationError: If arguments are missing, no component is
                selected or a component name is unknown
        """
        validate_refs(
            migration_id=migration_id,
            source_org_ref=source_org_ref,
            target_env_ref=target_env_ref,
        )
        names = parse_components(components)
        level = parse_compression_level(compression_level)

        with self._tracer.span(
            "ccmigrate.backup.create",
            {
                ATTR_MIGRATION_ID: migration_id,
                ATTR_TARGET_ENV: target_env_ref,
                ATTR_BACKUP_COMPONENTS: ",".join(n.value for n in names),
                ATTR_COMPRESSION_LEVEL: level.value,
            },
        ):
            records: dict[str, list[dict[str, Any]]] = {}
            captured: list[BackupComponent] = []
            for name in names:
                component, component_records = await self._capture(name, target_env_ref)
                captured.append(component)
                records[name.value] = component_records

            created_at = datetime.now(UTC)
            backup_id = f"backup_{migration_id}_{created_at:%Y%m%d%H%M%S}_{uuid4().hex[:8]}"
            original_size = sum(c.size_bytes for c in captured)

            manifest = BackupManifest(
                backup_id=backup_id,
                migration_id=migration_id,
                source_org_ref=source_org_ref,
                target_env_ref=target_env_ref,
                components=tuple(captured),
                original_size_bytes=original_size,
                compressed_size_bytes=compressed_size(
                    original_size, level, self._config.compression_ratios
                ),
                compression_level=level,
                checksums=compute_checksums(records),
                created_at=created_at,
                expires_at=created_at + timedelta(days=self._config.backup_retention_days),
            )
            await self._repository.save_backup(manifest, BackupSnapshot(backup_id, records))

        self._metrics.record_backup_size(original_size, level.value)
        logger.info(
            "Created backup %s for migration %s: %d components, %d bytes (%d compressed)",
            backup_id,
            migration_id,
            len(captured),
            original_size,
            manifest.compressed_size_bytes,
        )
        return manifest

    async def _capture(
        self,
        name: BackupComponentName,
        target_env_ref: str,
    ) -> tuple[BackupComponent, list[dict[str, Any]]]:
        try:
            entities = await self._target.list_entities(name.entity_type, target_env_ref)
        except Exception as e:
            logger.error("Failed to capture %s from %s: %s", name.value, target_env_ref, e, exc_info=True)
            return (
                BackupComponent(
                    name=name,
                    record_count=0,
                    size_bytes=0,
                    status=ComponentStatus.FAILED,
                    error=describe_failure(e),
                ),
                [],
            )

        component_records = [entity.model_dump(mode="json") for entity in entities]
        size = len(canonical_json(component_records).encode("utf-8"))
        return BackupComponent(name=name, record_count=len(component_records), size_bytes=size), component_records

    async def get_backup(self, backup_id: str, migration_id: str | None = None) -> BackupManifest:
        """
        Look up a backup manifest.

        Raises:
            BackupNotFoundError: If the id is unknown, or belongs to another
                migration when ``migration_id`` is given
        """
        manifest = await self._repository.get_manifest(backup_id)
        if manifest is None or (migration_id is not None and manifest.migration_id != migration_id):
            raise BackupNotFoundError(backup_id, migration_id=migration_id)
        return manifest

    async def load(
        self,
        backup_id: str,
        migration_id: str | None = None,
    ) -> tuple[BackupManifest, BackupSnapshot | None]:
        """Look up a manifest together with its snapshot (None when missing)."""
        manifest = await self.get_backup(backup_id, migration_id)
        return manifest, await self._repository.get_snapshot(backup_id)

    async def list_backups(self, migration_id: str | None = None) -> list[BackupManifest]:
        """List backups newest first, optionally for one migration."""
        return await self._repository.list_manifests(migration_id)

    async def delete_backup(self, backup_id: str) -> None:
        """
        Delete a backup.

        Raises:
            BackupNotFoundError: If the id is unknown
        """
        with self._tracer.span("ccmigrate.backup.delete", {ATTR_BACKUP_ID: backup_id}):
            if not await self._repository.delete_backup(backup_id):
                raise BackupNotFoundError(backup_id)
        logger.info("Deleted backup %s", backup_id)

    async def validate_backup_integrity(
        self,
        backup_id: str,
        migration_id: str,
        checks: IntegrityChecks | None = None,
    ) -> ValidationReport:
        """
        Run the selected integrity checks against a backup.

        Args:
            backup_id: Backup to validate
            migration_id: Migration the backup must belong to
            checks: Checks to run (default: checksum and structure)

        Returns:
            ValidationReport whose status is the worst selected check

        Raises:
            ValidationError: If no check is selected
            BackupNotFoundError: If the backup is unknown or belongs to
                another migration
        """
        validate_refs(backup_id=backup_id, migration_id=migration_id)
        checks = checks or IntegrityChecks()
        if not checks.any_selected:
            raise ValidationError("At least one integrity check must be selected", field="checks")

        with self._tracer.span(
            "ccmigrate.backup.validate",
            {ATTR_BACKUP_ID: backup_id, ATTR_MIGRATION_ID: migration_id},
        ):
            manifest, snapshot = await self.load(backup_id, migration_id)

            results: list[CheckResult] = []
            if checks.checksum:
                results.append(self._check_checksum(manifest, snapshot))
            if checks.structure:
                results.append(self._check_structure(manifest, snapshot))
            if checks.test_restore:
                results.append(await self._check_test_restore(manifest, snapshot))

        report = ValidationReport(
            backup_id=backup_id,
            migration_id=migration_id,
            status=CheckStatus.worst(r.status for r in results),
            checks=tuple(results),
            validated_at=datetime.now(UTC),
        )
        if report.status == CheckStatus.FAILED:
            logger.error("Backup %s failed validation: %s", backup_id, report.recommendation)
        elif report.status == CheckStatus.WARNING:
            logger.warning("Backup %s validated with warnings", backup_id)
        else:
            logger.info("Backup %s passed validation", backup_id)
        return report

    @staticmethod
    def _check_checksum(manifest: BackupManifest, snapshot: BackupSnapshot | None) -> CheckResult:
        if snapshot is None:
            return CheckResult("checksum", CheckStatus.FAILED, ("snapshot data is missing",))

        actual = compute_checksums(snapshot.records)
        issues = []
        if actual.md5 != manifest.checksums.md5:
            issues.append(f"md5 mismatch: expected {manifest.checksums.md5}, got {actual.md5}")
        if actual.sha256 != manifest.checksums.sha256:
            issues.append(
                f"sha256 mismatch: expected {manifest.checksums.sha256}, got {actual.sha256}"
            )
        return CheckResult("checksum", CheckStatus.FAILED if issues else CheckStatus.PASSED, tuple(issues))

    @staticmethod
    def _check_structure(manifest: BackupManifest, snapshot: BackupSnapshot | None) -> CheckResult:
        if snapshot is None:
            return CheckResult("structure", CheckStatus.FAILED, ("snapshot data is missing",))

        failures: list[str] = []
        warnings: list[str] = []

        for component in manifest.components:
            name = component.name.value
            if component.status == ComponentStatus.FAILED:
                failures.append(f"{name} capture failed: {component.error or 'unknown error'}")
                continue
            if name not in snapshot.records:
                failures.append(f"{name} missing from snapshot")
                continue

            records = snapshot.records[name]
            if len(records) != component.record_count:
                failures.append(
                    f"{name} record count mismatch: manifest {component.record_count}, "
                    f"snapshot {len(records)}"
                )
            for index, record in enumerate(records):
                if not isinstance(record, dict) or not record.get("id"):
                    failures.append(f"{name} record {index} has no id")
                elif not record.get("name"):
                    warnings.append(f"{name} record {record['id']} has an empty name")

        expected = {c.name.value for c in manifest.components}
        for extra in sorted(set(snapshot.records) - expected):
            warnings.append(f"snapshot holds component {extra} not listed in the manifest")

        if manifest.is_expired():
            warnings.append(f"backup expired at {manifest.expires_at.isoformat()}")

        if failures:
            status = CheckStatus.FAILED
        elif warnings:
            status = CheckStatus.WARNING
        else:
            status = CheckStatus.PASSED
        return CheckResult("structure", status, tuple(failures + warnings))

    async def _check_test_restore(
        self,
        manifest: BackupManifest,
        snapshot: BackupSnapshot | None,
    ) -> CheckResult:
        if snapshot is None:
            return CheckResult("test_restore", CheckStatus.FAILED, ("snapshot data is missing",))

        sandbox = self._sandbox_factory()
        failures: list[str] = []
        warnings: list[str] = []

        queue_ids = {
            str(r.get("id")) for r in snapshot.records_for(BackupComponentName.QUEUES) if isinstance(r, dict)
        }
        warnings.extend(
            find_unresolved_references(snapshot.records_for(BackupComponentName.USERS), queue_ids)
        )

        for name in COMPONENT_ORDER:
            component = manifest.component(name)
            if component is None or component.status == ComponentStatus.FAILED:
                continue
            records = snapshot.records_for(name)
            try:
                accepted = await sandbox.import_batch(restore_payload(name, SANDBOX_ENV, records))
            except Exception as e:
                failures.append(f"sandbox restore of {name.value} raised {describe_failure(e)}")
                continue
            if not accepted:
                failures.append(f"sandbox rejected restore of {name.value}")
                continue

            try:
                restored = await sandbox.list_entities(name.entity_type, SANDBOX_ENV)
            except Exception as e:
                failures.append(f"sandbox listing of {name.value} raised {describe_failure(e)}")
                continue
            expected_ids = {r.get("id") for r in records if isinstance(r, dict)}
            if len(restored) != len(expected_ids):
                failures.append(
                    f"{name.value} restored {len(restored)} records, expected {len(expected_ids)}"
                )

        if failures:
            status = CheckStatus.FAILED
        elif warnings:
            status = CheckStatus.WARNING
        else:
            status = CheckStatus.PASSED
        return CheckResult("test_restore", status, tuple(failures + warnings))
