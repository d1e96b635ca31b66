"""
Rollback manager.

Replays a backup snapshot onto the target through the connector's bulk write
path, one step per selected component, always in the order Users, Queues,
Flows, Bots.

State machine (per RollbackRun):
    PENDING -> RUNNING -> {COMPLETED, COMPLETED_WITH_WARNINGS, FAILED}
    PENDING -> DRY_RUN_COMPLETED

A step with itemized complications (users referencing workstreams that
resolve neither in the snapshot nor on the target) completes with status
``warning``. A step the target rejects, or that raises, is ``failed``; the
remaining steps are ``skipped`` and the run is ``failed``.

The run is saved to the backup repository after every step, so its status
can be polled with ``get_rollback`` and an interrupted run resumes when
invoked again with the same rollback id. Rollback never re-validates the
backup; callers run ``validate_backup_integrity`` first.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from ccmigrate.backup import (
    COMPONENT_ORDER,
    BackupManager,
    find_unresolved_references,
    parse_components,
    restore_payload,
)
from ccmigrate.cancellation import CancellationToken
from ccmigrate.config import EngineConfig
from ccmigrate.connectors import TargetConnector
from ccmigrate.entities import EntityType
from ccmigrate.exceptions import (
    BackupExpiredError,
    OperationCancelledError,
    RollbackAlreadyExistsError,
    RollbackNotFoundError,
    ValidationError,
    describe_failure,
)
from ccmigrate.executor import validate_refs
from ccmigrate.locks import InMemoryLockManager, LockManager, migration_lock_key
from ccmigrate.metrics import EngineMetrics
from ccmigrate.models import (
    BackupComponentName,
    BackupManifest,
    BackupSnapshot,
    ComponentStatus,
    RollbackRun,
    RollbackScope,
    RollbackStatus,
    RollbackStep,
    StepStatus,
)
from ccmigrate.observability import Tracer, create_tracer
from ccmigrate.observability.attributes import (
    ATTR_BACKUP_ID,
    ATTR_COMPONENT,
    ATTR_DRY_RUN,
    ATTR_ROLLBACK_ID,
    ATTR_ROLLBACK_SCOPE,
    ATTR_TARGET_ENV,
)

logger = logging.getLogger(__name__)

__all__ = ["COMPONENT_ORDER", "RollbackManager", "duration_label", "parse_scope"]


def duration_label(seconds: float) -> str:
    """
    Format a step duration.

    Example:
        >>> duration_label(0.25), duration_label(3.14159)
        ('250ms', '3.1s')
    """
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    return f"{seconds:.1f}s"


def parse_scope(value: RollbackScope | str) -> RollbackScope:
    """
    Raises:
        ValidationError: If the value is neither "full" nor "partial".
    """
    if isinstance(value, RollbackScope):
        return value
    try:
        return RollbackScope(str(value).strip().lower())
    except ValueError as e:
        raise ValidationError(
            f"Unknown rollback scope: {value!r} (expected full or partial)",
            field="scope",
        ) from e


class RollbackManager:
    """
    Executes and tracks rollback runs.

    Example:
        >>> manager = RollbackManager(target, backups)
        >>> run = await manager.rollback("rb-1", manifest.backup_id, "env-prod")
        >>> [step.component.value for step in run.steps]
        ['Users', 'Queues']
    """

    def __init__(
        self,
        target: TargetConnector,
        backups: BackupManager,
        *,
        lock_manager: LockManager | None = None,
        config: EngineConfig | None = None,
        metrics: EngineMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the rollback manager.

        Args:
            target: Target platform connector restored into
            backups: Backup manager providing manifests, snapshots and storage
            lock_manager: Advisory lock manager (default: process-local)
            config: Engine configuration (default: EngineConfig())
            metrics: Metrics container (default: created from config)
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._target = target
        self._backups = backups
        self._repository = backups.repository
        self._config = config or EngineConfig()
        self._locks = lock_manager or InMemoryLockManager(tracer=self._tracer)
        self._metrics = metrics or EngineMetrics(enable_metrics=self._config.enable_metrics)

    async def get_rollback(self, rollback_id: str) -> RollbackRun:
        """
        Get the current state of a rollback run.

        Raises:
            RollbackNotFoundError: If the id is unknown
        """
        run = await self._repository.get_rollback(rollback_id)
        if run is None:
            raise RollbackNotFoundError(rollback_id)
        return run

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
        """
        Restore a backup onto the target.

        Args:
            rollback_id: Caller-chosen run id
            backup_id: Backup to restore
            target_env_ref: Target environment to restore into
            scope: "full" restores every manifest component; "partial" the
                   given subset
            components: Components to restore with partial scope
            dry_run: Compute the steps without writing
            cancellation: Token interrupting the run when it fires

        Returns:
            The run in its terminal state

        Raises:
            ValidationError: If arguments are missing, the component
                selection is invalid, or a resumed run was started with
                other arguments
            BackupNotFoundError: If the backup is unknown
            BackupExpiredError: If the backup is past its retention window
            RollbackAlreadyExistsError: If the id belongs to a finished run
        """
        validate_refs(rollback_id=rollback_id, backup_id=backup_id, target_env_ref=target_env_ref)
        scope = parse_scope(scope)
        token = cancellation or CancellationToken()

        with self._tracer.span(
            "ccmigrate.rollback.run",
            {
                ATTR_ROLLBACK_ID: rollback_id,
                ATTR_BACKUP_ID: backup_id,
                ATTR_TARGET_ENV: target_env_ref,
                ATTR_ROLLBACK_SCOPE: scope.value,
                ATTR_DRY_RUN: dry_run,
            },
        ):
            manifest, snapshot = await self._backups.load(backup_id)
            if manifest.is_expired():
                raise BackupExpiredError(backup_id, manifest.expires_at.isoformat())

            selected = self._select_components(manifest, scope, components)
            run = await self._start_run(
                rollback_id, manifest, target_env_ref, scope, selected, dry_run
            )

            failed = False
            for index, step in enumerate(run.steps):
                if step.status.is_done:
                    continue
                if failed:
                    run.steps[index] = RollbackStep(component=step.component, status=StepStatus.SKIPPED)
                else:
                    run.steps[index] = await self._execute_step(
                        step.component, manifest, snapshot, target_env_ref, dry_run, token
                    )
                    failed = run.steps[index].status == StepStatus.FAILED

                self._metrics.record_rollback_step(
                    step.component.value, run.steps[index].status.value
                )
                await self._repository.save_rollback(run)

            run.status = run.derive_status()
            run.completed_at = datetime.now(UTC)
            await self._repository.save_rollback(run)

        log = logger.error if run.status == RollbackStatus.FAILED else logger.info
        log(
            "Rollback %s of backup %s finished with status %s (%s)",
            rollback_id,
            backup_id,
            run.status.value,
            ", ".join(f"{s.component.value}={s.status.value}" for s in run.steps),
        )
        return run

    @staticmethod
    def _select_components(
        manifest: BackupManifest,
        scope: RollbackScope,
        components: Sequence[str | BackupComponentName] | None,
    ) -> tuple[BackupComponentName, ...]:
        available = set(manifest.component_names)
        if scope == RollbackScope.FULL:
            return tuple(name for name in COMPONENT_ORDER if name in available)

        requested = parse_components(components or ())
        missing = [name.value for name in requested if name not in available]
        if missing:
            raise ValidationError(
                f"Backup {manifest.backup_id} does not contain components: {', '.join(missing)}",
                field="components",
            )
        return requested

    async def _start_run(
        self,
        rollback_id: str,
        manifest: BackupManifest,
        target_env_ref: str,
        scope: RollbackScope,
        selected: tuple[BackupComponentName, ...],
        dry_run: bool,
    ) -> RollbackRun:
        existing = await self._repository.get_rollback(rollback_id)
        if existing is not None:
            if existing.status.is_terminal:
                raise RollbackAlreadyExistsError(rollback_id, existing.status.value)
            if existing.backup_id != manifest.backup_id:
                raise ValidationError(
                    f"Rollback {rollback_id} is restoring backup {existing.backup_id}, "
                    f"not {manifest.backup_id}",
                    field="rollback_id",
                )
            self._check_resumable(existing, target_env_ref, selected, dry_run)
            logger.info("Resuming rollback %s at status %s", rollback_id, existing.status.value)
            run = existing
        else:
            run = RollbackRun(
                rollback_id=rollback_id,
                backup_id=manifest.backup_id,
                migration_id=manifest.migration_id,
                target_env_ref=target_env_ref,
                scope=scope,
                dry_run=dry_run,
                steps=[RollbackStep(component=name) for name in selected],
                started_at=datetime.now(UTC),
            )

        if not run.dry_run:
            run.status = RollbackStatus.RUNNING
        await self._repository.save_rollback(run)
        return run

    @staticmethod
    def _check_resumable(
        run: RollbackRun,
        target_env_ref: str,
        selected: tuple[BackupComponentName, ...],
        dry_run: bool,
    ) -> None:
        """Reject resuming a stored run with arguments it was not started with."""
        if run.target_env_ref != target_env_ref:
            raise ValidationError(
                f"Rollback {run.rollback_id} targets {run.target_env_ref}, not {target_env_ref}",
                field="target_env_ref",
            )
        if run.dry_run != dry_run:
            started_as = "a dry run" if run.dry_run else "a live run"
            raise ValidationError(
                f"Rollback {run.rollback_id} was started as {started_as}",
                field="dry_run",
            )
        stored = tuple(step.component for step in run.steps)
        if stored != selected:
            raise ValidationError(
                f"Rollback {run.rollback_id} restores "
                f"{', '.join(name.value for name in stored)}, "
                f"not {', '.join(name.value for name in selected)}",
                field="components",
            )

    async def _execute_step(
        self,
        component: BackupComponentName,
        manifest: BackupManifest,
        snapshot: BackupSnapshot | None,
        target_env_ref: str,
        dry_run: bool,
        token: CancellationToken,
    ) -> RollbackStep:
        start = time.monotonic()

        def finish(status: StepStatus, records: int, issues: Sequence[str]) -> RollbackStep:
            return RollbackStep(
                component=component,
                status=status,
                records_processed=records,
                duration_label=duration_label(time.monotonic() - start),
                issues=tuple(issues),
            )

        with self._tracer.span(
            "ccmigrate.rollback.step",
            {ATTR_COMPONENT: component.value, ATTR_DRY_RUN: dry_run},
        ):
            captured = manifest.component(component)
            if snapshot is None:
                return finish(StepStatus.FAILED, 0, ["snapshot data is missing"])
            if captured is None or captured.status == ComponentStatus.FAILED:
                return finish(
                    StepStatus.FAILED, 0, [f"{component.value} was not captured by the backup"]
                )

            records = snapshot.records_for(component)
            issues: list[str] = []
            if component == BackupComponentName.USERS:
                try:
                    issues.extend(
                        await self._cross_reference_issues(snapshot, target_env_ref, token)
                    )
                except OperationCancelledError as e:
                    return finish(StepStatus.FAILED, 0, [str(e)])

            if dry_run:
                return finish(StepStatus.SIMULATED, len(records), issues)

            lock_key = migration_lock_key(
                manifest.source_org_ref, target_env_ref, component.entity_type
            )
            try:
                async with self._locks.acquire(lock_key, timeout=self._config.lock_timeout_seconds):
                    accepted = await token.run(
                        self._target.import_batch(restore_payload(component, target_env_ref, records))
                    )
            except OperationCancelledError as e:
                return finish(StepStatus.FAILED, 0, [*issues, str(e)])
            except Exception as e:
                logger.error(
                    "Rollback step %s failed: %s", component.value, e, exc_info=True
                )
                return finish(StepStatus.FAILED, 0, [*issues, describe_failure(e)])

            if not accepted:
                logger.error("Target rejected restore of %s", component.value)
                return finish(StepStatus.FAILED, 0, [*issues, "target rejected the restore batch"])

            if issues:
                logger.warning(
                    "Restored %s with %d issues", component.value, len(issues)
                )
                return finish(StepStatus.WARNING, len(records), issues)
            return finish(StepStatus.COMPLETED, len(records), issues)

    async def _cross_reference_issues(
        self,
        snapshot: BackupSnapshot,
        target_env_ref: str,
        token: CancellationToken,
    ) -> list[str]:
        known: set[str] = {
            str(record.get("id")) for record in snapshot.records_for(BackupComponentName.QUEUES)
        }
        issues: list[str] = []
        try:
            queues = await token.run(self._target.list_entities(EntityType.QUEUE, target_env_ref))
            known.update(queue.id for queue in queues)
        except OperationCancelledError:
            raise
        except Exception as e:
            issues.append(f"could not list target queues: {describe_failure(e)}")

        user_records: list[dict[str, Any]] = snapshot.records_for(BackupComponentName.USERS)
        issues.extend(find_unresolved_references(user_records, known))
        return issues
