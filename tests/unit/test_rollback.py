"""
Unit tests for RollbackManager.

Covers step ordering, partial scope, warning and failure propagation, dry
runs, persistence after every step and resuming interrupted runs.
"""

import asyncio
import dataclasses
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from ccmigrate.backup import BackupManager
from ccmigrate.cancellation import CancellationToken
from ccmigrate.entities import EntityType
from ccmigrate.exceptions import (
    BackupExpiredError,
    BackupNotFoundError,
    RollbackAlreadyExistsError,
    RollbackNotFoundError,
    ValidationError,
)
from ccmigrate.metrics import EngineMetrics
from ccmigrate.models import (
    BackupComponentName,
    RollbackRun,
    RollbackScope,
    RollbackStatus,
    RollbackStep,
    StepStatus,
)
from ccmigrate.repositories import InMemoryBackupRepository
from ccmigrate.rollback import RollbackManager, duration_label, parse_scope
from tests.conftest import SOURCE_ORG, TARGET_ENV, make_target


@pytest.fixture
def repository() -> InMemoryBackupRepository:
    return InMemoryBackupRepository(enable_tracing=False)


@pytest.fixture
def metrics() -> EngineMetrics:
    return EngineMetrics(enable_metrics=False)


@pytest.fixture
def backups(target, repository, metrics) -> BackupManager:
    return BackupManager(target, repository=repository, metrics=metrics, enable_tracing=False)


@pytest.fixture
def manager(target, backups, config, metrics, tracer) -> RollbackManager:
    return RollbackManager(target, backups, config=config, metrics=metrics, tracer=tracer)


@pytest.fixture
def seeded_target(target):
    target.add_entity(TARGET_ENV, make_target("t-u1", name="Jane", workstreams=("t-q1",)))
    target.add_entity(TARGET_ENV, make_target("t-q1", EntityType.QUEUE, name="Billing"))
    target.add_entity(TARGET_ENV, make_target("t-f1", EntityType.FLOW, name="Inbound"))
    return target


def _pending_run(backup_id, *, dry_run=False):
    return RollbackRun(
        rollback_id="rb-1",
        backup_id=backup_id,
        migration_id="mig-1",
        target_env_ref=TARGET_ENV,
        scope=RollbackScope.FULL,
        dry_run=dry_run,
        steps=[RollbackStep(BackupComponentName.USERS), RollbackStep(BackupComponentName.QUEUES)],
    )


async def _backup(backups, components=("Bots", "Flows", "Queues", "Users")):
    return await backups.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, list(components))


class TestHelpers:
    """Tests for module-level helpers."""

    @pytest.mark.parametrize(
        "seconds,label",
        [(0.0, "0ms"), (0.25, "250ms"), (0.9999, "999ms"), (1.0, "1.0s"), (3.14159, "3.1s")],
    )
    def test_duration_label(self, seconds, label):
        assert duration_label(seconds) == label

    def test_parse_scope(self):
        assert parse_scope("Full") == RollbackScope.FULL
        assert parse_scope(RollbackScope.PARTIAL) == RollbackScope.PARTIAL
        with pytest.raises(ValidationError):
            parse_scope("everything")


class TestFullRollback:
    """Tests for full-scope rollback."""

    @pytest.mark.asyncio
    async def test_steps_in_fixed_order(self, manager, backups, seeded_target):
        manifest = await _backup(backups)

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert [s.component for s in run.steps] == [
            BackupComponentName.USERS,
            BackupComponentName.QUEUES,
            BackupComponentName.FLOWS,
            BackupComponentName.BOTS,
        ]
        assert all(s.status == StepStatus.COMPLETED for s in run.steps)
        assert run.status == RollbackStatus.COMPLETED
        assert run.completed_at is not None
        assert [s.records_processed for s in run.steps] == [1, 1, 1, 0]

    @pytest.mark.asyncio
    async def test_restores_snapshot_records(self, manager, backups, seeded_target):
        manifest = await _backup(backups, ["Users"])
        seeded_target.add_entity(TARGET_ENV, make_target("t-u1", name="Changed by migration"))

        await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        users = [e for e in seeded_target.entities(TARGET_ENV) if e.id == "t-u1"]
        assert users[0].name == "Jane"

    @pytest.mark.asyncio
    async def test_run_persisted(self, manager, backups, seeded_target):
        manifest = await _backup(backups)

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        stored = await manager.get_rollback("rb-1")
        assert stored.status == run.status
        assert stored.steps == run.steps
        assert stored.migration_id == "mig-1"

    @pytest.mark.asyncio
    async def test_saved_after_every_step(self, manager, backups, repository, seeded_target):
        manifest = await _backup(backups, ["Users", "Queues"])
        saved: list[str] = []
        original = repository.save_rollback

        async def record(run):
            saved.append(",".join(s.status.value for s in run.steps))
            await original(run)

        repository.save_rollback = record

        await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert saved == [
            "pending,pending",
            "completed,pending",
            "completed,completed",
            "completed,completed",
        ]

    @pytest.mark.asyncio
    async def test_unknown_workstream_is_a_warning(self, manager, backups, target):
        target.add_entity(TARGET_ENV, make_target("t-u1", name="Jane", workstreams=("t-q-gone",)))
        manifest = await _backup(backups, ["Users", "Queues"])

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        users = run.steps[0]
        assert users.status == StepStatus.WARNING
        assert users.issues == ("user t-u1 references unknown workstream t-q-gone",)
        assert run.status == RollbackStatus.COMPLETED_WITH_WARNINGS

    @pytest.mark.asyncio
    async def test_workstream_resolved_on_target(self, manager, backups, target):
        """Test a workstream missing from the snapshot but present on the target resolves."""
        target.add_entity(TARGET_ENV, make_target("t-u1", name="Jane", workstreams=("t-q1",)))
        manifest = await _backup(backups, ["Users"])
        target.add_entity(TARGET_ENV, make_target("t-q1", EntityType.QUEUE, name="Billing"))

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert run.steps[0].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_records_metrics_and_spans(self, manager, backups, seeded_target, metrics, tracer):
        manifest = await _backup(backups, ["Users", "Queues"])

        await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert metrics.get_snapshot().rollback_steps == {"Users:completed": 1, "Queues:completed": 1}
        assert "ccmigrate.rollback.run" in tracer.span_names
        assert tracer.span_names.count("ccmigrate.rollback.step") == 2


class TestFailures:
    """Tests for failed steps."""

    @pytest.mark.asyncio
    async def test_rejected_batch_skips_remaining_steps(self, manager, backups, seeded_target):
        manifest = await _backup(backups)
        seeded_target.import_batch = AsyncMock(return_value=False)

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert [s.status for s in run.steps] == [
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.SKIPPED,
            StepStatus.SKIPPED,
        ]
        assert run.steps[0].issues == ("target rejected the restore batch",)
        assert run.status == RollbackStatus.FAILED
        assert seeded_target.import_batch.await_count == 1

    @pytest.mark.asyncio
    async def test_raising_step_fails_with_description(self, manager, backups, seeded_target):
        manifest = await _backup(backups, ["Users", "Queues"])
        original = seeded_target.import_batch

        async def import_batch(payload):
            if payload["component"] == "Queues":
                raise TimeoutError("target timed out")
            return await original(payload)

        seeded_target.import_batch = import_batch

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert run.steps[0].status == StepStatus.COMPLETED
        assert run.steps[1].status == StepStatus.FAILED
        assert run.steps[1].issues == ("NETWORK_TIMEOUT: target timed out",)
        assert run.status == RollbackStatus.FAILED

    @pytest.mark.asyncio
    async def test_uncaptured_component_fails(self, manager, backups, seeded_target):
        original = seeded_target.list_entities

        async def list_entities(entity_type, env_ref):
            if entity_type == EntityType.FLOW:
                raise ConnectionError("connection reset")
            return await original(entity_type, env_ref)

        seeded_target.list_entities = list_entities
        manifest = await _backup(backups, ["Users", "Flows", "Bots"])
        seeded_target.list_entities = original

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert [s.status for s in run.steps] == [
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
        ]
        assert run.steps[1].issues == ("Flows was not captured by the backup",)

    @pytest.mark.asyncio
    async def test_cancellation_fails_step(self, manager, backups, seeded_target):
        manifest = await _backup(backups, ["Users", "Queues"])
        token = CancellationToken()
        original = seeded_target.import_batch

        async def import_batch(payload):
            if payload["component"] == "Queues":
                token.cancel("operator requested stop")
                await asyncio.sleep(10)
            return await original(payload)

        seeded_target.import_batch = import_batch

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV, cancellation=token)

        assert run.steps[1].status == StepStatus.FAILED
        assert run.steps[1].issues == ("cancelled: operator requested stop",)
        assert run.status == RollbackStatus.FAILED

    @pytest.mark.asyncio
    async def test_cancellation_before_users_step(self, manager, backups, repository, seeded_target):
        manifest = await _backup(backups, ["Users", "Queues"])
        token = CancellationToken()
        token.cancel("operator requested stop")
        seeded_target.import_batch = AsyncMock(return_value=True)

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV, cancellation=token)

        assert [step.status for step in run.steps] == [StepStatus.FAILED, StepStatus.SKIPPED]
        assert run.steps[0].issues == ("cancelled: operator requested stop",)
        assert run.status == RollbackStatus.FAILED
        assert (await repository.get_rollback("rb-1")).status == RollbackStatus.FAILED
        seeded_target.import_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_target_queue_listing_failure_is_an_issue(self, manager, backups, seeded_target):
        manifest = await _backup(backups, ["Users", "Queues"])
        original = seeded_target.list_entities

        async def list_entities(entity_type, env_ref):
            if entity_type == EntityType.QUEUE:
                raise PermissionError("403 forbidden")
            return await original(entity_type, env_ref)

        seeded_target.list_entities = list_entities

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert run.steps[0].status == StepStatus.WARNING
        assert run.steps[0].issues == ("could not list target queues: AUTHENTICATION_FAILED: 403 forbidden",)


class TestPartialRollback:
    """Tests for partial-scope rollback."""

    @pytest.mark.asyncio
    async def test_subset_in_fixed_order(self, manager, backups, seeded_target):
        manifest = await _backup(backups)

        run = await manager.rollback(
            "rb-1", manifest.backup_id, TARGET_ENV, "partial", ["Flows", "Users"]
        )

        assert [s.component.value for s in run.steps] == ["Users", "Flows"]
        assert run.scope == RollbackScope.PARTIAL

    @pytest.mark.asyncio
    async def test_component_not_in_backup(self, manager, backups, seeded_target):
        manifest = await _backup(backups, ["Users"])

        with pytest.raises(ValidationError, match="Queues"):
            await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV, "partial", ["Queues"])

        with pytest.raises(RollbackNotFoundError):
            await manager.get_rollback("rb-1")

    @pytest.mark.asyncio
    async def test_empty_selection(self, manager, backups):
        manifest = await _backup(backups, ["Users"])

        with pytest.raises(ValidationError):
            await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV, "partial", [])


class TestDryRun:
    """Tests for dry-run rollback."""

    @pytest.mark.asyncio
    async def test_nothing_written(self, manager, backups, seeded_target):
        manifest = await _backup(backups, ["Users", "Queues"])
        seeded_target.import_batch = AsyncMock(return_value=True)

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV, dry_run=True)

        assert all(s.status == StepStatus.SIMULATED for s in run.steps)
        assert [s.records_processed for s in run.steps] == [1, 1]
        assert run.status == RollbackStatus.DRY_RUN_COMPLETED
        seeded_target.import_batch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dry_run_reports_issues(self, manager, backups, target):
        target.add_entity(TARGET_ENV, make_target("t-u1", name="Jane", workstreams=("t-q-gone",)))
        manifest = await _backup(backups, ["Users"])

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV, dry_run=True)

        assert run.steps[0].status == StepStatus.SIMULATED
        assert run.steps[0].issues == ("user t-u1 references unknown workstream t-q-gone",)


class TestRunLifecycle:
    """Tests for run ids, expiry and resume."""

    @pytest.mark.asyncio
    async def test_finished_id_cannot_be_reused(self, manager, backups, seeded_target):
        manifest = await _backup(backups, ["Users"])
        await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        with pytest.raises(RollbackAlreadyExistsError) as exc_info:
            await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert exc_info.value.status == "completed"

    @pytest.mark.asyncio
    async def test_resumes_interrupted_run(self, manager, backups, repository, seeded_target):
        manifest = await _backup(backups, ["Users", "Queues"])
        await repository.save_rollback(
            RollbackRun(
                rollback_id="rb-1",
                backup_id=manifest.backup_id,
                migration_id="mig-1",
                target_env_ref=TARGET_ENV,
                scope=RollbackScope.FULL,
                steps=[
                    RollbackStep(BackupComponentName.USERS, StepStatus.COMPLETED, 1, "5ms"),
                    RollbackStep(BackupComponentName.QUEUES),
                ],
                status=RollbackStatus.RUNNING,
                started_at=datetime.now(UTC),
            )
        )
        seeded_target.import_batch = AsyncMock(return_value=True)

        run = await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert run.status == RollbackStatus.COMPLETED
        assert run.steps[0].duration_label == "5ms"
        assert seeded_target.import_batch.await_count == 1
        assert seeded_target.import_batch.await_args.args[0]["component"] == "Queues"

    @pytest.mark.asyncio
    async def test_resume_with_other_backup_rejected(self, manager, backups, repository):
        first = await _backup(backups, ["Users"])
        second = await _backup(backups, ["Users"])
        await repository.save_rollback(
            RollbackRun(
                rollback_id="rb-1",
                backup_id=first.backup_id,
                migration_id="mig-1",
                target_env_ref=TARGET_ENV,
                scope=RollbackScope.FULL,
                steps=[RollbackStep(BackupComponentName.USERS)],
                status=RollbackStatus.RUNNING,
            )
        )

        with pytest.raises(ValidationError, match=first.backup_id):
            await manager.rollback("rb-1", second.backup_id, TARGET_ENV)

    @pytest.mark.parametrize(
        ("stored_dry_run", "dry_run"),
        [(True, False), (False, True)],
    )
    @pytest.mark.asyncio
    async def test_resume_with_other_dry_run_rejected(
        self, manager, backups, repository, seeded_target, stored_dry_run, dry_run
    ):
        manifest = await _backup(backups, ["Users", "Queues"])
        await repository.save_rollback(_pending_run(manifest.backup_id, dry_run=stored_dry_run))
        seeded_target.import_batch = AsyncMock(return_value=True)

        with pytest.raises(ValidationError) as exc_info:
            await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV, dry_run=dry_run)

        assert exc_info.value.field == "dry_run"
        seeded_target.import_batch.assert_not_awaited()
        assert (await repository.get_rollback("rb-1")).dry_run is stored_dry_run

    @pytest.mark.asyncio
    async def test_resume_into_other_environment_rejected(self, manager, backups, repository):
        manifest = await _backup(backups, ["Users", "Queues"])
        await repository.save_rollback(_pending_run(manifest.backup_id))

        with pytest.raises(ValidationError) as exc_info:
            await manager.rollback("rb-1", manifest.backup_id, "env-staging")

        assert exc_info.value.field == "target_env_ref"

    @pytest.mark.asyncio
    async def test_resume_with_other_components_rejected(self, manager, backups, repository):
        manifest = await _backup(backups, ["Users", "Queues"])
        await repository.save_rollback(_pending_run(manifest.backup_id))

        with pytest.raises(ValidationError, match="Users, Queues, not Queues") as exc_info:
            await manager.rollback(
                "rb-1", manifest.backup_id, TARGET_ENV, scope="partial", components=["Queues"]
            )

        assert exc_info.value.field == "components"

    @pytest.mark.asyncio
    async def test_expired_backup_rejected(self, manager, backups, repository):
        manifest = await _backup(backups, ["Users"])
        snapshot = await repository.get_snapshot(manifest.backup_id)
        expired = dataclasses.replace(manifest, expires_at=datetime.now(UTC) - timedelta(seconds=1))
        await repository.save_backup(expired, snapshot)

        with pytest.raises(BackupExpiredError) as exc_info:
            await manager.rollback("rb-1", manifest.backup_id, TARGET_ENV)

        assert exc_info.value.backup_id == manifest.backup_id

    @pytest.mark.asyncio
    async def test_unknown_backup(self, manager):
        with pytest.raises(BackupNotFoundError):
            await manager.rollback("rb-1", "backup_missing", TARGET_ENV)

    @pytest.mark.asyncio
    async def test_missing_arguments(self, manager):
        with pytest.raises(ValidationError):
            await manager.rollback("", "backup_x", TARGET_ENV)

    @pytest.mark.asyncio
    async def test_get_rollback_unknown(self, manager):
        with pytest.raises(RollbackNotFoundError):
            await manager.get_rollback("rb-missing")
