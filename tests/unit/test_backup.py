"""
Unit tests for BackupManager.

Covers backup creation, sizing, checksums, the backup catalogue and the
integrity checks.
"""

import dataclasses
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from ccmigrate.backup import (
    BackupManager,
    compressed_size,
    compute_checksums,
    find_unresolved_references,
    parse_components,
)
from ccmigrate.config import EngineConfig
from ccmigrate.entities import EntityType
from ccmigrate.exceptions import BackupNotFoundError, ValidationError
from ccmigrate.metrics import EngineMetrics
from ccmigrate.models import (
    BackupComponentName,
    BackupSnapshot,
    CheckStatus,
    ComponentStatus,
    CompressionLevel,
    IntegrityChecks,
)
from ccmigrate.repositories import InMemoryBackupRepository
from tests.conftest import SOURCE_ORG, TARGET_ENV, make_target


@pytest.fixture
def repository() -> InMemoryBackupRepository:
    return InMemoryBackupRepository(enable_tracing=False)


@pytest.fixture
def metrics() -> EngineMetrics:
    return EngineMetrics(enable_metrics=False)


@pytest.fixture
def manager(target, repository, metrics, tracer) -> BackupManager:
    return BackupManager(target, repository=repository, metrics=metrics, tracer=tracer)


@pytest.fixture
def populated_target(target):
    target.add_entity(TARGET_ENV, make_target("t-u1", name="Jane", email="jane@x.com", workstreams=("t-q1",)))
    target.add_entity(TARGET_ENV, make_target("t-u2", name="John", email="john@x.com"))
    target.add_entity(TARGET_ENV, make_target("t-q1", EntityType.QUEUE, name="Billing"))
    return target


class TestHelpers:
    """Tests for module-level helpers."""

    def test_compressed_size_example(self):
        """Test Users 2048576 + Queues 1024000 bytes at medium compression."""
        assert compressed_size(2048576 + 1024000, "medium") == 1843546

    @pytest.mark.parametrize("level,expected", [("low", 800), ("medium", 600), ("high", 400)])
    def test_compressed_size_levels(self, level, expected):
        assert compressed_size(1000, level) == expected

    def test_compressed_size_rounds_half_up(self):
        assert compressed_size(5, CompressionLevel.HIGH, {"low": 0.8, "medium": 0.6, "high": 0.5}) == 3

    def test_compressed_size_unknown_level(self):
        with pytest.raises(ValidationError):
            compressed_size(1000, "ultra")

    def test_parse_components_orders_and_dedupes(self):
        assert parse_components(["Bots", "users", "Users", "Queues"]) == (
            BackupComponentName.USERS,
            BackupComponentName.QUEUES,
            BackupComponentName.BOTS,
        )

    @pytest.mark.parametrize("components", [[], ["Widgets"]])
    def test_parse_components_rejects(self, components):
        with pytest.raises(ValidationError):
            parse_components(components)

    def test_checksums_ignore_key_order(self):
        first = compute_checksums({"Users": [{"id": "1", "name": "a"}]})
        second = compute_checksums({"Users": [{"name": "a", "id": "1"}]})
        assert first == second

    def test_find_unresolved_references(self):
        issues = find_unresolved_references(
            [{"id": "u1", "workstreams": ["q1", "q9"]}, {"id": "u2"}],
            {"q1"},
        )
        assert issues == ["user u1 references unknown workstream q9"]


class TestCreateBackup:
    """Tests for create_backup."""

    @pytest.mark.asyncio
    async def test_manifest_contents(self, manager, populated_target, metrics):
        manifest = await manager.create_backup(
            "mig-1", SOURCE_ORG, TARGET_ENV, ["Queues", "Users"], "medium"
        )

        assert manifest.backup_id.startswith("backup_mig-1_")
        assert manifest.component_names == (BackupComponentName.USERS, BackupComponentName.QUEUES)
        users = manifest.component(BackupComponentName.USERS)
        assert users.record_count == 2
        assert users.status == ComponentStatus.COMPLETED
        assert manifest.original_size_bytes == sum(c.size_bytes for c in manifest.components)
        assert manifest.compressed_size_bytes == compressed_size(manifest.original_size_bytes, "medium")
        assert manifest.expires_at - manifest.created_at == timedelta(days=30)
        assert len(manifest.checksums.sha256) == 64
        assert metrics.get_snapshot().backup_sizes == [manifest.original_size_bytes]

    @pytest.mark.asyncio
    async def test_retention_from_config(self, target, repository, metrics):
        manager = BackupManager(
            target,
            repository=repository,
            config=EngineConfig(backup_retention_days=7),
            metrics=metrics,
            enable_tracing=False,
        )

        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        assert manifest.expires_at - manifest.created_at == timedelta(days=7)

    @pytest.mark.asyncio
    async def test_snapshot_stored(self, manager, populated_target, repository):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        snapshot = await repository.get_snapshot(manifest.backup_id)

        assert {r["id"] for r in snapshot.records_for(BackupComponentName.USERS)} == {"t-u1", "t-u2"}

    @pytest.mark.asyncio
    async def test_failed_capture_recorded(self, manager, populated_target):
        original = populated_target.list_entities

        async def list_entities(entity_type, env_ref):
            if entity_type == EntityType.QUEUE:
                raise TimeoutError("target timed out")
            return await original(entity_type, env_ref)

        populated_target.list_entities = AsyncMock(side_effect=list_entities)

        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users", "Queues"])

        queues = manifest.component(BackupComponentName.QUEUES)
        assert queues.status == ComponentStatus.FAILED
        assert queues.record_count == 0
        assert queues.error == "NETWORK_TIMEOUT: target timed out"

    @pytest.mark.asyncio
    async def test_validation(self, manager):
        with pytest.raises(ValidationError):
            await manager.create_backup("", SOURCE_ORG, TARGET_ENV, ["Users"])
        with pytest.raises(ValidationError):
            await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, [])
        with pytest.raises(ValidationError):
            await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"], "extreme")


class TestCatalogue:
    """Tests for get, list and delete."""

    @pytest.mark.asyncio
    async def test_get_backup(self, manager):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        assert await manager.get_backup(manifest.backup_id) == manifest
        assert await manager.get_backup(manifest.backup_id, "mig-1") == manifest
        with pytest.raises(BackupNotFoundError):
            await manager.get_backup(manifest.backup_id, "mig-2")
        with pytest.raises(BackupNotFoundError):
            await manager.get_backup("backup_missing")

    @pytest.mark.asyncio
    async def test_list_backups_newest_first(self, manager):
        first = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])
        second = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Queues"])
        other = await manager.create_backup("mig-2", SOURCE_ORG, TARGET_ENV, ["Users"])

        listed = await manager.list_backups("mig-1")

        assert {m.backup_id for m in listed} == {first.backup_id, second.backup_id}
        assert listed[0].created_at >= listed[1].created_at
        assert len(await manager.list_backups()) == 3
        assert other.backup_id not in {m.backup_id for m in listed}

    @pytest.mark.asyncio
    async def test_delete_backup(self, manager):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        await manager.delete_backup(manifest.backup_id)

        with pytest.raises(BackupNotFoundError):
            await manager.get_backup(manifest.backup_id)
        with pytest.raises(BackupNotFoundError):
            await manager.delete_backup(manifest.backup_id)


class TestValidateBackupIntegrity:
    """Tests for the integrity checks."""

    @pytest.mark.asyncio
    async def test_all_checks_pass(self, manager, populated_target):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users", "Queues"])

        report = await manager.validate_backup_integrity(
            manifest.backup_id, "mig-1", IntegrityChecks(test_restore=True)
        )

        assert report.status == CheckStatus.PASSED
        assert [c.name for c in report.checks] == ["checksum", "structure", "test_restore"]
        assert report.usable_for_rollback is True

    @pytest.mark.asyncio
    async def test_tampered_snapshot_fails_checksum(self, manager, populated_target, repository):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])
        snapshot = await repository.get_snapshot(manifest.backup_id)
        records = {name: [dict(r) for r in rows] for name, rows in snapshot.records.items()}
        records["Users"][0]["name"] = "Mallory"
        await repository.save_backup(manifest, BackupSnapshot(manifest.backup_id, records))

        report = await manager.validate_backup_integrity(
            manifest.backup_id, "mig-1", IntegrityChecks(checksum=True, structure=False)
        )

        assert report.status == CheckStatus.FAILED
        assert report.usable_for_rollback is False
        assert report.recommendation == "Do not use this backup for rollback"
        assert any("sha256 mismatch" in issue for issue in report.checks[0].issues)

    @pytest.mark.asyncio
    async def test_structure_count_mismatch_and_missing_id(self, manager, populated_target, repository):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])
        records = {"Users": [{"id": "", "name": "Ghost"}]}
        await repository.save_backup(manifest, BackupSnapshot(manifest.backup_id, records))

        report = await manager.validate_backup_integrity(
            manifest.backup_id, "mig-1", IntegrityChecks(checksum=False, structure=True)
        )

        issues = report.checks[0].issues
        assert report.status == CheckStatus.FAILED
        assert "Users record count mismatch: manifest 2, snapshot 1" in issues
        assert "Users record 0 has no id" in issues

    @pytest.mark.asyncio
    async def test_empty_name_is_a_warning(self, manager, target):
        target.add_entity(TARGET_ENV, make_target("t-u1", name=""))
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        report = await manager.validate_backup_integrity(manifest.backup_id, "mig-1")

        assert report.status == CheckStatus.WARNING
        assert report.usable_for_rollback is True

    @pytest.mark.asyncio
    async def test_expired_backup_structure_warning(self, manager, populated_target, repository):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])
        snapshot = await repository.get_snapshot(manifest.backup_id)
        expired = dataclasses.replace(manifest, expires_at=datetime.now(UTC) - timedelta(days=1))
        await repository.save_backup(expired, snapshot)

        report = await manager.validate_backup_integrity(manifest.backup_id, "mig-1")

        assert report.status == CheckStatus.WARNING
        assert any("expired" in issue for issue in report.checks[1].issues)

    @pytest.mark.asyncio
    async def test_failed_component_fails_structure(self, manager, populated_target):
        populated_target.list_entities = AsyncMock(side_effect=TimeoutError("slow"))
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        report = await manager.validate_backup_integrity(manifest.backup_id, "mig-1")

        assert report.status == CheckStatus.FAILED

    @pytest.mark.asyncio
    async def test_test_restore_warns_on_unresolved_reference(self, manager, target):
        target.add_entity(TARGET_ENV, make_target("t-u1", name="Jane", workstreams=("t-q-gone",)))
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users", "Queues"])

        report = await manager.validate_backup_integrity(
            manifest.backup_id, "mig-1", IntegrityChecks(checksum=False, structure=False, test_restore=True)
        )

        assert report.status == CheckStatus.WARNING
        assert report.checks[0].issues == ("user t-u1 references unknown workstream t-q-gone",)

    @pytest.mark.asyncio
    async def test_test_restore_rejected_batch_fails(self, target, repository, metrics):
        sandbox = AsyncMock()
        sandbox.import_batch.return_value = False
        manager = BackupManager(
            target,
            repository=repository,
            metrics=metrics,
            sandbox_factory=lambda: sandbox,
            enable_tracing=False,
        )
        target.add_entity(TARGET_ENV, make_target("t-u1", name="Jane"))
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        report = await manager.validate_backup_integrity(
            manifest.backup_id, "mig-1", IntegrityChecks(checksum=False, structure=False, test_restore=True)
        )

        assert report.status == CheckStatus.FAILED
        assert report.checks[0].issues == ("sandbox rejected restore of Users",)

    @pytest.mark.asyncio
    async def test_no_check_selected(self, manager):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        with pytest.raises(ValidationError):
            await manager.validate_backup_integrity(
                manifest.backup_id, "mig-1", IntegrityChecks(checksum=False, structure=False)
            )

    @pytest.mark.asyncio
    async def test_wrong_migration_not_found(self, manager):
        manifest = await manager.create_backup("mig-1", SOURCE_ORG, TARGET_ENV, ["Users"])

        with pytest.raises(BackupNotFoundError):
            await manager.validate_backup_integrity(manifest.backup_id, "mig-2")
