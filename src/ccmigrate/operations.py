"""
Declarative operation registry.

Maps each engine operation name to a description, a pydantic input model
and the MigrationEngine method that implements it, so a transport layer can
dispatch requests without knowing the engine's call signatures. Input
models accept both snake_case field names and camelCase aliases.

Example:
    >>> result = await invoke(engine, "migrate", {
    ...     "entityType": "user",
    ...     "sourceOrgRef": "org-1",
    ...     "targetEnvRef": "env-prod",
    ...     "dryRun": True,
    ... })
    >>> result["summary"]
    {'successful': 2, 'failed': 0, 'skipped': 1, 'warnings': 0}
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ccmigrate.engine import MigrationEngine
from ccmigrate.exceptions import NotFoundError, ValidationError
from ccmigrate.models import IntegrityChecks

logger = logging.getLogger(__name__)


class OperationInput(BaseModel):
    """Base for operation input models."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    def to_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for the engine method."""
        return {name: getattr(self, name) for name in type(self).model_fields}


class MigrateInput(OperationInput):
    entity_type: str
    source_org_ref: str
    target_env_ref: str
    id_filter: list[str] | None = None
    include_associations: bool = False
    dry_run: bool = False


class CompareInput(OperationInput):
    entity_type: str
    source_org_ref: str
    target_env_ref: str
    id_filter: list[str] | None = None
    include_associations: bool = False
    show_only_differences: bool = False


class CreateBackupInput(OperationInput):
    migration_id: str
    source_org_ref: str
    target_env_ref: str
    components: list[str] = Field(min_length=1)
    compression_level: Literal["low", "medium", "high"] = "medium"


class IntegrityChecksInput(OperationInput):
    checksum: bool = True
    structure: bool = True
    test_restore: bool = False


class ValidateBackupIntegrityInput(OperationInput):
    backup_id: str
    migration_id: str
    checks: IntegrityChecksInput = Field(default_factory=IntegrityChecksInput)

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "migration_id": self.migration_id,
            "checks": IntegrityChecks(
                checksum=self.checks.checksum,
                structure=self.checks.structure,
                test_restore=self.checks.test_restore,
            ),
        }


class RollbackInput(OperationInput):
    rollback_id: str
    backup_id: str
    target_env_ref: str
    scope: Literal["full", "partial"] = "full"
    components: list[str] | None = None
    dry_run: bool = False


class ListBackupsInput(OperationInput):
    migration_id: str | None = None


class GetBackupInput(OperationInput):
    backup_id: str
    migration_id: str | None = None


class DeleteBackupInput(OperationInput):
    backup_id: str


class GetRollbackInput(OperationInput):
    rollback_id: str


@dataclass(frozen=True)
class OperationSpec:
    """
    Registry entry for one engine operation.

    Attributes:
        name: Operation name
        description: Human-readable summary
        input_model: Pydantic model validating the arguments
        method: Name of the MigrationEngine coroutine method
    """

    name: str
    description: str
    input_model: type[OperationInput]
    method: str


OPERATIONS: dict[str, OperationSpec] = {
    spec.name: spec
    for spec in (
        OperationSpec(
            "migrate",
            "Migrate source entities of one type to the target environment.",
            MigrateInput,
            "migrate",
        ),
        OperationSpec(
            "compare",
            "Reconcile source entities against the target without writing.",
            CompareInput,
            "compare",
        ),
        OperationSpec(
            "create_backup",
            "Snapshot target components before a migration.",
            CreateBackupInput,
            "create_backup",
        ),
        OperationSpec(
            "validate_backup_integrity",
            "Run checksum, structure and test-restore checks against a backup.",
            ValidateBackupIntegrityInput,
            "validate_backup_integrity",
        ),
        OperationSpec(
            "rollback",
            "Restore a backup onto the target environment.",
            RollbackInput,
            "rollback",
        ),
        OperationSpec(
            "list_backups",
            "List backups newest first, optionally for one migration.",
            ListBackupsInput,
            "list_backups",
        ),
        OperationSpec(
            "get_backup",
            "Look up one backup manifest.",
            GetBackupInput,
            "get_backup",
        ),
        OperationSpec(
            "delete_backup",
            "Delete a backup and its snapshot.",
            DeleteBackupInput,
            "delete_backup",
        ),
        OperationSpec(
            "get_rollback",
            "Get the current state of a rollback run.",
            GetRollbackInput,
            "get_rollback",
        ),
    )
}


def _to_output(value: Any) -> Any:
    if isinstance(value, list):
        return [_to_output(item) for item in value]
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def _validation_message(name: str, error: PydanticValidationError) -> tuple[str, str | None]:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or None
    return f"Invalid arguments for {name}: {field}: {first['msg']}", field


async def invoke(engine: MigrationEngine, name: str, arguments: Mapping[str, Any] | None = None) -> Any:
    """
    Validate arguments and dispatch one operation to the engine.

    Args:
        engine: Engine executing the operation
        name: Operation name (a key of OPERATIONS)
        arguments: Raw arguments, snake_case or camelCase keys

    Returns:
        The operation result converted with ``to_dict()`` (lists element-wise);
        None for delete_backup

    Raises:
        NotFoundError: If the operation name is unknown
        ValidationError: If the arguments do not validate
        MigrationEngineError: Whatever the engine operation raises
    """
    spec = OPERATIONS.get(name)
    if spec is None:
        raise NotFoundError("operation", name)

    try:
        model = spec.input_model.model_validate(dict(arguments or {}))
    except PydanticValidationError as e:
        message, field = _validation_message(name, e)
        raise ValidationError(message, field=field) from e

    logger.debug("Invoking %s", name)
    result = await getattr(engine, spec.method)(**model.to_kwargs())
    return _to_output(result)


def describe_operations() -> list[dict[str, Any]]:
    """
    Describe every registered operation.

    Returns:
        One entry per operation with ``name``, ``description`` and
        ``input_schema`` (JSON schema using the camelCase aliases)
    """
    return [
        {
            "name": spec.name,
            "description": spec.description,
            "input_schema": spec.input_model.model_json_schema(by_alias=True),
        }
        for spec in OPERATIONS.values()
    ]
