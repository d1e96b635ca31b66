"""
Migration executor.

Orchestrates one entity type per call:

1. Fetch the source entities of ``entity_type`` and keep only those whose id
   is in ``id_filter`` (unmatched filter ids are silently dropped).
2. For each retained entity, in source fetch order, match it against the
   target entity set (fetched once per batch and cached) and either skip it
   as a duplicate, simulate it (dry run) or create it on the target.
3. Aggregate the per-item results into a MigrationBatchResult.

A single item's failure never aborts the batch. The whole call holds the
advisory lock for ``(source_org_ref, target_env_ref, entity_type)``, and
every connector call runs under the caller's CancellationToken.

Idempotency:
    Re-running ``migrate`` over the same source set reports every previously
    migrated entity as ``skipped_duplicate``, because the matcher finds it on
    the target by email (users) or name.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from ccmigrate.cancellation import CancellationToken
from ccmigrate.config import EngineConfig
from ccmigrate.connectors.interface import IMPORT_FLOW_ARTIFACTS, SourceConnector, TargetConnector
from ccmigrate.entities import Associations, EntityType, SourceEntity, TargetEntity
from ccmigrate.exceptions import (
    ConnectivityError,
    MigrationEngineError,
    OperationCancelledError,
    ValidationError,
    describe_failure,
)
from ccmigrate.locks import InMemoryLockManager, LockManager, migration_lock_key
from ccmigrate.mapping import map_entity
from ccmigrate.metrics import EngineMetrics
from ccmigrate.models import (
    BatchSummary,
    ItemStatus,
    MatchResult,
    MatchStatus,
    MigrationBatchResult,
    MigrationItemResult,
)
from ccmigrate.observability import Tracer, create_tracer
from ccmigrate.observability.attributes import (
    ATTR_DRY_RUN,
    ATTR_ENTITY_TYPE,
    ATTR_ITEM_COUNT,
    ATTR_SOURCE_ORG,
    ATTR_TARGET_ENV,
)
from ccmigrate.reconciliation import ReconciliationMatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class MigrateOptions:
    """
    Per-call options of a migrate batch.

    Attributes:
        id_filter: Source ids to restrict the batch to (empty = all).
        include_associations: Fetch skills and queue memberships for users
            and carry them onto the created target entity.
        dry_run: Match and simulate only; never write to the target.
        include_context_variables: Generate context variables for created flows.
        include_routing_rules: Generate a routing rule stub for created flows.
    """

    id_filter: tuple[str, ...] = ()
    include_associations: bool = False
    dry_run: bool = False
    include_context_variables: bool = True
    include_routing_rules: bool = True

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        id_filter: Sequence[str] | None = None,
        include_associations: bool = False,
        dry_run: bool = False,
    ) -> MigrateOptions:
        return cls(
            id_filter=tuple(id_filter or ()),
            include_associations=include_associations,
            dry_run=dry_run,
            include_context_variables=config.include_context_variables,
            include_routing_rules=config.include_routing_rules,
        )


def validate_refs(**refs: str) -> None:
    """
    Raises:
        ValidationError: If any reference is missing or blank.
    """
    for name, value in refs.items():
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required", field=name)


def parse_entity_type(value: EntityType | str) -> EntityType:
    """
    Raises:
        ValidationError: If the value names no entity type.
    """
    try:
        return EntityType.parse(value)
    except (ValueError, AttributeError) as e:
        raise ValidationError(str(e), field="entity_type") from e


class _Batch:
    """Mutable state of one migrate call."""

    def __init__(self, token: CancellationToken) -> None:
        self.token = token
        self.targets: list[TargetEntity] | None = None
        self.created_ids: set[str] = set()


class MigrationExecutor:
    """
    Executes migrate and compare calls for one source/target connector pair.

    Example:
        >>> executor = MigrationExecutor(source, target)
        >>> result = await executor.migrate(EntityType.USER, "org-1", "env-prod")
        >>> result.summary.successful
        3
    """

    def __init__(
        self,
        source: SourceConnector,
        target: TargetConnector,
        *,
        matcher: ReconciliationMatcher | None = None,
        lock_manager: LockManager | None = None,
        config: EngineConfig | None = None,
        metrics: EngineMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ):
        """
        Initialize the executor.

        Args:
            source: Source platform connector
            target: Target platform connector
            matcher: Reconciliation matcher (default: a new ReconciliationMatcher)
            lock_manager: Advisory lock manager (default: process-local)
            config: Engine configuration (default: EngineConfig())
            metrics: Metrics container (default: created from config)
            tracer: Optional custom Tracer instance.
            enable_tracing: Whether to enable OpenTelemetry tracing.
                          Ignored if tracer is explicitly provided.
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._source = source
        self._target = target
        self._matcher = matcher or ReconciliationMatcher()
        self._config = config or EngineConfig()
        self._locks = lock_manager or InMemoryLockManager(tracer=self._tracer)
        self._metrics = metrics or EngineMetrics(enable_metrics=self._config.enable_metrics)

    async def migrate(
        self,
        entity_type: EntityType | str,
        source_org_ref: str,
        target_env_ref: str,
        options: MigrateOptions | None = None,
        *,
        cancellation: CancellationToken | None = None,
    ) -> MigrationBatchResult:
        """
        Migrate the source entities of one type to the target.

        Args:
            entity_type: Kind of entity to migrate
            source_org_ref: Source organization reference
            target_env_ref: Target environment reference
            options: Filter, association and dry-run options
            cancellation: Token interrupting the batch when it fires

        Returns:
            MigrationBatchResult with one item per selected source entity
            processed before any cancellation

        Raises:
            ValidationError: If arguments are missing or malformed
            LockAcquisitionError: If another operation holds the pair's lock
            ConnectivityError: If the source entities cannot be fetched
        """
        entity_type = parse_entity_type(entity_type)
        validate_refs(source_org_ref=source_org_ref, target_env_ref=target_env_ref)
        options = options or MigrateOptions.from_config(self._config)
        batch = _Batch(cancellation or CancellationToken())

        with self._tracer.span(
            "ccmigrate.executor.migrate",
            {
                ATTR_ENTITY_TYPE: entity_type.value,
                ATTR_SOURCE_ORG: source_org_ref,
                ATTR_TARGET_ENV: target_env_ref,
                ATTR_DRY_RUN: options.dry_run,
            },
        ):
            lock_key = migration_lock_key(source_org_ref, target_env_ref, entity_type)
            async with self._locks.acquire(lock_key, timeout=self._config.lock_timeout_seconds):
                return await self._run_batch(
                    entity_type, source_org_ref, target_env_ref, options, batch
                )

    async def _run_batch(
        self,
        entity_type: EntityType,
        source_org_ref: str,
        target_env_ref: str,
        options: MigrateOptions,
        batch: _Batch,
    ) -> MigrationBatchResult:
        started_at = datetime.now(UTC)
        start = time.monotonic()
        logger.info(
            "Starting %s migration of %s: %s -> %s",
            "dry-run" if options.dry_run else "live",
            entity_type.value,
            source_org_ref,
            target_env_ref,
        )

        items: list[MigrationItemResult] = []
        cancelled = False
        try:
            selected = await self.fetch_sources(
                entity_type, source_org_ref, options.id_filter, batch.token
            )
        except OperationCancelledError as e:
            logger.warning("Migration of %s cancelled before fetching sources: %s", entity_type.value, e)
            selected = []
            cancelled = True

        for source in selected:
            if batch.token.is_cancelled:
                cancelled = True
                break
            try:
                item = await self._process_item(source, target_env_ref, options, batch)
            except OperationCancelledError as e:
                item = MigrationItemResult(
                    source_id=source.id,
                    status=ItemStatus.FAILED,
                    name=source.name,
                    warnings=(str(e),),
                )
                cancelled = True

            items.append(item)
            self._metrics.record_item(entity_type.value, item.status.value)
            if cancelled:
                break

        duration = time.monotonic() - start
        self._metrics.record_batch_duration(entity_type.value, duration, dry_run=options.dry_run)

        result = MigrationBatchResult(
            entity_type=entity_type,
            source_org_ref=source_org_ref,
            target_env_ref=target_env_ref,
            dry_run=options.dry_run,
            total_items=len(selected),
            items=tuple(items),
            summary=BatchSummary.from_items(items),
            started_at=started_at,
            completed_at=datetime.now(UTC),
            cancelled=cancelled,
        )
        logger.info(
            "Finished migration of %s: total=%d successful=%d failed=%d skipped=%d cancelled=%s",
            entity_type.value,
            result.total_items,
            result.summary.successful,
            result.summary.failed,
            result.summary.skipped,
            cancelled,
        )
        return result

    async def fetch_sources(
        self,
        entity_type: EntityType,
        source_org_ref: str,
        id_filter: Sequence[str],
        token: CancellationToken,
    ) -> list[SourceEntity]:
        """
        Fetch the source entities of a batch, restricted to ``id_filter``.

        Raises:
            ConnectivityError: If the source connector call fails
            OperationCancelledError: If the token fires during the call
        """
        with self._tracer.span(
            "ccmigrate.executor.fetch_sources",
            {ATTR_ENTITY_TYPE: entity_type.value, ATTR_SOURCE_ORG: source_org_ref},
        ):
            entities = await self._call(
                token,
                self._source.list_entities(entity_type, source_org_ref, list(id_filter) or None),
                platform="source",
                operation="list_entities",
            )
        if id_filter:
            wanted = set(id_filter)
            entities = [e for e in entities if e.id in wanted]
        return list(entities)

    async def _process_item(
        self,
        source: SourceEntity,
        target_env_ref: str,
        options: MigrateOptions,
        batch: _Batch,
    ) -> MigrationItemResult:
        entity_type = source.entity_type
        try:
            if batch.targets is None:
                batch.targets = await self.fetch_targets(entity_type, target_env_ref, batch.token)

            duplicate = self._matcher.select_candidate(source, batch.targets)
            if duplicate is not None:
                logger.warning(
                    "Skipping %s %s: duplicate of target entity %s",
                    entity_type.value,
                    source.id,
                    duplicate.id,
                )
                return MigrationItemResult(
                    source_id=source.id,
                    status=ItemStatus.SKIPPED_DUPLICATE,
                    # Never report an id created earlier in this batch
                    target_id=None if duplicate.id in batch.created_ids else duplicate.id,
                    name=source.name,
                    warnings=(f"duplicate of target entity {duplicate.id} ({duplicate.name})",),
                )

            if options.dry_run:
                logger.debug("Simulated %s %s", entity_type.value, source.id)
                return MigrationItemResult(
                    source_id=source.id,
                    status=ItemStatus.SIMULATED,
                    name=source.name,
                )

            associations = None
            if options.include_associations and entity_type == EntityType.USER:
                associations = await self.fetch_source_associations(source, batch.token)

            mapped = map_entity(source, associations)
            created = await self._call(
                batch.token,
                self._target.create_entity(entity_type, target_env_ref, mapped),
                platform="target",
                operation="create_entity",
                wrap=False,
            )
        except OperationCancelledError:
            raise
        except Exception as e:
            logger.error(
                "Failed to migrate %s %s: %s",
                entity_type.value,
                source.id,
                e,
                exc_info=True,
            )
            return MigrationItemResult(
                source_id=source.id,
                status=ItemStatus.FAILED,
                name=source.name,
                warnings=(describe_failure(e),),
            )

        batch.targets.append(created)
        batch.created_ids.add(created.id)
        logger.debug("Migrated %s %s -> %s", entity_type.value, source.id, created.id)

        warnings: list[str] = []
        if entity_type == EntityType.FLOW:
            warnings.extend(
                await self._write_flow_artifacts(source, created, target_env_ref, options, batch)
            )
        return MigrationItemResult(
            source_id=source.id,
            status=ItemStatus.MIGRATED,
            target_id=created.id,
            name=source.name,
            warnings=tuple(warnings),
        )

    async def fetch_targets(
        self,
        entity_type: EntityType,
        target_env_ref: str,
        token: CancellationToken,
    ) -> list[TargetEntity]:
        """
        Fetch the current target entity set of one type.

        Raises:
            ConnectivityError: If the target connector call fails
            OperationCancelledError: If the token fires during the call
        """
        entities = await self._call(
            token,
            self._target.list_entities(entity_type, target_env_ref),
            platform="target",
            operation="list_entities",
        )
        return list(entities)

    async def fetch_source_associations(
        self,
        source: SourceEntity,
        token: CancellationToken,
    ) -> Associations:
        """Fetch a source entity's skills and queue memberships."""
        skills = await self._call(
            token,
            self._source.get_entity_skills(source.id),
            platform="source",
            operation="get_entity_skills",
        )
        queues = await self._call(
            token,
            self._source.get_entity_queues(source.id),
            platform="source",
            operation="get_entity_queues",
        )
        return Associations(skills=frozenset(skills), queues=frozenset(queues))

    async def fetch_target_associations(
        self,
        target: TargetEntity,
        token: CancellationToken,
    ) -> Associations:
        """Fetch a target entity's skills and workstream memberships."""
        skills = await self._call(
            token,
            self._target.get_entity_skills(target.id),
            platform="target",
            operation="get_entity_skills",
        )
        workstreams = await self._call(
            token,
            self._target.get_entity_workstreams(target.id),
            platform="target",
            operation="get_entity_workstreams",
        )
        return Associations(skills=frozenset(skills), queues=frozenset(workstreams))

    async def _write_flow_artifacts(
        self,
        source: SourceEntity,
        created: TargetEntity,
        target_env_ref: str,
        options: MigrateOptions,
        batch: _Batch,
    ) -> list[str]:
        """
        Import context variables and a routing rule stub for a created flow.

        Failures become warnings; the flow itself stays migrated.
        """
        payload = build_flow_artifacts(
            source,
            created,
            target_env_ref,
            include_context_variables=options.include_context_variables,
            include_routing_rules=options.include_routing_rules,
        )
        if payload is None:
            return []

        try:
            accepted = await self._call(
                batch.token,
                self._target.import_batch(payload),
                platform="target",
                operation="import_batch",
                wrap=False,
            )
        except OperationCancelledError as e:
            return [f"flow artifacts not written: {e}"]
        except Exception as e:
            logger.warning(
                "Flow artifacts for %s failed: %s",
                created.id,
                e,
                exc_info=True,
            )
            return [f"flow artifacts not written: {describe_failure(e)}"]

        if not accepted:
            logger.warning("Target rejected flow artifacts for %s", created.id)
            return ["flow artifacts not written: target rejected the import batch"]
        return []

    async def compare(
        self,
        entity_type: EntityType | str,
        source_org_ref: str,
        target_env_ref: str,
        *,
        id_filter: Sequence[str] | None = None,
        include_associations: bool = False,
        show_only_differences: bool = False,
        cancellation: CancellationToken | None = None,
    ) -> list[MatchResult]:
        """
        Reconcile source entities against the target without writing.

        Args:
            entity_type: Kind of entity to compare
            source_org_ref: Source organization reference
            target_env_ref: Target environment reference
            id_filter: Source ids to restrict the comparison to
            include_associations: Compare skills and queue memberships (users)
            show_only_differences: Drop identical results
            cancellation: Token interrupting the comparison when it fires

        Returns:
            One MatchResult per compared source entity, in source fetch order

        Raises:
            ValidationError: If arguments are missing or malformed
            ConnectivityError: If a connector call fails
            OperationCancelledError: If the token fires
        """
        entity_type = parse_entity_type(entity_type)
        validate_refs(source_org_ref=source_org_ref, target_env_ref=target_env_ref)
        token = cancellation or CancellationToken()

        with self._tracer.span(
            "ccmigrate.executor.compare",
            {
                ATTR_ENTITY_TYPE: entity_type.value,
                ATTR_SOURCE_ORG: source_org_ref,
                ATTR_TARGET_ENV: target_env_ref,
            },
        ) as span:
            sources = await self.fetch_sources(
                entity_type, source_org_ref, tuple(id_filter or ()), token
            )
            targets = await self.fetch_targets(entity_type, target_env_ref, token)
            with_associations = include_associations and entity_type == EntityType.USER

            results: list[MatchResult] = []
            for source in sources:
                candidate = self._matcher.select_candidate(source, targets)
                source_associations = target_associations = None
                if candidate is not None and with_associations:
                    source_associations = await self.fetch_source_associations(source, token)
                    target_associations = await self.fetch_target_associations(candidate, token)

                result = self._matcher.match(
                    source,
                    [candidate] if candidate is not None else [],
                    source_associations=source_associations,
                    target_associations=target_associations,
                )
                if show_only_differences and result.status == MatchStatus.IDENTICAL:
                    continue
                results.append(result)

            if span:
                span.set_attribute(ATTR_ITEM_COUNT, len(results))

        logger.info(
            "Compared %d %s entities (%s -> %s), %d reported",
            len(sources),
            entity_type.value,
            source_org_ref,
            target_env_ref,
            len(results),
        )
        return results

    async def _call(
        self,
        token: CancellationToken,
        awaitable: Awaitable[T],
        *,
        platform: str,
        operation: str,
        wrap: bool = True,
    ) -> T:
        """
        Run one connector call under the cancellation token.

        Foreign exceptions are wrapped in ConnectivityError unless ``wrap`` is
        False (create/import failures keep their own classification).
        """
        try:
            return await token.run(awaitable)
        except MigrationEngineError:
            raise
        except Exception as e:
            if not wrap:
                raise
            raise ConnectivityError(platform, operation, str(e) or type(e).__name__) from e


def build_flow_artifacts(
    source: SourceEntity,
    created: TargetEntity,
    target_env_ref: str,
    *,
    include_context_variables: bool,
    include_routing_rules: bool,
) -> dict[str, Any] | None:
    """
    Build the import_batch payload of a created flow's artifacts.

    Context variables come from ``source.metadata["variables"]``: strings or
    mappings with ``name`` and optional ``display_name``, ``type`` and
    ``default_value``. Variables without a name are dropped.

    Returns:
        The payload, or None when neither artifact kind is requested
    """
    if not include_context_variables and not include_routing_rules:
        return None

    payload: dict[str, Any] = {
        "operation": IMPORT_FLOW_ARTIFACTS,
        "env_ref": target_env_ref,
        "flow_id": created.id,
        "flow_name": created.name,
        "origin_id": source.id,
    }
    if include_context_variables:
        payload["context_variables"] = _context_variables(source.metadata.get("variables") or [])
    if include_routing_rules:
        payload["routing_rules"] = [
            {
                "name": f"{created.name} default route",
                "condition": "true",
                "action": f"route_to_workstream:{created.id}",
                "priority": 1,
            }
        ]
    return payload


def _context_variables(raw: Any) -> list[dict[str, Any]]:
    variables: list[dict[str, Any]] = []
    for entry in raw:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, dict):
            continue
        name = str(entry.get("name") or "").strip()
        if not name:
            continue
        variables.append(
            {
                "name": name,
                "display_name": entry.get("display_name") or name,
                "data_type": entry.get("type", "string"),
                "default_value": entry.get("default_value"),
            }
        )
    return variables
