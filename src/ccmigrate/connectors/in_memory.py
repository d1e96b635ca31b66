"""
In-memory connector implementations.

Useful for testing, development and sandbox test-restores. Not a platform
client: all state is lost when the process terminates.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from ccmigrate.connectors.interface import (
    IMPORT_FLOW_ARTIFACTS,
    IMPORT_RESTORE,
    SourceConnector,
    TargetConnector,
)
from ccmigrate.entities import EntityType, MappedEntity, SourceEntity, TargetEntity

logger = logging.getLogger(__name__)


class InMemorySourceConnector(SourceConnector):
    """
    Source connector backed by dictionaries.

    Example:
        >>> source = InMemorySourceConnector()
        >>> source.add_entity("org-1", SourceEntity(id="u1", entity_type=EntityType.USER,
        ...                                          name="Jane Doe", email="jane@x.com"))
        >>> await source.list_entities(EntityType.USER, "org-1")
    """

    def __init__(self) -> None:
        self._entities: dict[str, list[SourceEntity]] = defaultdict(list)
        self._skills: dict[str, list[str]] = {}
        self._queues: dict[str, list[str]] = {}

    def add_entity(
        self,
        org_ref: str,
        entity: SourceEntity,
        *,
        skills: Iterable[str] = (),
        queues: Iterable[str] = (),
    ) -> None:
        """Register a source entity and its associations under an organization."""
        self._entities[org_ref].append(entity)
        self._skills[entity.id] = list(skills)
        self._queues[entity.id] = list(queues)

    async def list_entities(
        self,
        entity_type: EntityType,
        org_ref: str,
        id_filter: Sequence[str] | None = None,
    ) -> list[SourceEntity]:
        entities = [e for e in self._entities.get(org_ref, []) if e.entity_type == entity_type]
        if id_filter:
            wanted = set(id_filter)
            entities = [e for e in entities if e.id in wanted]
        return entities

    async def get_entity_skills(self, entity_id: str) -> list[str]:
        return list(self._skills.get(entity_id, []))

    async def get_entity_queues(self, entity_id: str) -> list[str]:
        return list(self._queues.get(entity_id, []))


class InMemoryTargetConnector(TargetConnector):
    """
    Target connector backed by dictionaries.

    ``restore`` batches upsert records by id into the batch's environment.
    ``flow_artifacts`` batches are recorded in ``artifacts``. Every accepted
    payload is kept in ``imported_batches`` and every create is counted in
    ``create_calls`` for inspection in tests.

    Thread-safety:
        Uses an asyncio lock; safe for concurrent async operations within a
        single process.

    Attributes:
        create_calls: Number of create_entity calls made.
        imported_batches: Payloads accepted by import_batch.
        artifacts: Flow artifact payloads keyed by flow target id.
    """

    def __init__(self) -> None:
        self._entities: dict[str, dict[str, TargetEntity]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self.create_calls = 0
        self.imported_batches: list[dict[str, Any]] = []
        self.artifacts: dict[str, dict[str, Any]] = {}

    def add_entity(self, env_ref: str, entity: TargetEntity) -> None:
        """Seed an existing target entity."""
        self._entities[env_ref][entity.id] = entity

    def entities(self, env_ref: str) -> list[TargetEntity]:
        """All entities of an environment, synchronously (test helper)."""
        return list(self._entities.get(env_ref, {}).values())

    async def list_entities(self, entity_type: EntityType, env_ref: str) -> list[TargetEntity]:
        async with self._lock:
            return [e for e in self._entities.get(env_ref, {}).values() if e.entity_type == entity_type]

    async def create_entity(
        self,
        entity_type: EntityType,
        env_ref: str,
        mapped: MappedEntity,
    ) -> TargetEntity:
        async with self._lock:
            self.create_calls += 1
            created = TargetEntity.from_mapped(mapped, str(uuid4()))
            self._entities[env_ref][created.id] = created
        logger.debug("Created %s %s in %s", entity_type.value, created.id, env_ref)
        return created

    async def get_entity_skills(self, entity_id: str) -> list[str]:
        entity = self._find(entity_id)
        return list(entity.skills) if entity else []

    async def get_entity_workstreams(self, entity_id: str) -> list[str]:
        entity = self._find(entity_id)
        return list(entity.workstreams) if entity else []

    async def import_batch(self, payload: dict[str, Any]) -> bool:
        operation = payload.get("operation")
        if operation == IMPORT_RESTORE:
            accepted = await self._restore(payload)
        elif operation == IMPORT_FLOW_ARTIFACTS:
            self.artifacts[payload["flow_id"]] = payload
            accepted = True
        else:
            logger.warning("Rejected import batch with unknown operation %r", operation)
            accepted = False

        if accepted:
            self.imported_batches.append(payload)
        return accepted

    async def _restore(self, payload: dict[str, Any]) -> bool:
        env_ref = payload["env_ref"]
        try:
            entities = [TargetEntity.model_validate(record) for record in payload["records"]]
        except PydanticValidationError as e:
            logger.warning("Rejected restore batch for %s: %s", env_ref, e)
            return False

        async with self._lock:
            for entity in entities:
                self._entities[env_ref][entity.id] = entity
        return True

    def _find(self, entity_id: str) -> TargetEntity | None:
        for entities in self._entities.values():
            if entity_id in entities:
                return entities[entity_id]
        return None
