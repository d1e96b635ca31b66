"""
Connector capability sets consumed by the engine.

Platform API clients implement these interfaces. The engine never retries a
connector call: any exception propagates to the per-item (migrate) or
per-step (rollback) boundary once, or fails the whole operation when it
happens before any item is processed.

This module provides:
- SourceConnector: Read access to the source platform
- TargetConnector: Read and write access to the target platform
- import_batch payload operation names
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from ccmigrate.entities import EntityType, MappedEntity, SourceEntity, TargetEntity

# import_batch payload "operation" values
IMPORT_RESTORE = "restore"
IMPORT_FLOW_ARTIFACTS = "flow_artifacts"


class SourceConnector(ABC):
    """
    Abstract base class for source platform connectors.

    Implementations perform authenticated calls against the source platform
    and return immutable SourceEntity snapshots.
    """

    @abstractmethod
    async def list_entities(
        self,
        entity_type: EntityType,
        org_ref: str,
        id_filter: Sequence[str] | None = None,
    ) -> list[SourceEntity]:
        """
        Fetch entities of one type from a source organization.

        Args:
            entity_type: Kind of entity to list.
            org_ref: Source organization reference.
            id_filter: Optional ids to restrict the listing to. Implementations
                may ignore it; the executor filters again.

        Returns:
            Entities in platform order.
        """
        pass

    @abstractmethod
    async def get_entity_skills(self, entity_id: str) -> list[str]:
        """Skill names assigned to a source entity."""
        pass

    @abstractmethod
    async def get_entity_queues(self, entity_id: str) -> list[str]:
        """Queue names a source entity is a member of."""
        pass


class TargetConnector(ABC):
    """
    Abstract base class for target platform connectors.

    ``import_batch`` is the bulk write path. Its payload is a dictionary with
    an ``"operation"`` key (``"restore"`` or ``"flow_artifacts"``) plus
    operation-specific keys; it returns False when the platform rejects the
    batch.
    """

    @abstractmethod
    async def list_entities(self, entity_type: EntityType, env_ref: str) -> list[TargetEntity]:
        """
        Fetch the current entities of one type from a target environment.

        Args:
            entity_type: Kind of entity to list.
            env_ref: Target environment reference.

        Returns:
            All entities of that type currently on the target.
        """
        pass

    @abstractmethod
    async def create_entity(
        self,
        entity_type: EntityType,
        env_ref: str,
        mapped: MappedEntity,
    ) -> TargetEntity:
        """
        Create an entity on the target.

        Args:
            entity_type: Kind of entity to create.
            env_ref: Target environment reference.
            mapped: Target-schema representation built by the field mapper.

        Returns:
            The created entity with its new target id.
        """
        pass

    @abstractmethod
    async def get_entity_skills(self, entity_id: str) -> list[str]:
        """Skill names assigned to a target entity."""
        pass

    @abstractmethod
    async def get_entity_workstreams(self, entity_id: str) -> list[str]:
        """Workstream (queue) memberships of a target entity."""
        pass

    @abstractmethod
    async def import_batch(self, payload: dict[str, Any]) -> bool:
        """
        Write a batch of records in one call.

        Args:
            payload: Operation name plus records.

        Returns:
            True when the platform accepted the batch.
        """
        pass
