"""
Entity representations on both sides of a migration.

Source entities are immutable snapshots fetched from the source platform per
operation. Target entities are what the target platform reports or returns on
create. The two id namespaces are distinct: correlation between a source and a
target entity is inferred at match time and never stored.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EntityType(Enum):
    """
    Kinds of contact-center configuration entities the engine migrates.

    Attributes:
        USER: Agents and other platform users.
        QUEUE: Routing queues (target workstreams).
        FLOW: Call/chat handling flows.
        SKILL: Routing skills.
        BOT: Bot definitions (backup/rollback component).
    """

    USER = "user"
    QUEUE = "queue"
    FLOW = "flow"
    SKILL = "skill"
    BOT = "bot"

    @classmethod
    def parse(cls, value: str | EntityType) -> EntityType:
        """
        Resolve an entity type from its value, case-insensitively.

        Raises:
            ValueError: If the value names no entity type.
        """
        if isinstance(value, EntityType):
            return value
        normalized = value.strip().lower()
        # Accept plural forms ("users") used by callers listing components
        for candidate in (normalized, normalized.removesuffix("s")):
            try:
                return cls(candidate)
            except ValueError:
                continue
        raise ValueError(f"Unknown entity type: {value!r}")


class SourceEntity(BaseModel):
    """
    An entity as fetched from the source platform.

    Attributes:
        id: Source-system unique identifier.
        entity_type: Kind of entity.
        name: Display name.
        email: Email address (users only).
        description: Free-text description.
        state: Source-native lifecycle state (active, draft, published, ...).
        type: Source-native flow type (inbound, outbound, chat, ...; flows only).
        metadata: Free-form extra data. Flow context variables live under
            ``metadata["variables"]``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Source-system identifier")
    entity_type: EntityType
    name: str = ""
    email: str | None = None
    description: str | None = None
    state: str | None = None
    type: str | None = Field(default=None, description="Flow type (flows only)")
    metadata: dict[str, Any] = Field(default_factory=dict)


class MappedEntity(BaseModel):
    """
    Target-schema representation built by the field mapper, before creation.

    Attributes:
        entity_type: Kind of entity.
        name: Display name, copied verbatim.
        email: Email address, copied verbatim.
        description: Description, copied verbatim.
        status: Target-native status ("active", "inactive" or "unknown").
        state_code: Numeric target state code.
        source_type: Target stream source code (flows and queues).
        skills: Skill names associated with the entity.
        workstreams: Queue/workstream memberships.
        origin_id: Originating source id. Informational only, never a match key.
    """

    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    name: str = ""
    email: str | None = None
    description: str | None = None
    status: str = "unknown"
    state_code: int = -1
    source_type: int | None = None
    skills: tuple[str, ...] = ()
    workstreams: tuple[str, ...] = ()
    origin_id: str | None = None


class TargetEntity(MappedEntity):
    """
    An entity as it exists on the target platform.

    Attributes:
        id: Target-system unique identifier.
    """

    id: str = Field(..., min_length=1, description="Target-system identifier")

    @classmethod
    def from_mapped(cls, mapped: MappedEntity, target_id: str) -> TargetEntity:
        """Materialize a mapped entity under a newly assigned target id."""
        return cls(id=target_id, **mapped.model_dump())


class Associations(BaseModel):
    """
    Set-valued memberships of one entity, compared by symmetric difference.

    Attributes:
        skills: Skill names.
        queues: Queue (source) or workstream (target) memberships.
    """

    model_config = ConfigDict(frozen=True)

    skills: frozenset[str] = frozenset()
    queues: frozenset[str] = frozenset()
