"""
Field mapping from the source schema to the target schema.

All functions here are pure and total: unmapped input degrades to a default
value instead of raising, and the reconciliation matcher later reports the
degraded field as a difference. String fields (name, description, email) are
copied verbatim; only lookup keys are lower-cased.
"""

from __future__ import annotations

from collections.abc import Mapping

from ccmigrate.entities import Associations, EntityType, MappedEntity, SourceEntity

# Target stream source codes
VOICE_SOURCE_CODE = 192350001
CHAT_SOURCE_CODE = 192350000
EMAIL_SOURCE_CODE = 192350002
SMS_SOURCE_CODE = 192350003
UNKNOWN_SOURCE_CODE = 0

TYPE_TABLE: Mapping[str, int] = {
    "inbound": VOICE_SOURCE_CODE,
    "outbound": VOICE_SOURCE_CODE,
    "inboundcall": VOICE_SOURCE_CODE,
    "outboundcall": VOICE_SOURCE_CODE,
    "voice": VOICE_SOURCE_CODE,
    "chat": CHAT_SOURCE_CODE,
    "inboundchat": CHAT_SOURCE_CODE,
    "messaging": CHAT_SOURCE_CODE,
    "inboundmessage": CHAT_SOURCE_CODE,
    "email": EMAIL_SOURCE_CODE,
    "inboundemail": EMAIL_SOURCE_CODE,
    "sms": SMS_SOURCE_CODE,
    "inboundshortmessage": SMS_SOURCE_CODE,
}

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_UNKNOWN = "unknown"

STATE_TABLE: Mapping[str, str] = {
    "active": STATUS_ACTIVE,
    "published": STATUS_ACTIVE,
    "enabled": STATUS_ACTIVE,
    "inactive": STATUS_INACTIVE,
    "draft": STATUS_INACTIVE,
    "archived": STATUS_INACTIVE,
    "disabled": STATUS_INACTIVE,
    "deleted": STATUS_INACTIVE,
}

STATE_CODES: Mapping[str, int] = {
    STATUS_ACTIVE: 0,
    STATUS_INACTIVE: 1,
    STATUS_UNKNOWN: -1,
}


def map_type(source_type: str | None) -> int:
    """
    Map a source flow type to the target stream source code.

    Args:
        source_type: Source-native type (e.g. "inbound", "Chat"), or None.

    Returns:
        The target code, UNKNOWN_SOURCE_CODE for unmapped input.

    Example:
        >>> map_type("InboundCall")
        192350001
        >>> map_type("bot")
        0
    """
    if not source_type:
        return UNKNOWN_SOURCE_CODE
    return TYPE_TABLE.get(source_type.strip().lower(), UNKNOWN_SOURCE_CODE)


def map_state(source_state: str | None) -> str:
    """
    Map a source lifecycle state to the target status.

    Returns:
        "active", "inactive", or "unknown" for unmapped input.
    """
    if not source_state:
        return STATUS_UNKNOWN
    return STATE_TABLE.get(source_state.strip().lower(), STATUS_UNKNOWN)


def map_state_code(status: str) -> int:
    """Numeric target state code for a target status (-1 when unknown)."""
    return STATE_CODES.get(status, STATE_CODES[STATUS_UNKNOWN])


def map_entity(
    source: SourceEntity,
    associations: Associations | None = None,
) -> MappedEntity:
    """
    Build the target-schema representation of a source entity.

    Args:
        source: Entity fetched from the source platform.
        associations: Skills and queue memberships to carry over, if fetched.

    Returns:
        MappedEntity ready to be handed to the target connector.
    """
    status = map_state(source.state)
    source_type = None
    if source.entity_type == EntityType.FLOW or source.type is not None:
        source_type = map_type(source.type)
    return MappedEntity(
        entity_type=source.entity_type,
        name=source.name,
        email=source.email,
        description=source.description,
        status=status,
        state_code=map_state_code(status),
        source_type=source_type,
        skills=tuple(sorted(associations.skills)) if associations else (),
        workstreams=tuple(sorted(associations.queues)) if associations else (),
        origin_id=source.id,
    )
