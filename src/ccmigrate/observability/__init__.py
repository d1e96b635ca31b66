"""
Observability utilities for ccmigrate.

Provides the composition-based tracer abstraction and the standard
attribute names used on spans and metrics across the engine.

Example:
    >>> from ccmigrate.observability import create_tracer, ATTR_ENTITY_TYPE
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
    ...
    ...     async def run(self) -> None:
    ...         with self._tracer.span("my_component.run", {ATTR_ENTITY_TYPE: "user"}):
    ...             pass
"""

from ccmigrate.observability.attributes import (
    ATTR_BACKUP_COMPONENTS,
    ATTR_BACKUP_ID,
    ATTR_COMPONENT,
    ATTR_COMPRESSION_LEVEL,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DRY_RUN,
    ATTR_ENTITY_ID,
    ATTR_ENTITY_TYPE,
    ATTR_ERROR_CODE,
    ATTR_ERROR_TYPE,
    ATTR_ITEM_COUNT,
    ATTR_ITEM_STATUS,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_ID,
    ATTR_LOCK_KEY,
    ATTR_LOCK_TIMEOUT,
    ATTR_MIGRATION_ID,
    ATTR_ROLLBACK_ID,
    ATTR_ROLLBACK_SCOPE,
    ATTR_SOURCE_ORG,
    ATTR_TARGET_ENV,
)
from ccmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes - Entity
    "ATTR_ENTITY_TYPE",
    "ATTR_ENTITY_ID",
    "ATTR_ITEM_COUNT",
    "ATTR_ITEM_STATUS",
    # Attributes - Platform
    "ATTR_SOURCE_ORG",
    "ATTR_TARGET_ENV",
    "ATTR_DRY_RUN",
    # Attributes - Backup/Rollback
    "ATTR_MIGRATION_ID",
    "ATTR_BACKUP_ID",
    "ATTR_BACKUP_COMPONENTS",
    "ATTR_COMPRESSION_LEVEL",
    "ATTR_ROLLBACK_ID",
    "ATTR_ROLLBACK_SCOPE",
    "ATTR_COMPONENT",
    # Attributes - Database
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    # Attributes - Lock
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_ID",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_LOCK_ACQUIRED",
    # Attributes - Error
    "ATTR_ERROR_TYPE",
    "ATTR_ERROR_CODE",
]
