"""
Standard span and metric attributes for ccmigrate.

This module defines attribute constants used across all engine components
for consistent span naming and metrics labeling. These follow OpenTelemetry
semantic conventions where applicable.

Example:
    >>> from ccmigrate.observability.attributes import (
    ...     ATTR_ENTITY_TYPE,
    ...     ATTR_TARGET_ENV,
    ... )
    >>>
    >>> with tracer.span(
    ...     "ccmigrate.executor.migrate",
    ...     {
    ...         ATTR_ENTITY_TYPE: "user",
    ...         ATTR_TARGET_ENV: "env-prod",
    ...     },
    ... ):
    ...     pass
"""

# =============================================================================
# Entity Attributes
# =============================================================================

ATTR_ENTITY_TYPE = "ccmigrate.entity.type"
"""Entity type being processed (user, queue, flow, skill, bot)."""

ATTR_ENTITY_ID = "ccmigrate.entity.id"
"""Source-system identifier of the entity being processed (string)."""

ATTR_ITEM_COUNT = "ccmigrate.item.count"
"""Number of entities selected for processing (integer)."""

ATTR_ITEM_STATUS = "ccmigrate.item.status"
"""Outcome of a single migration item (migrated, simulated, ...)."""

# =============================================================================
# Platform Attributes
# =============================================================================

ATTR_SOURCE_ORG = "ccmigrate.source.org"
"""Source organization reference (string)."""

ATTR_TARGET_ENV = "ccmigrate.target.env"
"""Target environment reference (string)."""

ATTR_DRY_RUN = "ccmigrate.dry_run"
"""Whether the operation runs without target mutations (boolean)."""

# =============================================================================
# Backup / Rollback Attributes
# =============================================================================

ATTR_MIGRATION_ID = "ccmigrate.migration.id"
"""Identifier of the migration a backup belongs to (string)."""

ATTR_BACKUP_ID = "ccmigrate.backup.id"
"""Backup manifest identifier (string)."""

ATTR_BACKUP_COMPONENTS = "ccmigrate.backup.components"
"""Comma-separated list of backup components (string)."""

ATTR_COMPRESSION_LEVEL = "ccmigrate.backup.compression_level"
"""Compression level of a backup (low, medium, high)."""

ATTR_ROLLBACK_ID = "ccmigrate.rollback.id"
"""Rollback run identifier (string)."""

ATTR_ROLLBACK_SCOPE = "ccmigrate.rollback.scope"
"""Rollback scope (full, partial)."""

ATTR_COMPONENT = "ccmigrate.component"
"""Backup component processed by a rollback step (string)."""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation being performed (e.g., 'INSERT', 'SELECT')."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_KEY = "ccmigrate.lock.key"
"""String key used to identify the advisory lock."""

ATTR_LOCK_ID = "ccmigrate.lock.id"
"""Numeric lock ID derived from the key hash (integer)."""

ATTR_LOCK_TIMEOUT = "ccmigrate.lock.timeout"
"""Lock acquisition timeout in seconds (float)."""

ATTR_LOCK_ACQUIRED = "ccmigrate.lock.acquired"
"""Whether the lock was successfully acquired (boolean)."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "error.type"
"""Type/class of error that occurred (string)."""

ATTR_ERROR_CODE = "ccmigrate.error.code"
"""Engine error code from the error classification (string)."""


__all__ = [
    "ATTR_ENTITY_TYPE",
    "ATTR_ENTITY_ID",
    "ATTR_ITEM_COUNT",
    "ATTR_ITEM_STATUS",
    "ATTR_SOURCE_ORG",
    "ATTR_TARGET_ENV",
    "ATTR_DRY_RUN",
    "ATTR_MIGRATION_ID",
    "ATTR_BACKUP_ID",
    "ATTR_BACKUP_COMPONENTS",
    "ATTR_COMPRESSION_LEVEL",
    "ATTR_ROLLBACK_ID",
    "ATTR_ROLLBACK_SCOPE",
    "ATTR_COMPONENT",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_ID",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_LOCK_ACQUIRED",
    "ATTR_ERROR_TYPE",
    "ATTR_ERROR_CODE",
]
