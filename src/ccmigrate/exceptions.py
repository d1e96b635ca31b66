"""
Exceptions for the ccmigrate migration and reconciliation engine.

Exception Hierarchy:
    MigrationEngineError (base)
    +-- ConnectivityError
    +-- NotFoundError
    |   +-- BackupNotFoundError
    |   +-- RollbackNotFoundError
    +-- ValidationError
    |   +-- BackupExpiredError
    |   +-- RollbackAlreadyExistsError
    +-- OperationCancelledError

Duplicates found during reconciliation are never raised: they are reported
as ``skipped_duplicate`` items. Backup integrity problems are never raised
either: they are reported through ``ValidationReport.status``.

Error Classification:
    Every engine exception carries an ErrorClassification (severity,
    recoverability, error code, category and operator guidance). Arbitrary
    exceptions raised by connectors are classified through
    ``classify_exception``, which falls back to ``analyze_failure`` to
    categorise the failure from its type and message.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """
    Severity level of engine errors.

    Attributes:
        CRITICAL: Failure requiring immediate attention (corrupted backups).
        ERROR: Failure of a whole operation or a single item.
        WARNING: Issue that should be monitored but may self-resolve.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ErrorRecoverability(Enum):
    """
    Recoverability classification for engine errors.

    Attributes:
        RECOVERABLE: The operation can be re-issued once the cause is fixed
            (bad arguments, lock contention).
        TRANSIENT: Temporary error that may succeed when re-issued later
            (network timeouts, throttling).
        FATAL: Re-issuing the same request will fail the same way.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"


class FailureType(Enum):
    """
    Coarse categories of connector failures.

    Used to classify exceptions that do not belong to the engine's own
    hierarchy, typically raised by platform API clients.
    """

    NETWORK_TIMEOUT = "network_timeout"
    AUTHENTICATION = "authentication"
    DATA_VALIDATION = "data_validation"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorClassification:
    """
    Rich metadata for error classification.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.

    Example:
        >>> classification = ErrorClassification(
        ...     severity=ErrorSeverity.WARNING,
        ...     recoverability=ErrorRecoverability.TRANSIENT,
        ...     error_code="CONNECTIVITY_ERROR",
        ...     category="connectivity",
        ...     suggested_action="Check platform connectivity",
        ... )
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str

    def to_dict(self) -> dict[str, Any]:
        """Convert classification to dictionary for serialization."""
        return {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }


class MigrationEngineError(Exception):
    """
    Base exception for all engine errors.

    Attributes:
        message: Human-readable error description.
        migration_id: The migration involved, if applicable.
        suggested_action: Suggested action for recovery, overriding the
            classification's default guidance.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ENGINE_ERROR",
        category="general",
        suggested_action="Review engine logs and contact support if the issue persists",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: str | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.migration_id = migration_id
        self.suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.migration_id:
            parts.append(f"migration_id={self.migration_id}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """Error classification for this exception type."""
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def error_code(self) -> str:
        """Unique error code (e.g., "CONNECTIVITY_ERROR")."""
        return self.classification.error_code

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "migration_id": self.migration_id,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action or self.classification.suggested_action,
            "classification": self.classification.to_dict(),
        }


class ConnectivityError(MigrationEngineError):
    """
    Raised when a source or target connector is unreachable or rejects a call.

    Attributes:
        platform: "source" or "target".
        operation: Connector operation that failed (e.g., "list_entities").
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="CONNECTIVITY_ERROR",
        category="connectivity",
        suggested_action=(
            "Check network access and credentials for the platform, then re-run the operation"
        ),
    )

    def __init__(
        self,
        platform: str,
        operation: str,
        error: str,
        *,
        migration_id: str | None = None,
    ) -> None:
        self.platform = platform
        self.operation = operation
        self.original_error = error
        super().__init__(
            message=f"{platform} connector call '{operation}' failed: {error}",
            migration_id=migration_id,
        )


class NotFoundError(MigrationEngineError):
    """
    Raised when a requested entity, backup or run does not exist.

    Attributes:
        resource: Kind of resource that was looked up.
        resource_id: Identifier that was not found.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="NOT_FOUND",
        category="lookup",
        suggested_action="Verify the identifier is correct and the resource still exists",
    )

    def __init__(
        self,
        resource: str,
        resource_id: str,
        *,
        migration_id: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            message=f"{resource} not found: {resource_id}",
            migration_id=migration_id,
        )


class BackupNotFoundError(NotFoundError):
    """Raised when a backup id is unknown or belongs to another migration."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKUP_NOT_FOUND",
        category="lookup",
        suggested_action="List the migration's backups and use one of the returned ids",
    )

    def __init__(self, backup_id: str, *, migration_id: str | None = None) -> None:
        self.backup_id = backup_id
        super().__init__("Backup", backup_id, migration_id=migration_id)


class RollbackNotFoundError(NotFoundError):
    """Raised when a rollback run id is unknown."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_NOT_FOUND",
        category="lookup",
        suggested_action="Verify the rollback id",
    )

    def __init__(self, rollback_id: str) -> None:
        self.rollback_id = rollback_id
        super().__init__("Rollback run", rollback_id)


class ValidationError(MigrationEngineError):
    """
    Raised for malformed or missing operation arguments.

    The operation does not start when this error is raised.

    Attributes:
        field: Name of the offending argument, if known.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VALIDATION_ERROR",
        category="validation",
        suggested_action="Correct the request arguments and retry",
    )

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        migration_id: str | None = None,
    ) -> None:
        self.field = field
        super().__init__(message, migration_id=migration_id)


class BackupExpiredError(ValidationError):
    """Raised when a rollback references a backup past its retention window."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="BACKUP_EXPIRED",
        category="validation",
        suggested_action="Create a fresh backup; expired backups are not eligible for rollback",
    )

    def __init__(self, backup_id: str, expired_at: str) -> None:
        self.backup_id = backup_id
        self.expired_at = expired_at
        super().__init__(
            f"Backup {backup_id} expired at {expired_at}",
            field="backup_id",
        )


class RollbackAlreadyExistsError(ValidationError):
    """Raised when a rollback id is reused after its run reached a terminal state."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_ALREADY_EXISTS",
        category="state",
        suggested_action="Use a new rollback id or query the existing run's status",
    )

    def __init__(self, rollback_id: str, status: str) -> None:
        self.rollback_id = rollback_id
        self.status = status
        super().__init__(
            f"Rollback {rollback_id} already finished with status {status}",
            field="rollback_id",
        )


class OperationCancelledError(MigrationEngineError):
    """
    Raised by a CancellationToken when its operation is cancelled.

    Attributes:
        reason: Why the operation was cancelled (explicit cancel or deadline).
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="OPERATION_CANCELLED",
        category="cancellation",
        suggested_action="Re-run the operation; completed items are skipped as duplicates",
    )

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"cancelled: {reason}")


_FAILURE_KEYWORDS: tuple[tuple[FailureType, tuple[str, ...]], ...] = (
    (FailureType.NETWORK_TIMEOUT, ("timeout", "timed out", "network", "connection")),
    (FailureType.AUTHENTICATION, ("unauthorized", "authentication", "forbidden", "401", "403")),
    (FailureType.DATA_VALIDATION, ("validation", "invalid", "malformed")),
    (FailureType.RESOURCE_EXHAUSTION, ("memory", "resource", "quota", "rate limit", "429")),
)


def analyze_failure(exc: BaseException) -> FailureType:
    """
    Categorise an arbitrary exception by its type and message.

    Args:
        exc: The exception to analyze.

    Returns:
        The matching FailureType, UNKNOWN when nothing matches.

    Example:
        >>> analyze_failure(TimeoutError("read timed out"))
        <FailureType.NETWORK_TIMEOUT: 'network_timeout'>
    """
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return FailureType.NETWORK_TIMEOUT
    if isinstance(exc, PermissionError):
        return FailureType.AUTHENTICATION
    if isinstance(exc, MemoryError):
        return FailureType.RESOURCE_EXHAUSTION
    if isinstance(exc, (ValueError, TypeError)):
        return FailureType.DATA_VALIDATION

    message = str(exc).lower()
    for failure_type, keywords in _FAILURE_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return failure_type
    return FailureType.UNKNOWN


_FAILURE_CLASSIFICATIONS: dict[FailureType, ErrorClassification] = {
    FailureType.NETWORK_TIMEOUT: ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="NETWORK_TIMEOUT",
        category="connectivity",
        suggested_action="Platform did not respond in time; re-run the operation later",
    ),
    FailureType.AUTHENTICATION: ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="AUTHENTICATION_FAILED",
        category="authentication",
        suggested_action="Renew the platform credentials or check the client permissions",
    ),
    FailureType.DATA_VALIDATION: ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="DATA_VALIDATION_FAILED",
        category="data",
        suggested_action="The target rejected the payload; fix the source entity and re-run",
    ),
    FailureType.RESOURCE_EXHAUSTION: ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="RESOURCE_EXHAUSTED",
        category="capacity",
        suggested_action="The platform is throttling or out of capacity; re-run later",
    ),
    FailureType.UNKNOWN: ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="UNKNOWN_ERROR",
        category="unknown",
        suggested_action="An unexpected error occurred. Review logs and contact support.",
    ),
}


def classify_exception(exc: BaseException) -> ErrorClassification:
    """
    Classify any exception and return its error classification.

    For MigrationEngineError subclasses, returns their specific classification.
    Other exceptions are categorised with ``analyze_failure``.

    Args:
        exc: The exception to classify.

    Returns:
        ErrorClassification for the exception.
    """
    if isinstance(exc, MigrationEngineError):
        return exc.classification
    return _FAILURE_CLASSIFICATIONS[analyze_failure(exc)]


def describe_failure(exc: BaseException) -> str:
    """
    Render an exception as the warning text recorded on failed items.

    Returns:
        ``"<error_code>: <message>"``.
    """
    message = str(exc) or type(exc).__name__
    return f"{classify_exception(exc).error_code}: {message}"


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "FailureType",
    "MigrationEngineError",
    "ConnectivityError",
    "NotFoundError",
    "BackupNotFoundError",
    "RollbackNotFoundError",
    "ValidationError",
    "BackupExpiredError",
    "RollbackAlreadyExistsError",
    "OperationCancelledError",
    "analyze_failure",
    "classify_exception",
    "describe_failure",
]
