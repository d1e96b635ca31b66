"""
Engine configuration.

EngineConfig is built by the caller and handed to MigrationEngine (or to the
individual components). There is no environment-variable layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

DEFAULT_COMPRESSION_RATIOS: dict[str, float] = {
    "low": 0.8,
    "medium": 0.6,
    "high": 0.4,
}


@dataclass(frozen=True)
class EngineConfig:
    """
    Configuration for the migration engine.

    This class is immutable (frozen) so a running operation always sees the
    settings it started with.

    Attributes:
        backup_retention_days: Days a backup stays eligible for rollback (default 30).
        compression_ratios: Ratio applied to the original backup size per
            compression level.
        lock_timeout_seconds: Seconds to wait for the advisory lock of a
            migrate/rollback call. None waits forever.
        include_context_variables: Generate context variables for migrated flows.
        include_routing_rules: Generate a routing rule stub for migrated flows.
        enable_tracing: Whether components create OpenTelemetry tracers.
        enable_metrics: Whether components record OpenTelemetry metrics.

    Example:
        >>> config = EngineConfig(lock_timeout_seconds=5.0)
        >>> config.backup_retention_days
        30
    """

    backup_retention_days: int = 30
    compression_ratios: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_COMPRESSION_RATIOS)
    )
    lock_timeout_seconds: float | None = 30.0
    include_context_variables: bool = True
    include_routing_rules: bool = True
    enable_tracing: bool = True
    enable_metrics: bool = True

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.backup_retention_days < 1:
            raise ValueError(
                f"backup_retention_days must be >= 1, got {self.backup_retention_days}"
            )

        missing = set(DEFAULT_COMPRESSION_RATIOS) - set(self.compression_ratios)
        if missing:
            raise ValueError(f"compression_ratios is missing levels: {sorted(missing)}")

        for level, ratio in self.compression_ratios.items():
            if not 0 < ratio <= 1:
                raise ValueError(f"compression ratio for {level!r} must be in (0, 1], got {ratio}")

        if self.lock_timeout_seconds is not None and self.lock_timeout_seconds < 0:
            raise ValueError(
                f"lock_timeout_seconds must be >= 0 or None, got {self.lock_timeout_seconds}"
            )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for logging.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return {
            "backup_retention_days": self.backup_retention_days,
            "compression_ratios": dict(self.compression_ratios),
            "lock_timeout_seconds": self.lock_timeout_seconds,
            "include_context_variables": self.include_context_variables,
            "include_routing_rules": self.include_routing_rules,
            "enable_tracing": self.enable_tracing,
            "enable_metrics": self.enable_metrics,
        }
