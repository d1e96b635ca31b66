"""
OpenTelemetry metrics for engine operations.

Metrics Exposed:
    - ccmigrate.items.processed (Counter): Migration items by entity type and status
    - ccmigrate.batch.duration (Histogram): Duration of migrate batches in seconds
    - ccmigrate.rollback.steps (Counter): Rollback steps by component and status
    - ccmigrate.backup.size (Histogram): Original size of created backups in bytes

Instruments are created from the global MeterProvider; without an SDK
provider configured by the caller they are no-ops (OpenTelemetry API
default behaviour). With ``enable_metrics=False`` no instrument is created
at all. Local tallies are kept either way for ``get_snapshot()``.

Example:
    >>> metrics = EngineMetrics()
    >>> metrics.record_item("user", "migrated")
    >>> metrics.record_batch_duration("user", 1.2, dry_run=False)
    >>> metrics.get_snapshot().items_processed
    {'user:migrated': 1}
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics

METER_NAME = "ccmigrate"

# Module-level meter instance
_meter: metrics.Meter | None = None


def _get_meter() -> metrics.Meter:
    """Get or create the meter for the ccmigrate namespace."""
    global _meter
    if _meter is None:
        _meter = metrics.get_meter(METER_NAME, version="1.0.0")
    return _meter


def reset_meter() -> None:
    """
    Reset the global meter instance.

    Useful for testing to pick up a freshly installed MeterProvider.
    """
    global _meter
    _meter = None


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(
        self,
        amount: int | float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(
        self,
        value: float,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        pass


@dataclass(frozen=True)
class EngineMetricSnapshot:
    """
    Snapshot of locally tallied metric values.

    Attributes:
        items_processed: "<entity_type>:<status>" -> count
        batch_durations: Recorded batch durations in seconds
        rollback_steps: "<component>:<status>" -> count
        backup_sizes: Recorded backup sizes in bytes
    """

    items_processed: dict[str, int] = field(default_factory=dict)
    batch_durations: list[float] = field(default_factory=list)
    rollback_steps: dict[str, int] = field(default_factory=dict)
    backup_sizes: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "items_processed": dict(self.items_processed),
            "batch_durations": list(self.batch_durations),
            "rollback_steps": dict(self.rollback_steps),
            "backup_sizes": list(self.backup_sizes),
        }


@dataclass
class EngineMetrics:
    """
    Container for engine metric instruments.

    Attributes:
        enable_metrics: Whether OpenTelemetry instruments are created (default True)
    """

    enable_metrics: bool = True

    _items_counter: Any = field(default=None, init=False, repr=False)
    _batch_histogram: Any = field(default=None, init=False, repr=False)
    _rollback_counter: Any = field(default=None, init=False, repr=False)
    _backup_histogram: Any = field(default=None, init=False, repr=False)

    # Internal tallies for snapshot
    _items: Counter[str] = field(default_factory=Counter, init=False, repr=False)
    _batch_durations: list[float] = field(default_factory=list, init=False, repr=False)
    _rollback_steps: Counter[str] = field(default_factory=Counter, init=False, repr=False)
    _backup_sizes: list[int] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = _get_meter()

        self._items_counter = meter.create_counter(
            name="ccmigrate.items.processed",
            unit="items",
            description="Migration items processed, by entity type and item status",
        )
        self._batch_histogram = meter.create_histogram(
            name="ccmigrate.batch.duration",
            unit="s",
            description="Duration of migrate batches in seconds",
        )
        self._rollback_counter = meter.create_counter(
            name="ccmigrate.rollback.steps",
            unit="steps",
            description="Rollback steps resolved, by component and step status",
        )
        self._backup_histogram = meter.create_histogram(
            name="ccmigrate.backup.size",
            unit="By",
            description="Original size of created backups in bytes",
        )

    def _setup_noop(self) -> None:
        self._items_counter = NoOpCounter()
        self._batch_histogram = NoOpHistogram()
        self._rollback_counter = NoOpCounter()
        self._backup_histogram = NoOpHistogram()

    def record_item(self, entity_type: str, status: str) -> None:
        """
        Record one processed migration item.

        Args:
            entity_type: Entity type value (e.g. "user")
            status: Item status value (e.g. "migrated")
        """
        self._items_counter.add(1, {"entity_type": entity_type, "status": status})
        self._items[f"{entity_type}:{status}"] += 1

    def record_batch_duration(self, entity_type: str, duration_seconds: float, *, dry_run: bool) -> None:
        """Record the duration of one migrate batch."""
        self._batch_histogram.record(
            duration_seconds,
            {"entity_type": entity_type, "dry_run": str(dry_run).lower()},
        )
        self._batch_durations.append(duration_seconds)

    def record_rollback_step(self, component: str, status: str) -> None:
        """Record one resolved rollback step."""
        self._rollback_counter.add(1, {"component": component, "status": status})
        self._rollback_steps[f"{component}:{status}"] += 1

    def record_backup_size(self, size_bytes: int, compression_level: str) -> None:
        """Record the original size of a created backup."""
        self._backup_histogram.record(size_bytes, {"compression_level": compression_level})
        self._backup_sizes.append(size_bytes)

    def get_snapshot(self) -> EngineMetricSnapshot:
        """
        Get a snapshot of current metric values.

        Returns:
            EngineMetricSnapshot with accumulated values
        """
        return EngineMetricSnapshot(
            items_processed=dict(self._items),
            batch_durations=list(self._batch_durations),
            rollback_steps=dict(self._rollback_steps),
            backup_sizes=list(self._backup_sizes),
        )

    @property
    def metrics_enabled(self) -> bool:
        return self.enable_metrics
