"""
Shared pytest fixtures for the ccmigrate tests.

This module provides:
- Entity factories (source_user, target_user, ...)
- Connector fixtures (source, target) backed by the in-memory connectors
- Engine fixtures wired with a MockTracer and local-only metrics
- SQLite fixtures (sqlite_engine) for SQLBackupRepository tests
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from ccmigrate.config import EngineConfig
from ccmigrate.connectors import InMemorySourceConnector, InMemoryTargetConnector
from ccmigrate.engine import MigrationEngine
from ccmigrate.entities import EntityType, SourceEntity, TargetEntity
from ccmigrate.metrics import EngineMetrics
from ccmigrate.observability import MockTracer

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass


# ============================================================================
# OpenTelemetry Metrics Availability Check
# ============================================================================

OTEL_METRICS_AVAILABLE = False
try:
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_METRICS_AVAILABLE = True
except ImportError:
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")

skip_if_no_otel_metrics = pytest.mark.skipif(
    not OTEL_METRICS_AVAILABLE, reason="opentelemetry-sdk not installed"
)

SOURCE_ORG = "org-1"
TARGET_ENV = "env-prod"


# =============================================================================
# Entity Factories
# =============================================================================


def make_source(
    entity_id: str,
    entity_type: EntityType = EntityType.USER,
    **fields: Any,
) -> SourceEntity:
    """Build a source entity with sensible defaults."""
    return SourceEntity(id=entity_id, entity_type=entity_type, **fields)


def make_target(
    entity_id: str,
    entity_type: EntityType = EntityType.USER,
    **fields: Any,
) -> TargetEntity:
    """Build a target entity with sensible defaults."""
    return TargetEntity(id=entity_id, entity_type=entity_type, **fields)


@pytest.fixture
def source_user() -> SourceEntity:
    """The user from the worked migration example."""
    return make_source("u1", name="Jane Doe", email="jane@x.com")


# =============================================================================
# Connector Fixtures
# =============================================================================


@pytest.fixture
def source() -> InMemorySourceConnector:
    """Provide an empty in-memory source connector."""
    return InMemorySourceConnector()


@pytest.fixture
def target() -> InMemoryTargetConnector:
    """Provide an empty in-memory target connector."""
    return InMemoryTargetConnector()


@pytest.fixture
def tracer() -> MockTracer:
    """Provide a MockTracer recording spans."""
    return MockTracer()


@pytest.fixture
def config() -> EngineConfig:
    """Engine configuration with a short lock timeout for tests."""
    return EngineConfig(lock_timeout_seconds=0.2)


@pytest.fixture
def engine(
    source: InMemorySourceConnector,
    target: InMemoryTargetConnector,
    config: EngineConfig,
    tracer: MockTracer,
) -> MigrationEngine:
    """Provide an engine over the in-memory connectors."""
    return MigrationEngine(
        source,
        target,
        config=config,
        metrics=EngineMetrics(enable_metrics=False),
        tracer=tracer,
    )


# =============================================================================
# SQLite Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """
    Provide a SQLAlchemy async engine over a file-backed SQLite database.

    A file database is used because every connection to ``:memory:`` gets
    its own empty database.
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    from sqlalchemy.ext.asyncio import create_async_engine

    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ccmigrate.db'}")
    yield db_engine
    await db_engine.dispose()


# =============================================================================
# OpenTelemetry Metrics Fixtures
# =============================================================================


@pytest.fixture
def metric_reader() -> Generator[Any, None, None]:
    """
    Provide an InMemoryMetricReader for testing metrics.

    The global MeterProvider can only be set once per process, so the
    module's cached meter is pointed at a per-test provider instead.

    Yields:
        InMemoryMetricReader: Reader for inspecting collected metrics.
    """
    if not OTEL_METRICS_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    import ccmigrate.metrics as metrics_module

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    metrics_module._meter = provider.get_meter(metrics_module.METER_NAME)

    yield reader

    metrics_module.reset_meter()
    provider.shutdown()
