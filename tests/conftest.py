"""
Shared pytest fixtures for the rolloutguard tests.

This module provides:
- Table layout and storage fixtures (tables, storage, populated storage)
- Flag fixtures (flag_repo, flag_store)
- Infrastructure fixtures (scheduler, publisher, instruments, event recorder)
- SQLite fixtures (sqlite_engine) backed by aiosqlite
- OpenTelemetry metrics fixtures (metric_reader)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from rolloutguard.events import MonitorEventPublisher
from rolloutguard.flags import FlagStore
from rolloutguard.metrics import RolloutInstruments
from rolloutguard.repositories import (
    DataPathTables,
    InMemoryDataPathStorage,
    InMemoryFlagRepository,
)
from rolloutguard.scheduler import TaskScheduler

# Import shared helpers from fixtures module
from tests.fixtures import EventRecorder, FakeClock, populate

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
# OpenTelemetry SDK Availability Check
# ============================================================================

OTEL_SDK_AVAILABLE = False
try:
    from opentelemetry import metrics as otel_metrics
    from opentelemetry.sdk.metrics import MeterProvider
    from opentelemetry.sdk.metrics.export import InMemoryMetricReader

    OTEL_SDK_AVAILABLE = True
except ImportError:
    otel_metrics = None  # type: ignore[assignment]
    MeterProvider = None  # type: ignore[assignment, misc]
    InMemoryMetricReader = None  # type: ignore[assignment, misc]


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")

skip_if_no_otel_sdk = pytest.mark.skipif(
    not OTEL_SDK_AVAILABLE, reason="opentelemetry-sdk not installed"
)


# =============================================================================
# Storage Fixtures
# =============================================================================


@pytest.fixture
def tables() -> DataPathTables:
    """Table layout used by every storage fixture."""
    return DataPathTables(
        legacy="materials",
        migrated="materials_migration",
        audit="materials_audit",
        join_table="suppliers",
        join_column="supplier_id",
        active_column="active",
    )


@pytest.fixture
def storage(tables: DataPathTables) -> InMemoryDataPathStorage:
    """In-memory storage with 100 legacy rows fully mirrored in the migrated table."""
    s = InMemoryDataPathStorage(tables, enable_tracing=False)
    populate(s)
    return s


@pytest.fixture
def empty_storage(tables: DataPathTables) -> InMemoryDataPathStorage:
    """In-memory storage with no rows."""
    return InMemoryDataPathStorage(tables, enable_tracing=False)


# =============================================================================
# Flag Fixtures
# =============================================================================


@pytest.fixture
def flag_repo() -> InMemoryFlagRepository:
    """Empty in-memory flag repository."""
    return InMemoryFlagRepository(enable_tracing=False)


@pytest.fixture
def flag_store(flag_repo: InMemoryFlagRepository) -> FlagStore:
    """FlagStore over the in-memory repository."""
    return FlagStore(flag_repo, enable_tracing=False)


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture
def instruments() -> RolloutInstruments:
    """Metrics instruments with OpenTelemetry disabled; snapshot still works."""
    return RolloutInstruments(rollout_name="test", enable_metrics=False)


@pytest.fixture
def publisher() -> MonitorEventPublisher:
    return MonitorEventPublisher(enable_tracing=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder(publisher: MonitorEventPublisher) -> EventRecorder:
    return EventRecorder(publisher)


@pytest_asyncio.fixture
async def scheduler() -> AsyncGenerator[TaskScheduler, None]:
    """Scheduler that is shut down after the test."""
    s = TaskScheduler()
    yield s
    await s.shutdown(timeout=1.0)


# =============================================================================
# SQLite Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """
    Provide an AsyncEngine on a fresh SQLite file database.

    A file database is used so that separate connections opened from the
    engine see the same data.
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    from sqlalchemy.ext.asyncio import create_async_engine

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rollout.db'}")
    yield engine
    await engine.dispose()


# =============================================================================
# OpenTelemetry Metrics Fixtures
# =============================================================================


@pytest.fixture
def metric_reader() -> Any:
    """
    Provide an InMemoryMetricReader for testing metrics.

    Creates a fresh MeterProvider for the test and passes it to the
    instruments explicitly, so the global provider is never touched.

    Yields:
        tuple of (InMemoryMetricReader, MeterProvider)
    """
    if not OTEL_SDK_AVAILABLE:
        pytest.skip("opentelemetry-sdk not installed")

    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    yield reader, provider
    provider.shutdown()
