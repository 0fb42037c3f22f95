"""
Test data factories.

Builds flag records, probe results and storage contents with sensible
defaults so tests only spell out what they care about.
"""

from typing import Any

from rolloutguard.models import HealthCheckResult, MigrationFlags, ProbeKind
from rolloutguard.repositories import InMemoryDataPathStorage


def flags_at(percentage: int, **overrides: Any) -> MigrationFlags:
    """
    Build a consistent flag record for a rollout percentage.

    Reads are enabled from 10%, writes from 50%, matching the phase table.
    """
    data: dict[str, Any] = {
        "read_enabled": percentage >= 10,
        "write_enabled": percentage >= 50,
        "percentage": percentage,
    }
    data.update(overrides)
    return MigrationFlags(**data)


def probe_result(
    kind: ProbeKind = ProbeKind.CONNECTIVITY,
    success: bool = True,
    ms: float = 10.0,
    consistency: float | None = None,
) -> HealthCheckResult:
    return HealthCheckResult(
        kind=kind,
        success=success,
        response_time_ms=ms,
        error=None if success else "boom",
        data_consistency=consistency,
    )


def populate(storage: InMemoryDataPathStorage, legacy: int = 100, migrated: int = 100) -> None:
    """Fill an in-memory storage with consistent legacy, migrated and audit rows."""
    t = storage.tables
    storage.add_rows(t.join_table, [{"id": i, "name": f"supplier-{i}"} for i in range(5)])
    storage.add_rows(
        t.legacy,
        [{"id": i, t.active_column: True, t.join_column: i % 5} for i in range(legacy)],
    )
    storage.add_rows(t.migrated, [{"id": i, t.active_column: True} for i in range(migrated)])
    storage.add_rows(t.audit, [{"id": 1, "action": "insert"}])
