"""
Health probes shared by the rollout controller and the health monitor.

A probe is a timed storage operation whose outcome is captured as a
HealthCheckResult. Probes never raise: any exception is caught here and
turned into an unsuccessful result carrying the error message.
Cancellation still propagates.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any

from rolloutguard.metrics import RolloutInstruments
from rolloutguard.models import HealthCheckResult, MigrationFlags, ProbeKind
from rolloutguard.observability import Tracer, create_tracer
from rolloutguard.observability.attributes import (
    ATTR_PROBE_KIND,
    ATTR_PROBE_RESPONSE_TIME_MS,
    ATTR_PROBE_SUCCESS,
)
from rolloutguard.repositories.storage import DataPathStorage

logger = logging.getLogger(__name__)


def compute_consistency(legacy_active: int, migrated_active: int, percentage: int) -> float:
    """
    Consistency of the migrated table relative to what the rollout expects.

    The migrated table is expected to hold floor(legacy * percentage / 100)
    active rows. Nothing expected counts as fully consistent, and surplus
    rows never push the score above 100.

    Args:
        legacy_active: Active rows in the legacy table.
        migrated_active: Active rows in the migrated table.
        percentage: Current rollout percentage.

    Returns:
        Consistency percentage in [0, 100].
    """
    expected = math.floor(legacy_active * percentage / 100)
    if expected == 0:
        return 100.0
    return min(migrated_active / expected * 100, 100.0)


class ProbeRunner:
    """
    Runs probes against a DataPathStorage.

    Every probe is timed with a monotonic clock, traced, and reported to
    the shared RolloutInstruments.

    Example:
        >>> runner = ProbeRunner(storage)
        >>> result = await runner.legacy_read()
        >>> result.success
        True
    """

    def __init__(
        self,
        storage: DataPathStorage,
        *,
        instruments: RolloutInstruments | None = None,
        sample_limit: int = 10,
        aggregate_query_limit: int = 100,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._storage = storage
        self._instruments = instruments
        self._sample_limit = sample_limit
        self._aggregate_limit = aggregate_query_limit
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    @property
    def storage(self) -> DataPathStorage:
        return self._storage

    async def run(
        self,
        kind: ProbeKind,
        operation: Callable[[], Awaitable[Any]],
        *,
        passes: Callable[[Any, float], bool] | None = None,
        consistency: Callable[[Any], float | None] | None = None,
    ) -> HealthCheckResult:
        """
        Time an operation and capture its outcome.

        Args:
            kind: Probe tag.
            operation: Coroutine function doing the storage work.
            passes: Decides success from (value, elapsed_ms). Defaults to
                "did not raise".
            consistency: Extracts a consistency value from the result.

        Returns:
            The probe result.
        """
        with self._tracer.span("rolloutguard.probe.run", {ATTR_PROBE_KIND: kind.value}) as span:
            start = time.perf_counter()
            try:
                value = await operation()
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                logger.warning(
                    "Probe %s failed after %.1fms: %s",
                    kind.value,
                    elapsed,
                    e,
                )
                result = HealthCheckResult(
                    kind=kind,
                    success=False,
                    response_time_ms=elapsed,
                    error=str(e) or type(e).__name__,
                )
            else:
                elapsed = (time.perf_counter() - start) * 1000
                score = consistency(value) if consistency else None
                success = passes(value, elapsed) if passes else True
                result = HealthCheckResult(
                    kind=kind,
                    success=success,
                    response_time_ms=elapsed,
                    data_consistency=score,
                )

            if span is not None:
                span.set_attribute(ATTR_PROBE_SUCCESS, result.success)
                span.set_attribute(ATTR_PROBE_RESPONSE_TIME_MS, result.response_time_ms)
            if self._instruments is not None:
                self._instruments.record_probe(result)
            return result

    # =========================================================================
    # Read probes
    # =========================================================================

    async def legacy_read(self) -> HealthCheckResult:
        """Read a sample from the legacy table."""
        table = self._storage.tables.legacy
        return await self.run(
            ProbeKind.LEGACY_READ,
            lambda: self._storage.select_sample(table, self._sample_limit),
        )

    async def migrated_read(self) -> HealthCheckResult:
        """Read a sample from the migrated table."""
        table = self._storage.tables.migrated
        return await self.run(
            ProbeKind.MIGRATED_READ,
            lambda: self._storage.select_sample(table, self._sample_limit),
        )

    async def connectivity(self) -> HealthCheckResult:
        """Check that the storage answers a trivial read."""
        table = self._storage.tables.legacy
        return await self.run(
            ProbeKind.CONNECTIVITY,
            lambda: self._storage.select_sample(table, 1),
        )

    async def audit_log(self) -> HealthCheckResult:
        """Check that the audit log table is readable."""
        table = self._storage.tables.audit
        return await self.run(
            ProbeKind.AUDIT_LOG,
            lambda: self._storage.select_sample(table, 1),
        )

    # =========================================================================
    # Consistency probes
    # =========================================================================

    async def data_consistency(
        self,
        percentage: int,
        min_consistency: float,
        kind: ProbeKind = ProbeKind.DATA_CONSISTENCY,
    ) -> HealthCheckResult:
        """
        Compare active row counts of the legacy and migrated tables.

        Args:
            percentage: Current rollout percentage.
            min_consistency: Score at which the probe passes.
            kind: DATA_CONSISTENCY for the soak monitor, DATA_INTEGRITY for
                the health monitor.
        """
        tables = self._storage.tables

        async def measure() -> float:
            legacy = await self._storage.count_active(tables.legacy)
            migrated = await self._storage.count_active(tables.migrated)
            return compute_consistency(legacy, migrated, percentage)

        return await self.run(
            kind,
            measure,
            passes=lambda score, _elapsed: score >= min_consistency,
            consistency=lambda score: score,
        )

    # =========================================================================
    # Performance probes
    # =========================================================================

    async def aggregate_join(
        self,
        budget_ms: float,
        kind: ProbeKind = ProbeKind.AGGREGATE_JOIN,
    ) -> HealthCheckResult:
        """
        Time the aggregate join query.

        Args:
            budget_ms: The probe passes when the query finishes faster.
            kind: AGGREGATE_JOIN for the soak monitor, READ_PERFORMANCE for
                the health monitor.
        """
        return await self.run(
            kind,
            lambda: self._storage.run_aggregate_query(self._aggregate_limit),
            passes=lambda _rows, elapsed: elapsed < budget_ms,
        )

    async def write_path(self) -> HealthCheckResult:
        """
        Exercise the write path inside a transaction that is rolled back.

        Nothing is written: the probe only checks that a transaction can be
        opened and queried on the migrated table.
        """
        table = self._storage.tables.migrated

        async def in_transaction(storage: DataPathStorage) -> int:
            return len(await storage.select_sample(table, 1))

        return await self.run(
            ProbeKind.WRITE_PERFORMANCE,
            lambda: self._storage.run_in_transaction(in_transaction),
        )

    # =========================================================================
    # Flag probe
    # =========================================================================

    async def flag_validation(
        self,
        load_flags: Callable[[], Awaitable[MigrationFlags]],
    ) -> HealthCheckResult:
        """
        Check that the persisted flags satisfy their invariants.

        Args:
            load_flags: Coroutine function returning the current flags.
        """
        return await self.run(
            ProbeKind.FLAG_VALIDATION,
            load_flags,
            passes=lambda flags, _elapsed: flags.is_valid,
        )


__all__ = [
    "compute_consistency",
    "ProbeRunner",
]
