"""
Data models for the migration rollout system.

This module defines the flag record that drives request routing, the static
phase table the rollout walks through, and the probe, metrics, alert and
health-status records produced while a rollout is being watched.

Models in this module:

Enums:
    - MetricsStatus: Per-sample status derived from probe failure rate
    - HealthStatus: Composite classification of a monitor tick
    - AlertType: Alert severity
    - AlertCondition: The check that raised an alert
    - ProbeKind: Closed set of probe tags

Core Models:
    - MigrationFlags: The persisted rollout configuration (pydantic)
    - RolloutPhase: One entry of the phase table
    - HealthCheckResult: Outcome of one probe
    - RolloutMetrics: One sample per evaluation cycle
    - Alert: An alert raised by the health monitor
    - SystemHealthStatus: Read-only view of current health

Phase lookup:
    - ROLLOUT_PHASES, current_phase, next_phase, phase_index
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field

# Availability at or above this counts toward uptime.
UPTIME_AVAILABILITY_THRESHOLD = 95.0


class MetricsStatus(Enum):
    """
    Status of a single metrics sample.

    Derived from the share of failing probes in the cycle.
    """

    HEALTHY = "healthy"
    """At most 20% of probes failed."""

    WARNING = "warning"
    """More than 20% of probes failed."""

    CRITICAL = "critical"
    """More than 50% of probes failed."""

    @classmethod
    def from_failure_rate(cls, failure_rate_pct: float) -> MetricsStatus:
        """
        Classify a probe failure rate.

        Args:
            failure_rate_pct: Failed probes as a percentage of all probes.

        Returns:
            The matching status.
        """
        if failure_rate_pct > 50:
            return cls.CRITICAL
        if failure_rate_pct > 20:
            return cls.WARNING
        return cls.HEALTHY


class HealthStatus(Enum):
    """
    Composite health classification produced by the health monitor.

    Attributes:
        HEALTHY: All thresholds met.
        DEGRADED: Within critical limits but outside the comfort margin.
        CRITICAL: At least one critical threshold breached.
    """

    HEALTHY = "healthy"
    """All thresholds met."""

    DEGRADED = "degraded"
    """Within critical limits but outside the comfort margin."""

    CRITICAL = "critical"
    """At least one critical threshold breached."""

    @property
    def is_healthy(self) -> bool:
        """Check if this status is HEALTHY."""
        return self == HealthStatus.HEALTHY


class AlertType(Enum):
    """Alert severity."""

    WARNING = "warning"
    CRITICAL = "critical"
    INFO = "info"


class AlertCondition(Enum):
    """
    The check that raised an alert.

    Used to merge repeated alerts when de-duplication is enabled and to
    resolve alerts whose condition has cleared.
    """

    RESPONSE_TIME = "response_time"
    """Average response time exceeded the budget."""

    AVAILABILITY = "availability"
    """Availability dropped below the alert threshold."""

    DATA_CONSISTENCY = "data_consistency"
    """Migrated data consistency dropped below the minimum."""

    ERRORS = "errors"
    """One or more probes failed."""

    AUTOMATIC_ROLLBACK = "automatic_rollback"
    """The monitor reverted the rollout."""


class ProbeKind(Enum):
    """
    Closed set of probe tags.

    The first four are run by the rollout controller during a soak window,
    the remaining six by the health monitor on every tick.
    """

    LEGACY_READ = "legacy_read"
    MIGRATED_READ = "migrated_read"
    DATA_CONSISTENCY = "data_consistency"
    AGGREGATE_JOIN = "aggregate_join"
    CONNECTIVITY = "connectivity"
    READ_PERFORMANCE = "read_performance"
    WRITE_PERFORMANCE = "write_performance"
    DATA_INTEGRITY = "data_integrity"
    FLAG_VALIDATION = "flag_validation"
    AUDIT_LOG = "audit_log"

    @property
    def measures_consistency(self) -> bool:
        """Check if results of this kind carry a data consistency value."""
        return self in (ProbeKind.DATA_CONSISTENCY, ProbeKind.DATA_INTEGRITY)


class MigrationFlags(BaseModel):
    """
    The persisted rollout configuration.

    A single logical record read by request routing on every request.
    Instances are immutable; changes go through FlagStore.update_flags,
    which writes a whole new record.

    Two invariants must hold for any record that is persisted:
        - an emergency rollback disables reads and writes and zeroes the
          percentage
        - writes to the migrated path require reads from it

    Attributes:
        read_enabled: Route reads to the migrated path.
        write_enabled: Route writes to the migrated path.
        validation_logging_enabled: Compare legacy and migrated reads in logs.
        percentage: Share of traffic routed to the migrated path (0-100).
        emergency_rollback: Kill switch overriding every other field.
        updated_at: When the record was last written.
        updated_by: Actor that last wrote the record.

    Example:
        >>> flags = MigrationFlags.safe_defaults()
        >>> flags.read_enabled
        False
        >>> flags.model_copy(update={"write_enabled": True}).violations()
        ['write_enabled requires read_enabled']
    """

    model_config = ConfigDict(frozen=True)

    read_enabled: bool = Field(default=False, description="Route reads to the migrated path")
    write_enabled: bool = Field(default=False, description="Route writes to the migrated path")
    validation_logging_enabled: bool = Field(
        default=True,
        description="Log differences between legacy and migrated reads",
    )
    percentage: int = Field(
        default=0,
        ge=0,
        le=100,
        description="Share of traffic routed to the migrated path",
    )
    emergency_rollback: bool = Field(default=False, description="Kill switch")
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the record was last written (UTC)",
    )
    updated_by: str = Field(default="system", description="Actor that last wrote the record")

    @classmethod
    def safe_defaults(cls, updated_by: str = "system") -> Self:
        """
        Build the fail-closed record: every migrated path off, validation on.

        Args:
            updated_by: Actor recorded on the record.

        Returns:
            A new MigrationFlags instance.
        """
        return cls(
            read_enabled=False,
            write_enabled=False,
            validation_logging_enabled=True,
            percentage=0,
            emergency_rollback=False,
            updated_by=updated_by,
        )

    def violations(self) -> list[str]:
        """
        List every invariant this record breaks.

        Returns:
            Empty list when the record is consistent.
        """
        problems: list[str] = []
        if self.emergency_rollback:
            if self.read_enabled:
                problems.append("emergency_rollback forbids read_enabled")
            if self.write_enabled:
                problems.append("emergency_rollback forbids write_enabled")
            if self.percentage != 0:
                problems.append("emergency_rollback requires percentage 0")
        if self.write_enabled and not self.read_enabled:
            problems.append("write_enabled requires read_enabled")
        return problems

    @property
    def is_valid(self) -> bool:
        """Check that no invariant is broken."""
        return not self.violations()

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON storage.

        Returns:
            Dictionary representation suitable for JSON serialization.
        """
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """
        Create from dictionary.

        Args:
            data: Dictionary produced by to_dict or read from storage.

        Returns:
            MigrationFlags instance.
        """
        return cls.model_validate(data)


@dataclass(frozen=True)
class RolloutPhase:
    """
    One step of the rollout.

    Attributes:
        percentage: Traffic share routed to the migrated path.
        description: Operator-facing summary.
        enable_reads: Whether reads go to the migrated path.
        enable_writes: Whether writes go to the migrated path.
        estimated_soak_minutes: Suggested time to hold before advancing.
    """

    percentage: int
    description: str
    enable_reads: bool
    enable_writes: bool
    estimated_soak_minutes: int

    @property
    def is_final(self) -> bool:
        """Check if this is the 100% phase."""
        return self.percentage >= 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "percentage": self.percentage,
            "description": self.description,
            "enable_reads": self.enable_reads,
            "enable_writes": self.enable_writes,
            "estimated_soak_minutes": self.estimated_soak_minutes,
        }


ROLLOUT_PHASES: tuple[RolloutPhase, ...] = (
    RolloutPhase(0, "Reads from legacy table only", False, False, 0),
    RolloutPhase(10, "10% of reads from migrated table", True, False, 30),
    RolloutPhase(25, "25% of reads from migrated table", True, False, 60),
    RolloutPhase(50, "50% of reads and writes on migrated table", True, True, 120),
    RolloutPhase(75, "75% of operations on migrated table", True, True, 180),
    RolloutPhase(100, "100% of operations on migrated table", True, True, 240),
)
"""The phase table, ordered by strictly increasing percentage."""


def current_phase(percentage: int) -> RolloutPhase:
    """
    Get the phase in effect at a persisted percentage.

    Percentages between two phases map to the lower one.

    Args:
        percentage: Persisted rollout percentage.

    Returns:
        The last phase whose percentage is not above the given value.
    """
    found = ROLLOUT_PHASES[0]
    for phase in ROLLOUT_PHASES:
        if phase.percentage <= percentage:
            found = phase
    return found


def next_phase(percentage: int) -> RolloutPhase | None:
    """
    Get the phase to advance to from a persisted percentage.

    Args:
        percentage: Persisted rollout percentage.

    Returns:
        The first phase strictly above the given value, or None at 100%.
    """
    for phase in ROLLOUT_PHASES:
        if phase.percentage > percentage:
            return phase
    return None


def phase_index(percentage: int) -> int:
    """Position of current_phase(percentage) in ROLLOUT_PHASES."""
    return ROLLOUT_PHASES.index(current_phase(percentage))


@dataclass(frozen=True)
class HealthCheckResult:
    """
    Outcome of a single probe.

    Probes never raise: failures are captured here with the error message.

    Attributes:
        kind: Which probe produced the result.
        success: Whether the probe passed.
        response_time_ms: Wall-clock time spent in the probe.
        error: Error description when the probe failed.
        data_consistency: Consistency percentage for consistency probes.
    """

    kind: ProbeKind
    success: bool
    response_time_ms: float
    error: str | None = None
    data_consistency: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "success": self.success,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
            "data_consistency": self.data_consistency,
        }


@dataclass(frozen=True)
class RolloutMetrics:
    """
    One metrics sample per evaluation cycle.

    Attributes:
        timestamp: When the sample was taken.
        phase: Index of the phase in effect.
        percentage: Persisted rollout percentage.
        errors_count: Number of failed probes.
        avg_response_time_ms: Mean of probes that reported a response time.
        system_availability_pct: Successful probes as a percentage.
        data_consistency_pct: Consistency reported by the consistency probe.
        status: Status derived from the probe failure rate.
        error: Description of the failure for synthetic samples.
    """

    timestamp: datetime
    phase: int
    percentage: int
    errors_count: int
    avg_response_time_ms: float
    system_availability_pct: float
    data_consistency_pct: float
    status: MetricsStatus
    error: str | None = None

    @classmethod
    def from_results(
        cls,
        results: list[HealthCheckResult],
        percentage: int,
        timestamp: datetime | None = None,
    ) -> RolloutMetrics:
        """
        Aggregate probe results into a sample.

        Args:
            results: Probe results from one cycle.
            percentage: Persisted rollout percentage during the cycle.
            timestamp: Sample time (defaults to now).

        Returns:
            The aggregated sample.
        """
        total = len(results)
        failed = sum(1 for r in results if not r.success)
        timed = [r.response_time_ms for r in results if r.response_time_ms > 0]
        avg_response = sum(timed) / len(timed) if timed else 0.0
        availability = ((total - failed) / total * 100) if total else 0.0
        consistency = next(
            (
                r.data_consistency
                for r in results
                if r.kind.measures_consistency and r.data_consistency is not None
            ),
            100.0,
        )
        failure_rate = (failed / total * 100) if total else 100.0
        return cls(
            timestamp=timestamp or datetime.now(UTC),
            phase=phase_index(percentage),
            percentage=percentage,
            errors_count=failed,
            avg_response_time_ms=avg_response,
            system_availability_pct=availability,
            data_consistency_pct=consistency,
            status=MetricsStatus.from_failure_rate(failure_rate),
        )

    @classmethod
    def pipeline_failure(
        cls,
        message: str,
        percentage: int = 0,
        timestamp: datetime | None = None,
    ) -> RolloutMetrics:
        """
        Build the synthetic critical sample used when aggregation fails.

        Args:
            message: Description of the failure.
            percentage: Last known rollout percentage.
            timestamp: Sample time (defaults to now).

        Returns:
            A critical sample with zero availability and consistency.
        """
        return cls(
            timestamp=timestamp or datetime.now(UTC),
            phase=phase_index(percentage),
            percentage=percentage,
            errors_count=999,
            avg_response_time_ms=9999.0,
            system_availability_pct=0.0,
            data_consistency_pct=0.0,
            status=MetricsStatus.CRITICAL,
            error=message,
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation suitable for JSON.
        """
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase,
            "percentage": self.percentage,
            "errors_count": self.errors_count,
            "avg_response_time_ms": self.avg_response_time_ms,
            "system_availability_pct": self.system_availability_pct,
            "data_consistency_pct": self.data_consistency_pct,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass(frozen=True)
class Alert:
    """
    An alert raised by the health monitor.

    Alerts are immutable; resolving one produces a new instance with
    resolved and resolved_at set.

    Attributes:
        type: Alert severity.
        message: Human-readable description.
        condition: The check that raised the alert.
        metrics_snapshot: The sample that triggered the alert.
        id: Unique identifier.
        timestamp: When the alert was raised.
        resolved: Whether the alert has been resolved.
        resolved_at: When the alert was resolved.
    """

    type: AlertType
    message: str
    condition: AlertCondition
    metrics_snapshot: RolloutMetrics | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    resolved: bool = False
    resolved_at: datetime | None = None

    def resolve(self, at: datetime | None = None) -> Alert:
        """Return a resolved copy of this alert."""
        return replace(self, resolved=True, resolved_at=at or datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "message": self.message,
            "condition": self.condition.value,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "metrics_snapshot": (
                self.metrics_snapshot.to_dict() if self.metrics_snapshot else None
            ),
        }


@dataclass(frozen=True)
class SystemHealthStatus:
    """
    Read-only view of the system's current health.

    Attributes:
        status: Composite classification of the latest sample.
        last_check: When the latest sample was taken.
        metrics: The latest sample.
        active_alerts: Unresolved alerts.
        uptime_pct: Share of retained samples with availability >= 95.
        average_response_time_ms: Mean response time over retained samples.
        data_consistency_score: Consistency from the latest sample.
    """

    status: HealthStatus
    last_check: datetime
    metrics: RolloutMetrics
    active_alerts: tuple[Alert, ...]
    uptime_pct: float
    average_response_time_ms: float
    data_consistency_score: float

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation suitable for JSON.
        """
        return {
            "status": self.status.value,
            "last_check": self.last_check.isoformat(),
            "metrics": self.metrics.to_dict(),
            "active_alerts": [a.to_dict() for a in self.active_alerts],
            "uptime_pct": self.uptime_pct,
            "average_response_time_ms": self.average_response_time_ms,
            "data_consistency_score": self.data_consistency_score,
        }


__all__ = [
    "UPTIME_AVAILABILITY_THRESHOLD",
    "MetricsStatus",
    "HealthStatus",
    "AlertType",
    "AlertCondition",
    "ProbeKind",
    "MigrationFlags",
    "RolloutPhase",
    "ROLLOUT_PHASES",
    "current_phase",
    "next_phase",
    "phase_index",
    "HealthCheckResult",
    "RolloutMetrics",
    "Alert",
    "SystemHealthStatus",
]
