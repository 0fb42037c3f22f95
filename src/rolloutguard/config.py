"""
Configuration for the rollout controller and the health monitor.

Both configurations are immutable (frozen) so a running controller or
monitor cannot have its thresholds changed underneath it. Build a new
instance with dataclasses.replace() to tweak a value.

Example:
    >>> from rolloutguard.config import MonitoringConfig
    >>> config = MonitoringConfig(health_check_interval_seconds=30)
    >>> config.max_response_time_ms
    1000.0
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Self


def _from_known_keys(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


@dataclass(frozen=True)
class RolloutConfig:
    """
    Configuration for RolloutController.

    Attributes:
        soak_duration_seconds: Length of the soak window after a phase
            transition (default 300).
        poll_interval_seconds: Delay between soak polls (default 30).
        max_probe_failures_per_poll: A poll with more failing probes than
            this reverts the rollout (default 3).
        max_soak_errors: Cumulative errors across the soak window that
            revert the rollout (default 10).
        min_probe_consistency: Consistency percentage at which the
            consistency probe passes (default 90).
        low_consistency_warning: Mean soak consistency below this is
            logged as a warning (default 95).
        aggregate_budget_ms: Aggregate join probe passes below this
            response time (default 1000).
        aggregate_query_limit: Rows fetched by the aggregate join probe
            (default 100).
        sample_limit: Rows fetched by the read probes (default 10).
        metrics_interval_seconds: Period of the background metrics loop
            (default 60).
        metrics_history_size: Samples kept by the metrics loop (default 100).
        actor: Actor recorded on flag updates (default "rollout_service").
    """

    soak_duration_seconds: float = 300.0
    poll_interval_seconds: float = 30.0
    max_probe_failures_per_poll: int = 3
    max_soak_errors: int = 10
    min_probe_consistency: float = 90.0
    low_consistency_warning: float = 95.0
    aggregate_budget_ms: float = 1000.0
    aggregate_query_limit: int = 100
    sample_limit: int = 10
    metrics_interval_seconds: float = 60.0
    metrics_history_size: int = 100
    actor: str = "rollout_service"

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.soak_duration_seconds < 0:
            raise ValueError(
                f"soak_duration_seconds must be >= 0, got {self.soak_duration_seconds}"
            )
        if self.poll_interval_seconds <= 0:
            raise ValueError(
                f"poll_interval_seconds must be > 0, got {self.poll_interval_seconds}"
            )
        if self.max_probe_failures_per_poll < 0:
            raise ValueError(
                "max_probe_failures_per_poll must be >= 0, "
                f"got {self.max_probe_failures_per_poll}"
            )
        if self.max_soak_errors < 1:
            raise ValueError(f"max_soak_errors must be >= 1, got {self.max_soak_errors}")
        if not 0 <= self.min_probe_consistency <= 100:
            raise ValueError(
                f"min_probe_consistency must be in [0, 100], got {self.min_probe_consistency}"
            )
        if self.metrics_interval_seconds <= 0:
            raise ValueError(
                f"metrics_interval_seconds must be > 0, got {self.metrics_interval_seconds}"
            )
        if self.metrics_history_size < 1:
            raise ValueError(
                f"metrics_history_size must be >= 1, got {self.metrics_history_size}"
            )
        if not self.actor:
            raise ValueError("actor must not be empty")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """
        Create from dictionary.

        Unknown keys are ignored and missing keys take their defaults.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            RolloutConfig instance.
        """
        return cls(**_from_known_keys(cls, data))


@dataclass(frozen=True)
class MonitoringConfig:
    """
    Configuration for HealthMonitor.

    Attributes:
        health_check_interval_seconds: Period of the monitor loop (default 60).
        max_response_time_ms: Response time budget (default 1000).
        max_error_rate: Tolerated probe error rate in percent (default 5).
        min_data_consistency: Consistency below this is critical (default 95).
        min_probe_consistency: Consistency at which the data integrity probe
            passes (default 90).
        availability_alert_threshold: Availability below this raises an
            alert (default 95).
        monitoring_window_minutes: Age after which metrics samples are
            dropped (default 60).
        alert_retention_hours: Age after which alerts are dropped
            (default 24).
        max_consecutive_errors: Consecutive pipeline exceptions that trigger
            an automatic rollback (default 3).
        critical_ticks_before_rollback: Consecutive critical classifications
            that trigger an automatic rollback. None disables it (default).
        deduplicate_alerts: Merge repeated alerts for the same condition and
            resolve alerts whose condition cleared (default False).
        sample_limit: Rows fetched by read probes (default 10).
        aggregate_query_limit: Rows fetched by the read performance probe
            (default 100).
    """

    health_check_interval_seconds: float = 60.0
    max_response_time_ms: float = 1000.0
    max_error_rate: float = 5.0
    min_data_consistency: float = 95.0
    min_probe_consistency: float = 90.0
    availability_alert_threshold: float = 95.0
    monitoring_window_minutes: float = 60.0
    alert_retention_hours: float = 24.0
    max_consecutive_errors: int = 3
    critical_ticks_before_rollback: int | None = None
    deduplicate_alerts: bool = False
    sample_limit: int = 10
    aggregate_query_limit: int = 100

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.health_check_interval_seconds <= 0:
            raise ValueError(
                "health_check_interval_seconds must be > 0, "
                f"got {self.health_check_interval_seconds}"
            )
        if self.max_response_time_ms <= 0:
            raise ValueError(
                f"max_response_time_ms must be > 0, got {self.max_response_time_ms}"
            )
        if not 0 <= self.max_error_rate <= 100:
            raise ValueError(f"max_error_rate must be in [0, 100], got {self.max_error_rate}")
        if not 0 <= self.min_data_consistency <= 100:
            raise ValueError(
                f"min_data_consistency must be in [0, 100], got {self.min_data_consistency}"
            )
        if self.monitoring_window_minutes <= 0:
            raise ValueError(
                f"monitoring_window_minutes must be > 0, got {self.monitoring_window_minutes}"
            )
        if self.alert_retention_hours <= 0:
            raise ValueError(
                f"alert_retention_hours must be > 0, got {self.alert_retention_hours}"
            )
        if self.max_consecutive_errors < 1:
            raise ValueError(
                f"max_consecutive_errors must be >= 1, got {self.max_consecutive_errors}"
            )
        ticks = self.critical_ticks_before_rollback
        if ticks is not None and ticks < 1:
            raise ValueError(
                "critical_ticks_before_rollback must be >= 1 or None, "
                f"got {self.critical_ticks_before_rollback}"
            )

    @property
    def monitoring_window_seconds(self) -> float:
        """Metrics retention window in seconds."""
        return self.monitoring_window_minutes * 60

    @property
    def alert_retention_seconds(self) -> float:
        """Alert retention in seconds."""
        return self.alert_retention_hours * 3600

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON storage."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """
        Create from dictionary.

        Unknown keys are ignored and missing keys take their defaults.

        Args:
            data: Dictionary containing configuration values.

        Returns:
            MonitoringConfig instance.
        """
        return cls(**_from_known_keys(cls, data))


__all__ = [
    "RolloutConfig",
    "MonitoringConfig",
]
