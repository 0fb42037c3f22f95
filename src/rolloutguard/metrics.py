"""
OpenTelemetry metrics for rollout operations.

Instruments are created on the global meter provider unless one is passed
in; they are exported only if an SDK MeterProvider is installed. With
enable_metrics=False every instrument is a no-op but the snapshot is
still maintained.

Example:
    >>> from rolloutguard.metrics import RolloutInstruments
    >>>
    >>> instruments = RolloutInstruments(rollout_name="customers_v2")
    >>> instruments.record_probe(result)
    >>> instruments.record_health(metrics)
    >>> instruments.get_snapshot().probe_failures
    0

Metrics Exposed:
    - rollout.probe.failures (Counter): Failed probe executions, by probe kind
    - rollout.probe.duration (Histogram): Probe response time in milliseconds
    - rollout.alerts.created (Counter): Alerts raised, by type
    - rollout.rollbacks (Counter): Emergency rollbacks, by trigger
    - rollout.percentage (Gauge): Last observed rollout percentage
    - rollout.availability (Gauge): Last observed system availability
    - rollout.consistency (Gauge): Last observed data consistency

All metrics include the 'rollout' attribute for filtering.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, Observation

from rolloutguard.models import Alert, HealthCheckResult, RolloutMetrics

METER_NAME = "rolloutguard"


class NoOpCounter:
    """Counter used when metrics are disabled."""

    def add(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


class NoOpHistogram:
    """Histogram used when metrics are disabled."""

    def record(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


@dataclass(frozen=True)
class RolloutMetricSnapshot:
    """
    Snapshot of current metric values.

    Attributes:
        probe_failures: Failed probes, keyed by probe kind
        probe_runs: Total probe executions
        alerts_created: Alerts raised, keyed by alert type
        rollbacks: Emergency rollbacks, keyed by trigger
        percentage: Last observed rollout percentage
        availability_pct: Last observed availability
        consistency_pct: Last observed consistency
    """

    probe_failures: dict[str, int] = field(default_factory=dict)
    probe_runs: int = 0
    alerts_created: dict[str, int] = field(default_factory=dict)
    rollbacks: dict[str, int] = field(default_factory=dict)
    percentage: int = 0
    availability_pct: float = 100.0
    consistency_pct: float = 100.0

    @property
    def total_probe_failures(self) -> int:
        return sum(self.probe_failures.values())

    @property
    def total_rollbacks(self) -> int:
        return sum(self.rollbacks.values())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "probe_failures": dict(self.probe_failures),
            "probe_runs": self.probe_runs,
            "alerts_created": dict(self.alerts_created),
            "rollbacks": dict(self.rollbacks),
            "percentage": self.percentage,
            "availability_pct": self.availability_pct,
            "consistency_pct": self.consistency_pct,
        }


@dataclass
class RolloutInstruments:
    """
    Container for rollout metrics instruments.

    Shared by the controller, the monitor and the probe runner so that all
    three report under the same rollout name.

    Attributes:
        rollout_name: Label attached to every measurement
        enable_metrics: Whether to create OpenTelemetry instruments
        meter_provider: Provider to create instruments on (global if None)
    """

    rollout_name: str = "default"
    enable_metrics: bool = True
    meter_provider: Any = field(default=None, repr=False)

    _probe_failures_counter: Any = field(default=None, init=False, repr=False)
    _probe_duration_histogram: Any = field(default=None, init=False, repr=False)
    _alerts_counter: Any = field(default=None, init=False, repr=False)
    _rollbacks_counter: Any = field(default=None, init=False, repr=False)

    _percentage: int = field(default=0, init=False, repr=False)
    _availability: float = field(default=100.0, init=False, repr=False)
    _consistency: float = field(default=100.0, init=False, repr=False)
    _probe_runs: int = field(default=0, init=False, repr=False)
    _probe_failures: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _alerts: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _rollbacks: dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        """Initialize metric instruments."""
        if self.enable_metrics:
            self._setup_metrics()
        else:
            self._setup_noop()

    def _setup_metrics(self) -> None:
        meter = metrics.get_meter(METER_NAME, meter_provider=self.meter_provider)

        self._probe_failures_counter = meter.create_counter(
            name="rollout.probe.failures",
            unit="probes",
            description="Number of failed health probes",
        )
        self._probe_duration_histogram = meter.create_histogram(
            name="rollout.probe.duration",
            unit="ms",
            description="Health probe response time in milliseconds",
        )
        self._alerts_counter = meter.create_counter(
            name="rollout.alerts.created",
            unit="alerts",
            description="Number of alerts raised by the health monitor",
        )
        self._rollbacks_counter = meter.create_counter(
            name="rollout.rollbacks",
            unit="rollbacks",
            description="Number of emergency rollbacks",
        )
        meter.create_observable_gauge(
            name="rollout.percentage",
            callbacks=[self._observe_percentage],
            unit="%",
            description="Share of traffic routed to the migrated path",
        )
        meter.create_observable_gauge(
            name="rollout.availability",
            callbacks=[self._observe_availability],
            unit="%",
            description="System availability from the latest health evaluation",
        )
        meter.create_observable_gauge(
            name="rollout.consistency",
            callbacks=[self._observe_consistency],
            unit="%",
            description="Data consistency from the latest health evaluation",
        )

    def _setup_noop(self) -> None:
        self._probe_failures_counter = NoOpCounter()
        self._probe_duration_histogram = NoOpHistogram()
        self._alerts_counter = NoOpCounter()
        self._rollbacks_counter = NoOpCounter()

    def _base_attributes(self) -> dict[str, str]:
        return {"rollout": self.rollout_name}

    def _observe_percentage(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(value=self._percentage, attributes=self._base_attributes())

    def _observe_availability(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(value=self._availability, attributes=self._base_attributes())

    def _observe_consistency(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(value=self._consistency, attributes=self._base_attributes())

    def record_probe(self, result: HealthCheckResult) -> None:
        """
        Record one probe execution.

        Args:
            result: The probe outcome
        """
        attrs = {**self._base_attributes(), "probe": result.kind.value}
        self._probe_duration_histogram.record(result.response_time_ms, attrs)
        self._probe_runs += 1
        if not result.success:
            self._probe_failures_counter.add(1, attrs)
            key = result.kind.value
            self._probe_failures[key] = self._probe_failures.get(key, 0) + 1

    def record_health(self, sample: RolloutMetrics) -> None:
        """
        Update the gauges from a metrics sample.

        Args:
            sample: Latest evaluation sample
        """
        self._percentage = sample.percentage
        self._availability = sample.system_availability_pct
        self._consistency = sample.data_consistency_pct

    def record_percentage(self, percentage: int) -> None:
        """Update the rollout percentage gauge."""
        self._percentage = percentage

    def record_alert(self, alert: Alert) -> None:
        """Count a newly raised alert."""
        attrs = {**self._base_attributes(), "type": alert.type.value}
        self._alerts_counter.add(1, attrs)
        key = alert.type.value
        self._alerts[key] = self._alerts.get(key, 0) + 1

    def record_rollback(self, trigger: str) -> None:
        """
        Count an emergency rollback.

        Args:
            trigger: What caused it ("controller", "monitor", "manual")
        """
        attrs = {**self._base_attributes(), "trigger": trigger}
        self._rollbacks_counter.add(1, attrs)
        self._rollbacks[trigger] = self._rollbacks.get(trigger, 0) + 1
        self._percentage = 0

    def get_snapshot(self) -> RolloutMetricSnapshot:
        """
        Get a snapshot of current metric values.

        Returns:
            RolloutMetricSnapshot with current values
        """
        return RolloutMetricSnapshot(
            probe_failures=dict(self._probe_failures),
            probe_runs=self._probe_runs,
            alerts_created=dict(self._alerts),
            rollbacks=dict(self._rollbacks),
            percentage=self._percentage,
            availability_pct=self._availability,
            consistency_pct=self._consistency,
        )


__all__ = [
    "METER_NAME",
    "NoOpCounter",
    "NoOpHistogram",
    "RolloutMetricSnapshot",
    "RolloutInstruments",
]
