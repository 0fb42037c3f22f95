"""
HealthMonitor - continuous health evaluation with automatic rollback.

The monitor runs independently of the rollout controller. Every tick it
reads the flags, runs six probes against the data path storage, turns the
results into a metrics sample, classifies it, raises alerts, and publishes
the outcome. If the evaluation pipeline itself fails several ticks in a
row, the monitor reverts the rollout through the FlagStore and stops.

Tick pipeline:
    1. Read flags (never raises)
    2. Run probes: connectivity, read performance, write path, data
       integrity, flag validation, audit log
    3. Aggregate into RolloutMetrics (synthetic critical sample on error)
    4. Append to the retained history, evicting samples outside the window
    5. Classify healthy / degraded / critical
    6. Raise alerts, prune alerts past retention
    7. Reset the consecutive-failure counter
    8. Publish health.checked

Usage:
    >>> monitor = HealthMonitor(flag_store, storage, publisher=publisher)
    >>> await monitor.start()
    >>> status = monitor.get_system_health()
    >>> await monitor.stop()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from rolloutguard.alerts import AlertLog, evaluate_alert_conditions
from rolloutguard.config import MonitoringConfig
from rolloutguard.events import (
    AlertCreated,
    AutomaticRollback,
    HealthChecked,
    MonitoringStarted,
    MonitoringStopped,
    MonitorEventPublisher,
)
from rolloutguard.exceptions import RolloutStateError
from rolloutguard.flags import FlagStore
from rolloutguard.metrics import RolloutInstruments
from rolloutguard.models import (
    UPTIME_AVAILABILITY_THRESHOLD,
    Alert,
    AlertCondition,
    AlertType,
    HealthCheckResult,
    HealthStatus,
    MigrationFlags,
    ProbeKind,
    RolloutMetrics,
    SystemHealthStatus,
)
from rolloutguard.observability import Tracer, create_tracer
from rolloutguard.observability.attributes import (
    ATTR_ALERT_TYPE,
    ATTR_HEALTH_AVAILABILITY,
    ATTR_HEALTH_STATUS,
    ATTR_ROLLBACK_REASON,
)
from rolloutguard.probes import ProbeRunner
from rolloutguard.repositories.storage import DataPathStorage
from rolloutguard.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

MONITOR_TASK_NAME = "health.monitor"


class HealthMonitor:
    """
    Periodic health evaluation of the migration.

    Args:
        flag_store: Store holding the persisted flag record.
        storage: Storage the probes run against.
        config: Thresholds and intervals.
        scheduler: Scheduler for the monitor loop. A private one is created
            if omitted.
        publisher: Where monitoring events are published. A private one is
            created if omitted.
        instruments: Shared metrics instruments.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        flag_store: FlagStore,
        storage: DataPathStorage,
        *,
        config: MonitoringConfig | None = None,
        scheduler: TaskScheduler | None = None,
        publisher: MonitorEventPublisher | None = None,
        instruments: RolloutInstruments | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._flag_store = flag_store
        self._config = config or MonitoringConfig()
        self._scheduler = scheduler or TaskScheduler()
        self._publisher = publisher or MonitorEventPublisher(tracer=self._tracer)
        self._instruments = instruments
        self._probes = ProbeRunner(
            storage,
            instruments=instruments,
            sample_limit=self._config.sample_limit,
            aggregate_query_limit=self._config.aggregate_query_limit,
            tracer=self._tracer,
        )

        self._running = False
        # Bumped by stop(); an evaluation started under an older epoch
        # discards its results.
        self._epoch = 0
        self._history: tuple[RolloutMetrics, ...] = ()
        self._alerts = AlertLog()
        self._last_check: datetime | None = None
        self._consecutive_errors = 0
        self._consecutive_critical = 0
        self._rollback_triggered = False
        self._rollback_lock = asyncio.Lock()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def config(self) -> MonitoringConfig:
        return self._config

    @property
    def publisher(self) -> MonitorEventPublisher:
        return self._publisher

    @property
    def consecutive_errors(self) -> int:
        """Pipeline failures since the last successful evaluation."""
        return self._consecutive_errors

    @property
    def rollback_triggered(self) -> bool:
        return self._rollback_triggered

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Run one evaluation now, then every health check interval.

        Calling start on a running monitor does nothing.

        Raises:
            RolloutStateError: If this monitor already triggered an automatic
                rollback. Create a new monitor to resume monitoring.
        """
        if self._running:
            logger.info("Health monitor already running")
            return
        if self._rollback_triggered:
            raise RolloutStateError(
                "Health monitor already triggered an automatic rollback; "
                "create a new monitor to resume monitoring"
            )

        logger.info("Starting health monitor")
        self._running = True
        self._epoch += 1
        await self._publisher.publish(MonitoringStarted())
        await self._tick()
        if not self._running:
            # The first evaluation already triggered a rollback.
            return

        self._scheduler.schedule(
            MONITOR_TASK_NAME,
            self._config.health_check_interval_seconds,
            self._tick,
        )
        logger.info(
            "Health monitor started, interval %.1fs",
            self._config.health_check_interval_seconds,
        )

    async def stop(self) -> None:
        """
        Stop future evaluations.

        An evaluation already in flight finishes but its results are
        discarded. Calling stop on a stopped monitor does nothing.
        """
        if not self._running:
            return
        self._running = False
        self._epoch += 1
        self._scheduler.cancel(MONITOR_TASK_NAME)
        logger.info("Health monitor stopped")
        await self._publisher.publish(MonitoringStopped())

    async def _tick(self) -> None:
        try:
            await self.evaluate()
        except Exception as e:
            logger.error("Periodic health evaluation failed: %s", e)

    # =========================================================================
    # Evaluation
    # =========================================================================

    async def evaluate(self) -> SystemHealthStatus | None:
        """
        Run one full evaluation.

        Returns:
            The resulting health status, or None if the monitor was stopped
            before the evaluation finished.

        Raises:
            Exception: Whatever broke the pipeline. The failure is counted
                and may have triggered an automatic rollback.
        """
        epoch = self._epoch
        with self._tracer.span("rolloutguard.monitor.evaluate") as span:
            try:
                flags = await self._flag_store.get_flags()
                metrics = await self._collect_metrics(flags)
                if epoch != self._epoch:
                    logger.debug("Monitor stopped during evaluation, discarding results")
                    return None

                now = datetime.now(UTC)
                self._record_metrics(metrics, now)
                status = self.evaluate_system_health(metrics)
                await self.generate_alerts(metrics, status)
                if epoch != self._epoch:
                    logger.debug("Monitor stopped while raising alerts, not publishing health")
                    return None
                self._consecutive_errors = 0
                self._last_check = now
                if self._instruments is not None:
                    self._instruments.record_health(metrics)

                health = self._build_status(metrics, status, now)
                if span:
                    span.set_attribute(ATTR_HEALTH_STATUS, status.value)
                    span.set_attribute(ATTR_HEALTH_AVAILABILITY, metrics.system_availability_pct)
                self._log_health(health)
                await self._publisher.publish(HealthChecked(status=health))
            except Exception as e:
                await self._on_pipeline_error(e)
                raise

        await self._escalate_if_critical(status)
        return health

    async def _collect_metrics(self, flags: MigrationFlags) -> RolloutMetrics:
        try:
            results = await self._run_probes(flags)
            return RolloutMetrics.from_results(results, flags.percentage)
        except Exception as e:
            logger.error("Failed to collect health metrics: %s", e, exc_info=True)
            return RolloutMetrics.pipeline_failure(str(e), flags.percentage)

    async def _run_probes(self, flags: MigrationFlags) -> list[HealthCheckResult]:
        cfg = self._config
        percentage = 0 if flags.emergency_rollback else flags.percentage
        return [
            await self._probes.connectivity(),
            await self._probes.aggregate_join(
                cfg.max_response_time_ms,
                kind=ProbeKind.READ_PERFORMANCE,
            ),
            await self._probes.write_path(),
            await self._probes.data_consistency(
                percentage,
                cfg.min_probe_consistency,
                kind=ProbeKind.DATA_INTEGRITY,
            ),
            await self._probes.flag_validation(self._flag_store.get_flags),
            await self._probes.audit_log(),
        ]

    def _record_metrics(self, metrics: RolloutMetrics, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self._config.monitoring_window_seconds)
        self._history = tuple(m for m in (*self._history, metrics) if m.timestamp > cutoff)

    def evaluate_system_health(self, metrics: RolloutMetrics) -> HealthStatus:
        """
        Classify a metrics sample.

        Args:
            metrics: The sample.

        Returns:
            CRITICAL if availability is below 90%, the response time is over
            twice the budget, or consistency is below the minimum.
            DEGRADED if availability is below 98%, the response time is over
            budget, or consistency is within two points of the minimum.
            HEALTHY otherwise.
        """
        cfg = self._config
        if (
            metrics.system_availability_pct < 90
            or metrics.avg_response_time_ms > cfg.max_response_time_ms * 2
            or metrics.data_consistency_pct < cfg.min_data_consistency
        ):
            return HealthStatus.CRITICAL
        if (
            metrics.system_availability_pct < 98
            or metrics.avg_response_time_ms > cfg.max_response_time_ms
            or metrics.data_consistency_pct < cfg.min_data_consistency + 2
        ):
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    async def generate_alerts(self, metrics: RolloutMetrics, status: HealthStatus) -> list[Alert]:
        """
        Raise alerts for every threshold the sample violates.

        With deduplicate_alerts enabled, a condition that already has an
        unresolved alert does not raise another one, and alerts whose
        condition cleared are resolved.

        Args:
            metrics: The sample.
            status: Its classification.

        Returns:
            Alerts created by this call.
        """
        candidates = evaluate_alert_conditions(metrics, self._config)
        now = datetime.now(UTC)

        if self._config.deduplicate_alerts:
            violated = {a.condition for a in candidates}
            for resolved in self._alerts.resolve_cleared(violated, now):
                logger.info("Alert resolved: %s", resolved.message)
            candidates = [a for a in candidates if self._alerts.find_active(a.condition) is None]

        for alert in candidates:
            await self._raise_alert(alert)

        if candidates and status != HealthStatus.HEALTHY:
            logger.warning(
                "Health %s: %d new alert(s)",
                status.value,
                len(candidates),
            )

        self._alerts.prune(now, timedelta(seconds=self._config.alert_retention_seconds))
        return candidates

    async def _raise_alert(self, alert: Alert) -> None:
        with self._tracer.span(
            "rolloutguard.monitor.raise_alert",
            {ATTR_ALERT_TYPE: alert.type.value},
        ):
            self._alerts.add(alert)
            if self._instruments is not None:
                self._instruments.record_alert(alert)
            level = logging.ERROR if alert.type == AlertType.CRITICAL else logging.WARNING
            logger.log(level, "Alert [%s]: %s", alert.type.value, alert.message)
            await self._publisher.publish(AlertCreated(alert=alert))

    # =========================================================================
    # Automatic rollback
    # =========================================================================

    async def _on_pipeline_error(self, error: Exception) -> None:
        self._consecutive_errors += 1
        logger.error(
            "Health evaluation failed (%d consecutive): %s",
            self._consecutive_errors,
            error,
            exc_info=True,
        )
        if self._consecutive_errors >= self._config.max_consecutive_errors:
            try:
                await self.trigger_automatic_rollback(
                    f"Consecutive health check errors: {error}"
                )
            except Exception as rollback_error:
                logger.critical(
                    "Automatic rollback failed: %s",
                    rollback_error,
                    exc_info=True,
                )

    async def _escalate_if_critical(self, status: HealthStatus) -> None:
        threshold = self._config.critical_ticks_before_rollback
        if threshold is None:
            return
        if status != HealthStatus.CRITICAL:
            self._consecutive_critical = 0
            return
        self._consecutive_critical += 1
        if self._consecutive_critical >= threshold:
            await self.trigger_automatic_rollback(
                f"{self._consecutive_critical} consecutive critical health evaluations"
            )

    async def trigger_automatic_rollback(self, reason: str) -> Alert | None:
        """
        Revert the rollout and stop monitoring.

        Fires at most once per monitor.

        Args:
            reason: Why the rollback happened.

        Returns:
            The critical alert recorded, or None if a rollback had already
            been triggered.

        Raises:
            FlagPersistenceError: If the flag store could not be written.
        """
        async with self._rollback_lock:
            if self._rollback_triggered:
                logger.info("Automatic rollback already triggered, ignoring: %s", reason)
                return None

            with self._tracer.span(
                "rolloutguard.monitor.trigger_automatic_rollback",
                {ATTR_ROLLBACK_REASON: reason},
            ):
                logger.critical("AUTOMATIC ROLLBACK TRIGGERED - reason: %s", reason)
                await self._flag_store.emergency_rollback()
                self._rollback_triggered = True
                await self.stop()

                alert = Alert(
                    type=AlertType.CRITICAL,
                    condition=AlertCondition.AUTOMATIC_ROLLBACK,
                    message=f"AUTOMATIC ROLLBACK TRIGGERED: {reason}",
                )
                self._alerts.add(alert)
                if self._instruments is not None:
                    self._instruments.record_alert(alert)
                    self._instruments.record_rollback("monitor")
                await self._publisher.publish(AutomaticRollback(reason=reason, alert=alert))
                logger.info("Automatic rollback completed")
                return alert

    # =========================================================================
    # Queries
    # =========================================================================

    def _uptime(self) -> float:
        if not self._running or not self._history:
            return 0.0
        healthy = sum(
            1 for m in self._history if m.system_availability_pct >= UPTIME_AVAILABILITY_THRESHOLD
        )
        return healthy / len(self._history) * 100

    def _average_response_time(self) -> float:
        if not self._history:
            return 0.0
        return sum(m.avg_response_time_ms for m in self._history) / len(self._history)

    def _build_status(
        self,
        metrics: RolloutMetrics,
        status: HealthStatus,
        checked_at: datetime,
    ) -> SystemHealthStatus:
        return SystemHealthStatus(
            status=status,
            last_check=checked_at,
            metrics=metrics,
            active_alerts=self._alerts.active(),
            uptime_pct=self._uptime(),
            average_response_time_ms=self._average_response_time(),
            data_consistency_score=metrics.data_consistency_pct,
        )

    def get_system_health(self) -> SystemHealthStatus | None:
        """
        Current health view.

        Returns:
            None until the first evaluation completes.
        """
        if self._last_check is None or not self._history:
            return None
        latest = self._history[-1]
        return self._build_status(latest, self.evaluate_system_health(latest), self._last_check)

    def get_alerts(self, alert_type: AlertType | None = None) -> list[Alert]:
        """
        Unresolved alerts, oldest first.

        Args:
            alert_type: Only return alerts of this type.
        """
        return list(self._alerts.active(alert_type))

    def get_metrics_history(self) -> list[RolloutMetrics]:
        """Retained samples, oldest first."""
        return list(self._history)

    def resolve_alert(self, alert_id: str) -> Alert | None:
        """
        Mark an alert resolved.

        Returns:
            The resolved alert, or None if no unresolved alert has that id.
        """
        resolved = self._alerts.resolve(alert_id)
        if resolved is not None:
            logger.info("Alert %s resolved", alert_id)
        return resolved

    def _log_health(self, health: SystemHealthStatus) -> None:
        level = logging.INFO if health.status.is_healthy else logging.WARNING
        failure_rate = 100 - health.metrics.system_availability_pct
        if failure_rate > self._config.max_error_rate:
            level = max(level, logging.WARNING)
        logger.log(
            level,
            "Health %s: uptime=%.2f%% response=%.1fms consistency=%.2f%% alerts=%d",
            health.status.value.upper(),
            health.uptime_pct,
            health.average_response_time_ms,
            health.data_consistency_score,
            len(health.active_alerts),
        )


__all__ = [
    "MONITOR_TASK_NAME",
    "HealthMonitor",
]
