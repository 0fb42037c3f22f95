"""
RolloutController - walks the phase table and reverts on trouble.

The controller advances the persisted rollout percentage one phase at a
time. After every transition it soaks the new phase: it polls four health
probes for a fixed window and reverts the rollout through the FlagStore
if a poll has too many failures or the errors accumulated over the window
reach the budget.

State machine:
    IDLE -> MONITORING -> MONITORING (advance succeeded)
                       -> ROLLED_BACK (terminal for this instance)

The current phase is always derived from the persisted percentage, so a
new controller picks up where a previous process left off.

Usage:
    >>> controller = RolloutController(flag_store, storage)
    >>> await controller.start_rollout()
    >>> phase = await controller.advance_to_next_phase()  # soaks for 5 minutes
    >>> phase.percentage
    10
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum

from rolloutguard.config import RolloutConfig
from rolloutguard.exceptions import (
    RolloutStateError,
    SoakErrorBudgetExceededError,
    TooManyProbeFailuresError,
)
from rolloutguard.flags import FlagStore
from rolloutguard.metrics import RolloutInstruments
from rolloutguard.models import (
    HealthCheckResult,
    RolloutMetrics,
    RolloutPhase,
    current_phase,
    next_phase,
    phase_index,
)
from rolloutguard.observability import Tracer, create_tracer
from rolloutguard.observability.attributes import (
    ATTR_ERROR_TYPE,
    ATTR_ROLLBACK_REASON,
    ATTR_ROLLOUT_PERCENTAGE,
    ATTR_ROLLOUT_PHASE_INDEX,
    ATTR_ROLLOUT_STATE,
    ATTR_ROLLOUT_TARGET_PERCENTAGE,
)
from rolloutguard.probes import ProbeRunner
from rolloutguard.repositories.storage import DataPathStorage
from rolloutguard.scheduler import TaskScheduler

logger = logging.getLogger(__name__)

METRICS_TASK_NAME = "rollout.metrics"


class ControllerState(Enum):
    """
    Lifecycle state of a RolloutController instance.

    Attributes:
        IDLE: Created, rollout not started.
        MONITORING: Rollout started; the metrics loop is running.
        ROLLED_BACK: An emergency rollback happened. Terminal.
    """

    IDLE = "idle"
    """Created, rollout not started."""

    MONITORING = "monitoring"
    """Rollout started; the metrics loop is running."""

    ROLLED_BACK = "rolled_back"
    """An emergency rollback happened. Terminal."""

    @property
    def is_terminal(self) -> bool:
        return self == ControllerState.ROLLED_BACK


class RolloutController:
    """
    Advances the rollout through ROLLOUT_PHASES.

    Args:
        flag_store: Store holding the persisted flag record.
        storage: Storage the soak probes run against.
        config: Thresholds and intervals.
        scheduler: Scheduler for the metrics loop. A private one is created
            if omitted.
        instruments: Shared metrics instruments.
        tracer: Optional custom Tracer instance.
        enable_tracing: Whether to enable OpenTelemetry tracing.
    """

    def __init__(
        self,
        flag_store: FlagStore,
        storage: DataPathStorage,
        *,
        config: RolloutConfig | None = None,
        scheduler: TaskScheduler | None = None,
        instruments: RolloutInstruments | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._flag_store = flag_store
        self._config = config or RolloutConfig()
        self._scheduler = scheduler or TaskScheduler()
        self._instruments = instruments
        self._probes = ProbeRunner(
            storage,
            instruments=instruments,
            sample_limit=self._config.sample_limit,
            aggregate_query_limit=self._config.aggregate_query_limit,
            tracer=self._tracer,
        )
        self._state = ControllerState.IDLE
        self._rollback_reason: str | None = None
        self._rollbacks = 0
        # Bumped when the metrics loop is stopped; a sample collected under an
        # older epoch is not recorded.
        self._epoch = 0
        self._history: deque[RolloutMetrics] = deque(maxlen=self._config.metrics_history_size)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def config(self) -> RolloutConfig:
        return self._config

    @property
    def rollback_reason(self) -> str | None:
        """Reason given for the emergency rollback, once one happened."""
        return self._rollback_reason

    @property
    def latest_metrics(self) -> RolloutMetrics | None:
        """Most recent sample from the metrics loop."""
        return self._history[-1] if self._history else None

    def get_metrics_history(self) -> list[RolloutMetrics]:
        """Samples collected by the metrics loop, oldest first."""
        return list(self._history)

    async def current_phase(self) -> RolloutPhase:
        """Phase in effect for the persisted percentage."""
        flags = await self._flag_store.get_flags()
        return current_phase(flags.percentage)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_rollout(self) -> None:
        """
        Start the rollout and its background metrics loop.

        Does nothing if the rollout is already being monitored.

        Raises:
            RolloutStateError: If this controller already rolled back or the
                persisted emergency rollback flag is set.
        """
        if self._state == ControllerState.MONITORING:
            logger.info("Rollout already being monitored")
            return
        if self._state.is_terminal:
            raise RolloutStateError(
                f"Controller already rolled back ({self._rollback_reason}); "
                "create a new controller to restart"
            )

        rollbacks_before = self._rollbacks
        with self._tracer.span(
            "rolloutguard.controller.start_rollout",
            {ATTR_ROLLOUT_STATE: self._state.value},
        ):
            flags = await self._flag_store.get_flags()
            if flags.emergency_rollback:
                raise RolloutStateError(
                    "Emergency rollback flag is set; clear it before starting the rollout"
                )
            try:
                phase = current_phase(flags.percentage)
                logger.info(
                    "Starting rollout at %d%%: %s",
                    phase.percentage,
                    phase.description,
                )
                self._scheduler.schedule(
                    METRICS_TASK_NAME,
                    self._config.metrics_interval_seconds,
                    self.collect_metrics,
                )
                self._state = ControllerState.MONITORING
            except Exception as e:
                await self._rollback_on_failure("start_rollout", e, rollbacks_before)
                raise

    def stop_monitoring(self) -> None:
        """Stop the background metrics loop without touching the flags."""
        self._scheduler.cancel(METRICS_TASK_NAME)
        self._epoch += 1
        if self._state == ControllerState.MONITORING:
            self._state = ControllerState.IDLE
        logger.info("Rollout monitoring stopped")

    # =========================================================================
    # Phase transitions
    # =========================================================================

    async def advance_to_next_phase(self) -> RolloutPhase | None:
        """
        Move to the next phase and soak it.

        Returns:
            The phase reached, or None if the rollout is already at 100%.

        Raises:
            RolloutStateError: If this controller already rolled back or the
                emergency rollback flag is set.
            PhaseTransitionError: If the new phase failed its soak. The
                rollout has been reverted.
        """
        if self._state.is_terminal:
            raise RolloutStateError(
                f"Controller already rolled back ({self._rollback_reason}); "
                "create a new controller to advance"
            )

        flags = await self._flag_store.get_flags()
        if flags.emergency_rollback:
            raise RolloutStateError("Cannot advance while emergency rollback is active")

        target = next_phase(flags.percentage)
        if target is None:
            logger.info("Rollout already at 100%%, nothing to advance")
            return None

        rollbacks_before = self._rollbacks
        with self._tracer.span(
            "rolloutguard.controller.advance_to_next_phase",
            {
                ATTR_ROLLOUT_PERCENTAGE: flags.percentage,
                ATTR_ROLLOUT_TARGET_PERCENTAGE: target.percentage,
                ATTR_ROLLOUT_PHASE_INDEX: phase_index(target.percentage),
            },
        ) as span:
            try:
                logger.info("Advancing to phase: %s", target.description)
                await self._flag_store.update_flags(
                    self._config.actor,
                    read_enabled=target.enable_reads,
                    write_enabled=target.enable_writes,
                    percentage=target.percentage,
                )
                if self._instruments is not None:
                    self._instruments.record_percentage(target.percentage)
                await self.monitor_phase_transition(target.percentage)
            except Exception as e:
                if span:
                    span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)
                await self._rollback_on_failure("advance_to_next_phase", e, rollbacks_before)
                raise

        logger.info("Phase %d%% is stable", target.percentage)
        return target

    async def monitor_phase_transition(self, target_percentage: int) -> None:
        """
        Soak a freshly entered phase.

        Polls the health probes every poll interval until the soak window
        has elapsed.

        Args:
            target_percentage: Percentage of the phase being soaked.

        Raises:
            TooManyProbeFailuresError: A single poll had too many failures.
            SoakErrorBudgetExceededError: Errors accumulated over the window
                reached the budget.
        """
        cfg = self._config
        deadline = time.monotonic() + cfg.soak_duration_seconds
        errors = 0

        logger.info(
            "Monitoring transition to %d%% for %.0fs",
            target_percentage,
            cfg.soak_duration_seconds,
        )

        with self._tracer.span(
            "rolloutguard.controller.monitor_phase_transition",
            {ATTR_ROLLOUT_TARGET_PERCENTAGE: target_percentage},
        ):
            while time.monotonic() < deadline:
                try:
                    results = await self.perform_health_checks()
                except Exception as e:
                    errors += 1
                    logger.error(
                        "Soak poll for %d%% phase failed (%d/%d errors): %s",
                        target_percentage,
                        errors,
                        cfg.max_soak_errors,
                        e,
                        exc_info=True,
                    )
                else:
                    failed = sum(1 for r in results if not r.success)
                    if failed > cfg.max_probe_failures_per_poll:
                        await self.emergency_rollback(
                            f"Too many critical errors in {target_percentage}% phase"
                        )
                        raise TooManyProbeFailuresError(target_percentage, failed, len(results))
                    errors += failed
                    self._check_consistency(target_percentage, results)

                if errors >= cfg.max_soak_errors:
                    await self.emergency_rollback(f"Too many errors in {target_percentage}% phase")
                    raise SoakErrorBudgetExceededError(
                        target_percentage, errors, cfg.max_soak_errors
                    )

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                await asyncio.sleep(min(cfg.poll_interval_seconds, remaining))

    def _check_consistency(self, target_percentage: int, results: list[HealthCheckResult]) -> None:
        scores = [r.data_consistency for r in results if r.data_consistency is not None]
        if not scores:
            return
        mean = sum(scores) / len(scores)
        if mean < self._config.low_consistency_warning:
            logger.warning(
                "Low data consistency in %d%% phase: %.2f%%",
                target_percentage,
                mean,
            )

    # =========================================================================
    # Probes and metrics
    # =========================================================================

    async def perform_health_checks(self) -> list[HealthCheckResult]:
        """
        Run the four soak probes.

        Returns:
            Results for legacy read, migrated read, data consistency and the
            aggregate join, in that order.
        """
        cfg = self._config
        percentage = await self._flag_store.effective_percentage()
        return [
            await self._probes.legacy_read(),
            await self._probes.migrated_read(),
            await self._probes.data_consistency(percentage, cfg.min_probe_consistency),
            await self._probes.aggregate_join(cfg.aggregate_budget_ms),
        ]

    async def collect_metrics(self) -> RolloutMetrics:
        """
        Build a metrics sample from the soak probes.

        Called periodically by the metrics loop; also usable on demand.

        Returns:
            The sample. It is appended to the history unless the metrics
            loop was stopped or the rollout reverted while it was collected.
        """
        epoch = self._epoch
        results = await self.perform_health_checks()
        flags = await self._flag_store.get_flags()
        sample = RolloutMetrics.from_results(results, flags.percentage)
        if epoch != self._epoch:
            logger.debug("Rollout stopped or reverted during collection, discarding sample")
            return sample
        self._history.append(sample)
        if self._instruments is not None:
            self._instruments.record_health(sample)
        logger.info(
            "Rollout metrics: phase=%d%% response=%.1fms consistency=%.2f%% status=%s",
            sample.percentage,
            sample.avg_response_time_ms,
            sample.data_consistency_pct,
            sample.status.value,
        )
        return sample

    # =========================================================================
    # Rollback
    # =========================================================================

    async def emergency_rollback(self, reason: str) -> None:
        """
        Revert the rollout.

        Stops the metrics loop, persists the emergency rollback and moves
        this controller to ROLLED_BACK.

        Args:
            reason: Why the rollback happened.

        Raises:
            FlagPersistenceError: If the flag store could not be written.
        """
        with self._tracer.span(
            "rolloutguard.controller.emergency_rollback",
            {ATTR_ROLLBACK_REASON: reason},
        ):
            logger.critical("EMERGENCY ROLLBACK - reason: %s", reason)
            self._scheduler.cancel(METRICS_TASK_NAME)
            self._epoch += 1
            await self._flag_store.emergency_rollback()
            self._rollback_reason = reason
            self._state = ControllerState.ROLLED_BACK
            self._rollbacks += 1
            if self._instruments is not None:
                self._instruments.record_rollback("controller")
            logger.info("Emergency rollback completed")

    async def _rollback_on_failure(
        self,
        operation: str,
        error: Exception,
        rollbacks_before: int,
    ) -> None:
        if self._rollbacks > rollbacks_before:
            return
        reason = f"{operation} failed: {error}"
        try:
            await self.emergency_rollback(reason)
        except Exception as rollback_error:
            # The original error is re-raised by the caller.
            logger.critical(
                "Emergency rollback after %s failure also failed: %s",
                operation,
                rollback_error,
                exc_info=True,
            )


__all__ = [
    "METRICS_TASK_NAME",
    "ControllerState",
    "RolloutController",
]
