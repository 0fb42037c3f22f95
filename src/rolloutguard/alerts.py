"""
Alert log for the health monitor.

The log has a single writer (the monitor) and is replaced wholesale on
every change, so readers always get a consistent tuple without locking.
Entries are never mutated: resolving an alert swaps in a resolved copy.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from rolloutguard.config import MonitoringConfig
from rolloutguard.models import Alert, AlertCondition, AlertType, RolloutMetrics

logger = logging.getLogger(__name__)


def evaluate_alert_conditions(metrics: RolloutMetrics, config: MonitoringConfig) -> list[Alert]:
    """
    Build one alert per violated condition.

    The four conditions are checked independently, so a single bad sample
    can raise several alerts.

    Args:
        metrics: The sample to check.
        config: Thresholds.

    Returns:
        New, unresolved alerts carrying the sample as snapshot.
    """
    alerts: list[Alert] = []

    if metrics.avg_response_time_ms > config.max_response_time_ms:
        alerts.append(
            Alert(
                type=AlertType.WARNING,
                condition=AlertCondition.RESPONSE_TIME,
                message=(
                    f"High response time: {metrics.avg_response_time_ms:.0f}ms "
                    f"(limit: {config.max_response_time_ms:.0f}ms)"
                ),
                metrics_snapshot=metrics,
            )
        )

    if metrics.system_availability_pct < config.availability_alert_threshold:
        alerts.append(
            Alert(
                type=(
                    AlertType.CRITICAL if metrics.system_availability_pct < 90 else AlertType.WARNING
                ),
                condition=AlertCondition.AVAILABILITY,
                message=f"System availability: {metrics.system_availability_pct:.2f}%",
                metrics_snapshot=metrics,
            )
        )

    if metrics.data_consistency_pct < config.min_data_consistency:
        alerts.append(
            Alert(
                type=AlertType.CRITICAL,
                condition=AlertCondition.DATA_CONSISTENCY,
                message=(
                    f"Low data consistency: {metrics.data_consistency_pct:.2f}% "
                    f"(minimum: {config.min_data_consistency:.0f}%)"
                ),
                metrics_snapshot=metrics,
            )
        )

    if metrics.errors_count > 0:
        alerts.append(
            Alert(
                type=AlertType.WARNING,
                condition=AlertCondition.ERRORS,
                message=f"Errors detected: {metrics.errors_count}",
                metrics_snapshot=metrics,
            )
        )

    return alerts


class AlertLog:
    """
    Copy-on-write list of alerts.

    Example:
        >>> log = AlertLog()
        >>> log.add(alert)
        >>> log.active()
        (Alert(...),)
    """

    def __init__(self, alerts: Iterable[Alert] = ()) -> None:
        self._alerts: tuple[Alert, ...] = tuple(alerts)

    def __len__(self) -> int:
        return len(self._alerts)

    def all(self) -> tuple[Alert, ...]:
        """Every retained alert, oldest first."""
        return self._alerts

    def active(self, alert_type: AlertType | None = None) -> tuple[Alert, ...]:
        """
        Unresolved alerts, optionally filtered by type.

        Args:
            alert_type: Only return alerts of this type.
        """
        return tuple(
            a
            for a in self._alerts
            if not a.resolved and (alert_type is None or a.type == alert_type)
        )

    def find_active(self, condition: AlertCondition) -> Alert | None:
        """Most recent unresolved alert raised by a condition."""
        for alert in reversed(self._alerts):
            if not alert.resolved and alert.condition == condition:
                return alert
        return None

    def add(self, alert: Alert) -> None:
        self._alerts = (*self._alerts, alert)

    def replace(self, alert: Alert) -> None:
        """Swap in a new version of an alert with the same id."""
        self._alerts = tuple(alert if a.id == alert.id else a for a in self._alerts)

    def resolve(self, alert_id: str, at: datetime | None = None) -> Alert | None:
        """
        Mark an alert resolved.

        Args:
            alert_id: Id of the alert.
            at: Resolution time (defaults to now).

        Returns:
            The resolved alert, or None if no unresolved alert has that id.
        """
        for alert in self._alerts:
            if alert.id == alert_id and not alert.resolved:
                resolved = alert.resolve(at)
                self.replace(resolved)
                return resolved
        return None

    def resolve_cleared(
        self,
        still_active: set[AlertCondition],
        at: datetime | None = None,
    ) -> list[Alert]:
        """
        Resolve unresolved alerts whose condition no longer holds.

        Automatic rollback alerts are never resolved this way.

        Args:
            still_active: Conditions violated by the latest sample.
            at: Resolution time (defaults to now).

        Returns:
            The alerts that were resolved.
        """
        resolved: list[Alert] = []
        updated: list[Alert] = []
        for alert in self._alerts:
            if (
                not alert.resolved
                and alert.condition != AlertCondition.AUTOMATIC_ROLLBACK
                and alert.condition not in still_active
            ):
                alert = alert.resolve(at)
                resolved.append(alert)
            updated.append(alert)
        if resolved:
            self._alerts = tuple(updated)
        return resolved

    def prune(self, now: datetime, retention: timedelta) -> int:
        """
        Drop alerts raised before now - retention.

        Returns:
            Number of alerts dropped.
        """
        cutoff = now - retention
        kept = tuple(a for a in self._alerts if a.timestamp > cutoff)
        dropped = len(self._alerts) - len(kept)
        if dropped:
            self._alerts = kept
            logger.debug("Pruned %d alerts older than %s", dropped, cutoff.isoformat())
        return dropped


__all__ = [
    "evaluate_alert_conditions",
    "AlertLog",
]
