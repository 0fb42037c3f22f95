"""
Exceptions raised by the rollout controller, flag store and health monitor.

Exception Hierarchy:
    RolloutError (base)
    +-- FlagPersistenceError
    +-- InvalidFlagStateError
    +-- RolloutStateError
    +-- PhaseTransitionError
        +-- TooManyProbeFailuresError
        +-- SoakErrorBudgetExceededError

Each exception carries an ErrorSeverity that callers can use to choose a
logging level or decide whether to page an operator. Transient probe
failures never surface as exceptions: they become unsuccessful
HealthCheckResult values at the probe boundary.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """
    Severity level of rollout errors.

    Attributes:
        CRITICAL: The rollout was (or must be) reverted.
        ERROR: An operation failed and needs operator attention.
        WARNING: The operation was refused but the system is consistent.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    """The rollout was (or must be) reverted."""

    ERROR = "error"
    """An operation failed and needs operator attention."""

    WARNING = "warning"
    """The operation was refused but the system is consistent."""

    INFO = "info"
    """Informational condition, not a failure."""

    @property
    def should_alert(self) -> bool:
        """
        Check if this severity level should trigger an alert.

        Returns:
            True for CRITICAL and ERROR levels.
        """
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class RolloutError(Exception):
    """
    Base exception for all rollout errors.

    Attributes:
        message: Human-readable error description.
        severity: Severity classification of this error.
        error_code: Stable code for programmatic handling.
        suggested_action: Guidance for the operator.
    """

    severity: ErrorSeverity = ErrorSeverity.ERROR
    error_code: str = "ROLLOUT_ERROR"
    suggested_action: str = "Review rollout logs"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for serialization.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "error_code": self.error_code,
            "severity": self.severity.value,
            "suggested_action": self.suggested_action,
        }


class FlagPersistenceError(RolloutError):
    """
    Raised when the flag record cannot be written.

    Reads never raise this; FlagStore.get_flags falls back to safe
    defaults instead.
    """

    severity = ErrorSeverity.ERROR
    error_code = "FLAG_PERSISTENCE_FAILED"
    suggested_action = "Check connectivity to the flag store database"


class InvalidFlagStateError(RolloutError):
    """
    Raised when an update would leave the flag record inconsistent.

    Attributes:
        violations: Human-readable descriptions of each broken invariant.
    """

    severity = ErrorSeverity.WARNING
    error_code = "INVALID_FLAG_STATE"
    suggested_action = "Enable reads before writes, and clear emergency rollback first"

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__("Invalid flag state: " + "; ".join(self.violations))

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["violations"] = list(self.violations)
        return data


class RolloutStateError(RolloutError):
    """
    Raised when an operation is not allowed in the current rollout state.

    For example, advancing while the emergency rollback flag is set, or
    restarting a controller that has already rolled back.
    """

    severity = ErrorSeverity.WARNING
    error_code = "ROLLOUT_STATE_INVALID"
    suggested_action = "Clear the emergency rollback flag or create a new controller"


class PhaseTransitionError(RolloutError):
    """
    Raised when a phase failed to stabilise during its soak window.

    The emergency rollback has already been performed when this is raised.

    Attributes:
        target_percentage: Percentage of the phase that was being soaked.
    """

    severity = ErrorSeverity.CRITICAL
    error_code = "PHASE_TRANSITION_FAILED"
    suggested_action = "Investigate probe failures before re-enabling the rollout"

    def __init__(self, message: str, target_percentage: int) -> None:
        self.target_percentage = target_percentage
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["target_percentage"] = self.target_percentage
        return data


class TooManyProbeFailuresError(PhaseTransitionError):
    """
    Raised when a single soak poll had too many failing probes.

    Attributes:
        failed: Number of failed probes in the poll.
        total: Number of probes executed in the poll.
    """

    error_code = "TOO_MANY_PROBE_FAILURES"

    def __init__(self, target_percentage: int, failed: int, total: int) -> None:
        self.failed = failed
        self.total = total
        super().__init__(
            f"Too many critical errors in {target_percentage}% phase "
            f"({failed}/{total} probes failed)",
            target_percentage,
        )


class SoakErrorBudgetExceededError(PhaseTransitionError):
    """
    Raised when errors accumulated over the soak window reached the budget.

    Attributes:
        errors: Errors counted so far in the window.
        max_errors: Configured error budget.
    """

    error_code = "SOAK_ERROR_BUDGET_EXCEEDED"

    def __init__(self, target_percentage: int, errors: int, max_errors: int) -> None:
        self.errors = errors
        self.max_errors = max_errors
        super().__init__(
            f"Error budget exceeded in {target_percentage}% phase "
            f"({errors} errors, max: {max_errors})",
            target_percentage,
        )


__all__ = [
    "ErrorSeverity",
    "RolloutError",
    "FlagPersistenceError",
    "InvalidFlagStateError",
    "RolloutStateError",
    "PhaseTransitionError",
    "TooManyProbeFailuresError",
    "SoakErrorBudgetExceededError",
]
