"""
rolloutguard - Gradual migration rollout with health monitoring and automatic rollback.

This library provides:
- FlagStore: cached, fail-closed access to the migration flag record
- RolloutController: phase-by-phase rollout with a soak window after each step
- HealthMonitor: periodic multi-probe health evaluation, alerts and
  automatic rollback
- SQLAlchemy and in-memory backends for flag persistence and probe storage
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("rolloutguard")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from rolloutguard.alerts import AlertLog, evaluate_alert_conditions
from rolloutguard.config import MonitoringConfig, RolloutConfig
from rolloutguard.controller import ControllerState, RolloutController
from rolloutguard.events import (
    AlertCreated,
    AutomaticRollback,
    HealthChecked,
    MonitorEvent,
    MonitorEventPublisher,
    MonitoringStarted,
    MonitoringStopped,
)
from rolloutguard.exceptions import (
    ErrorSeverity,
    FlagPersistenceError,
    InvalidFlagStateError,
    PhaseTransitionError,
    RolloutError,
    RolloutStateError,
    SoakErrorBudgetExceededError,
    TooManyProbeFailuresError,
)
from rolloutguard.flags import FlagStore
from rolloutguard.metrics import RolloutInstruments, RolloutMetricSnapshot
from rolloutguard.models import (
    ROLLOUT_PHASES,
    Alert,
    AlertCondition,
    AlertType,
    HealthCheckResult,
    HealthStatus,
    MetricsStatus,
    MigrationFlags,
    ProbeKind,
    RolloutMetrics,
    RolloutPhase,
    SystemHealthStatus,
    current_phase,
    next_phase,
    phase_index,
)
from rolloutguard.monitor import HealthMonitor
from rolloutguard.probes import ProbeRunner, compute_consistency
from rolloutguard.repositories import (
    DataPathStorage,
    DataPathTables,
    FlagRepository,
    InMemoryDataPathStorage,
    InMemoryFlagRepository,
    SQLAlchemyDataPathStorage,
    SQLAlchemyFlagRepository,
)
from rolloutguard.scheduler import PeriodicTask, TaskScheduler

__all__ = [
    "__version__",
    # Core components
    "FlagStore",
    "RolloutController",
    "ControllerState",
    "HealthMonitor",
    # Configuration
    "RolloutConfig",
    "MonitoringConfig",
    # Models
    "MigrationFlags",
    "RolloutPhase",
    "ROLLOUT_PHASES",
    "current_phase",
    "next_phase",
    "phase_index",
    "HealthCheckResult",
    "RolloutMetrics",
    "MetricsStatus",
    "HealthStatus",
    "Alert",
    "AlertType",
    "AlertCondition",
    "ProbeKind",
    "SystemHealthStatus",
    # Events
    "MonitorEvent",
    "MonitoringStarted",
    "MonitoringStopped",
    "HealthChecked",
    "AlertCreated",
    "AutomaticRollback",
    "MonitorEventPublisher",
    # Exceptions
    "ErrorSeverity",
    "RolloutError",
    "FlagPersistenceError",
    "InvalidFlagStateError",
    "RolloutStateError",
    "PhaseTransitionError",
    "TooManyProbeFailuresError",
    "SoakErrorBudgetExceededError",
    # Infrastructure
    "AlertLog",
    "evaluate_alert_conditions",
    "ProbeRunner",
    "compute_consistency",
    "PeriodicTask",
    "TaskScheduler",
    "RolloutInstruments",
    "RolloutMetricSnapshot",
    # Repositories
    "FlagRepository",
    "InMemoryFlagRepository",
    "SQLAlchemyFlagRepository",
    "DataPathStorage",
    "DataPathTables",
    "InMemoryDataPathStorage",
    "SQLAlchemyDataPathStorage",
]
