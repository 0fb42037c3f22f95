"""
Standard span and metric attributes for rolloutguard.

Attribute constants shared by every component so that spans and metrics
can be filtered consistently. These follow OpenTelemetry semantic
conventions where applicable.

Example:
    >>> from rolloutguard.observability.attributes import ATTR_ROLLOUT_PERCENTAGE
    >>>
    >>> with tracer.span(
    ...     "rolloutguard.controller.advance_to_next_phase",
    ...     {ATTR_ROLLOUT_PERCENTAGE: 25},
    ... ):
    ...     pass
"""

# =============================================================================
# Rollout Attributes
# =============================================================================

ATTR_ROLLOUT_PERCENTAGE = "rolloutguard.rollout.percentage"
"""Current persisted rollout percentage (integer 0-100)."""

ATTR_ROLLOUT_TARGET_PERCENTAGE = "rolloutguard.rollout.target_percentage"
"""Percentage of the phase being transitioned to (integer 0-100)."""

ATTR_ROLLOUT_PHASE_INDEX = "rolloutguard.rollout.phase_index"
"""Position of the current phase in the phase table (integer)."""

ATTR_ROLLOUT_STATE = "rolloutguard.rollout.state"
"""Controller state (idle, monitoring, rolled_back)."""

ATTR_ROLLBACK_REASON = "rolloutguard.rollback.reason"
"""Reason recorded for an emergency rollback."""

# =============================================================================
# Flag Attributes
# =============================================================================

ATTR_FLAGS_ACTOR = "rolloutguard.flags.updated_by"
"""Actor performing a flag update."""

ATTR_FLAGS_CACHE_HIT = "rolloutguard.flags.cache_hit"
"""Whether a flag read was served from cache."""

ATTR_FLAGS_EMERGENCY = "rolloutguard.flags.emergency_rollback"
"""Whether the emergency rollback flag is set."""

# =============================================================================
# Probe Attributes
# =============================================================================

ATTR_PROBE_KIND = "rolloutguard.probe.kind"
"""Probe kind (e.g., 'legacy_read', 'data_consistency')."""

ATTR_PROBE_SUCCESS = "rolloutguard.probe.success"
"""Whether the probe succeeded."""

ATTR_PROBE_RESPONSE_TIME_MS = "rolloutguard.probe.response_time_ms"
"""Probe response time in milliseconds."""

# =============================================================================
# Health Attributes
# =============================================================================

ATTR_HEALTH_STATUS = "rolloutguard.health.status"
"""Composite health classification (healthy, degraded, critical)."""

ATTR_HEALTH_AVAILABILITY = "rolloutguard.health.availability_pct"
"""System availability percentage for the evaluation."""

ATTR_ALERT_TYPE = "rolloutguard.alert.type"
"""Alert severity type (warning, critical, info)."""

# =============================================================================
# Database Attributes (OpenTelemetry semantic)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_TABLE = "db.sql.table"
"""Table name targeted by a storage operation."""

# =============================================================================
# Error Attributes
# =============================================================================

ATTR_ERROR_TYPE = "error.type"
"""Exception class name for a failed operation."""

__all__ = [
    "ATTR_ROLLOUT_PERCENTAGE",
    "ATTR_ROLLOUT_TARGET_PERCENTAGE",
    "ATTR_ROLLOUT_PHASE_INDEX",
    "ATTR_ROLLOUT_STATE",
    "ATTR_ROLLBACK_REASON",
    "ATTR_FLAGS_ACTOR",
    "ATTR_FLAGS_CACHE_HIT",
    "ATTR_FLAGS_EMERGENCY",
    "ATTR_PROBE_KIND",
    "ATTR_PROBE_SUCCESS",
    "ATTR_PROBE_RESPONSE_TIME_MS",
    "ATTR_HEALTH_STATUS",
    "ATTR_HEALTH_AVAILABILITY",
    "ATTR_ALERT_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_TABLE",
    "ATTR_ERROR_TYPE",
]
