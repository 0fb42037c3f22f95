"""
Observability utilities for rolloutguard.

Tracing abstractions and the standard attribute names used by every
component's spans and metrics.

Example:
    >>> from rolloutguard.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, enable_tracing: bool = True):
    ...         self._tracer = create_tracer(__name__, enable_tracing)
"""

from rolloutguard.observability.attributes import (
    ATTR_ALERT_TYPE,
    ATTR_DB_SYSTEM,
    ATTR_DB_TABLE,
    ATTR_ERROR_TYPE,
    ATTR_FLAGS_ACTOR,
    ATTR_FLAGS_CACHE_HIT,
    ATTR_FLAGS_EMERGENCY,
    ATTR_HEALTH_AVAILABILITY,
    ATTR_HEALTH_STATUS,
    ATTR_PROBE_KIND,
    ATTR_PROBE_RESPONSE_TIME_MS,
    ATTR_PROBE_SUCCESS,
    ATTR_ROLLBACK_REASON,
    ATTR_ROLLOUT_PERCENTAGE,
    ATTR_ROLLOUT_PHASE_INDEX,
    ATTR_ROLLOUT_STATE,
    ATTR_ROLLOUT_TARGET_PERCENTAGE,
)
from rolloutguard.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer (composition-based API)
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_ALERT_TYPE",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_TABLE",
    "ATTR_ERROR_TYPE",
    "ATTR_FLAGS_ACTOR",
    "ATTR_FLAGS_CACHE_HIT",
    "ATTR_FLAGS_EMERGENCY",
    "ATTR_HEALTH_AVAILABILITY",
    "ATTR_HEALTH_STATUS",
    "ATTR_PROBE_KIND",
    "ATTR_PROBE_RESPONSE_TIME_MS",
    "ATTR_PROBE_SUCCESS",
    "ATTR_ROLLBACK_REASON",
    "ATTR_ROLLOUT_PERCENTAGE",
    "ATTR_ROLLOUT_PHASE_INDEX",
    "ATTR_ROLLOUT_STATE",
    "ATTR_ROLLOUT_TARGET_PERCENTAGE",
]
