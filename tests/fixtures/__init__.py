"""
Shared test fixtures for the rolloutguard library.

This module provides reusable test helpers including:
- Flag record and probe result factories (flags_at, probe_result)
- Storage population (populate)
- A manually advanced clock (FakeClock)
- An event recorder for the monitor publisher (EventRecorder)

Usage:
    from tests.fixtures import (
        EventRecorder,
        FakeClock,
        flags_at,
        populate,
        probe_result,
    )
"""

from tests.fixtures.data import flags_at, populate, probe_result
from tests.fixtures.helpers import EventRecorder, FakeClock

__all__ = [
    "EventRecorder",
    "FakeClock",
    "flags_at",
    "populate",
    "probe_result",
]
