"""Test doubles shared across test modules."""

from typing import Any

from rolloutguard.events import MonitorEvent, MonitorEventPublisher


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class EventRecorder:
    """Subscribes to every event and keeps them for assertions."""

    def __init__(self, publisher: MonitorEventPublisher) -> None:
        self.events: list[MonitorEvent] = []
        publisher.subscribe_all(self.events.append)

    @property
    def names(self) -> list[str]:
        return [e.event_name for e in self.events]

    def of_type(self, event_type: type[MonitorEvent]) -> list[Any]:
        return [e for e in self.events if isinstance(e, event_type)]
