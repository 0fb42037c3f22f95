"""
Monitoring events and the publisher that distributes them.

The health monitor announces lifecycle changes, every completed
evaluation, each alert and each automatic rollback. Subscribers register
per event class (or for all events); handlers may be plain functions or
coroutine functions.

A failing handler is logged and isolated: other handlers still run and
the publisher never raises into the monitor.

Example:
    >>> publisher = MonitorEventPublisher()
    >>>
    >>> async def page_oncall(event: AutomaticRollback) -> None:
    ...     await pager.send(event.reason)
    >>>
    >>> publisher.subscribe(AutomaticRollback, page_oncall)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, TypeVar

from rolloutguard.models import Alert, SystemHealthStatus
from rolloutguard.observability import Tracer, create_tracer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorEvent:
    """
    Base class for monitoring events.

    Attributes:
        occurred_at: When the event was raised (UTC).
    """

    event_name: ClassVar[str] = "monitor.event"

    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC), kw_only=True)


@dataclass(frozen=True)
class MonitoringStarted(MonitorEvent):
    """The health monitor started its periodic loop."""

    event_name: ClassVar[str] = "monitoring.started"


@dataclass(frozen=True)
class MonitoringStopped(MonitorEvent):
    """The health monitor stopped its periodic loop."""

    event_name: ClassVar[str] = "monitoring.stopped"


@dataclass(frozen=True)
class HealthChecked(MonitorEvent):
    """An evaluation completed."""

    event_name: ClassVar[str] = "health.checked"

    status: SystemHealthStatus


@dataclass(frozen=True)
class AlertCreated(MonitorEvent):
    """A new alert was raised."""

    event_name: ClassVar[str] = "alert.created"

    alert: Alert


@dataclass(frozen=True)
class AutomaticRollback(MonitorEvent):
    """The monitor reverted the rollout on its own."""

    event_name: ClassVar[str] = "rollback.automatic"

    reason: str
    alert: Alert


E = TypeVar("E", bound=MonitorEvent)

EventHandler = Callable[[Any], Awaitable[None] | None]


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", None) or type(handler).__name__


class MonitorEventPublisher:
    """
    In-process publisher for monitoring events.

    Example:
        >>> publisher = MonitorEventPublisher()
        >>> publisher.subscribe(AlertCreated, lambda e: print(e.alert.message))
        >>> await publisher.publish(AlertCreated(alert=alert))
    """

    def __init__(
        self,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._subscribers: dict[type[MonitorEvent], list[EventHandler]] = defaultdict(list)
        self._all_handlers: list[EventHandler] = []
        self.handler_errors = 0

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None] | None]) -> None:
        """
        Subscribe a handler to one event class.

        Args:
            event_type: Event class to receive.
            handler: Function or coroutine function taking the event.
        """
        self._subscribers[event_type].append(handler)
        logger.debug("Registered %s for %s", _handler_name(handler), event_type.event_name)

    def unsubscribe(self, event_type: type[MonitorEvent], handler: EventHandler) -> bool:
        """
        Remove a handler.

        Returns:
            True if the handler was subscribed.
        """
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe a handler to every event."""
        self._all_handlers.append(handler)

    def subscriber_count(self, event_type: type[MonitorEvent] | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._subscribers.values()) + len(self._all_handlers)
        return len(self._subscribers.get(event_type, []))

    async def publish(self, event: MonitorEvent) -> None:
        """
        Deliver an event to its subscribers.

        Handlers run concurrently; a failure in one does not affect the
        others and is not raised to the caller.

        Args:
            event: The event to deliver.
        """
        handlers = list(self._subscribers.get(type(event), [])) + list(self._all_handlers)
        if not handlers:
            return
        with self._tracer.span(
            "rolloutguard.events.publish",
            {"rolloutguard.event.name": event.event_name, "handler.count": len(handlers)},
        ):
            await asyncio.gather(
                *(self._safe_handle(handler, event) for handler in handlers),
                return_exceptions=True,
            )

    async def _safe_handle(self, handler: EventHandler, event: MonitorEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self.handler_errors += 1
            logger.error(
                "Handler %s failed processing %s: %s",
                _handler_name(handler),
                event.event_name,
                e,
                exc_info=True,
            )


__all__ = [
    "MonitorEvent",
    "MonitoringStarted",
    "MonitoringStopped",
    "HealthChecked",
    "AlertCreated",
    "AutomaticRollback",
    "EventHandler",
    "MonitorEventPublisher",
]
