"""
Unit tests for MonitorEventPublisher.

Tests cover:
- Per-type and catch-all subscriptions
- Sync and async handlers
- Handler failures are isolated and counted
- Unsubscribe
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from rolloutguard.events import (
    AlertCreated,
    AutomaticRollback,
    MonitorEventPublisher,
    MonitoringStarted,
    MonitoringStopped,
)
from rolloutguard.models import Alert, AlertCondition, AlertType
from rolloutguard.observability import MockTracer


@pytest.fixture
def alert() -> Alert:
    return Alert(AlertType.CRITICAL, "down", AlertCondition.AVAILABILITY)


class TestEventNames:
    def test_names(self, alert: Alert) -> None:
        assert MonitoringStarted.event_name == "monitoring.started"
        assert MonitoringStopped.event_name == "monitoring.stopped"
        assert AlertCreated(alert=alert).event_name == "alert.created"
        assert AutomaticRollback(reason="x", alert=alert).event_name == "rollback.automatic"

    def test_occurred_at_is_utc(self) -> None:
        assert MonitoringStarted().occurred_at.tzinfo is not None


class TestPublish:
    @pytest.mark.asyncio
    async def test_delivers_to_type_subscribers_only(
        self, publisher: MonitorEventPublisher, alert: Alert
    ) -> None:
        on_alert = MagicMock()
        on_stop = MagicMock()
        publisher.subscribe(AlertCreated, on_alert)
        publisher.subscribe(MonitoringStopped, on_stop)

        event = AlertCreated(alert=alert)
        await publisher.publish(event)

        on_alert.assert_called_once_with(event)
        on_stop.assert_not_called()

    @pytest.mark.asyncio
    async def test_async_handlers_awaited(
        self, publisher: MonitorEventPublisher, alert: Alert
    ) -> None:
        handler = AsyncMock()
        publisher.subscribe(AutomaticRollback, handler)

        event = AutomaticRollback(reason="3 consecutive errors", alert=alert)
        await publisher.publish(event)

        handler.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_subscribe_all_receives_everything(
        self, publisher: MonitorEventPublisher, alert: Alert
    ) -> None:
        received: list[str] = []
        publisher.subscribe_all(lambda e: received.append(e.event_name))

        await publisher.publish(MonitoringStarted())
        await publisher.publish(AlertCreated(alert=alert))

        assert received == ["monitoring.started", "alert.created"]

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self, publisher: MonitorEventPublisher) -> None:
        good = AsyncMock()
        publisher.subscribe(MonitoringStarted, MagicMock(side_effect=RuntimeError("boom")))
        publisher.subscribe(MonitoringStarted, AsyncMock(side_effect=ValueError("bad")))
        publisher.subscribe(MonitoringStarted, good)

        await publisher.publish(MonitoringStarted())

        good.assert_awaited_once()
        assert publisher.handler_errors == 2

    @pytest.mark.asyncio
    async def test_no_subscribers(self) -> None:
        tracer = MockTracer()
        publisher = MonitorEventPublisher(tracer=tracer)

        await publisher.publish(MonitoringStarted())

        assert tracer.spans == []

    @pytest.mark.asyncio
    async def test_publish_traced(self) -> None:
        tracer = MockTracer()
        publisher = MonitorEventPublisher(tracer=tracer)
        publisher.subscribe_all(MagicMock())

        await publisher.publish(MonitoringStopped())

        assert tracer.span_names == ["rolloutguard.events.publish"]


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_unsubscribe(self, publisher: MonitorEventPublisher) -> None:
        handler = MagicMock()
        publisher.subscribe(MonitoringStarted, handler)

        assert publisher.unsubscribe(MonitoringStarted, handler) is True
        assert publisher.unsubscribe(MonitoringStarted, handler) is False

        await publisher.publish(MonitoringStarted())
        handler.assert_not_called()

    def test_subscriber_count(self, publisher: MonitorEventPublisher) -> None:
        publisher.subscribe(MonitoringStarted, MagicMock())
        publisher.subscribe(AlertCreated, MagicMock())
        publisher.subscribe_all(MagicMock())

        assert publisher.subscriber_count(MonitoringStarted) == 1
        assert publisher.subscriber_count() == 3
