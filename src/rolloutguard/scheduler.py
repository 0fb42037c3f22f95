"""
Cancellable periodic tasks for the rollout and monitoring loops.

TaskScheduler owns named PeriodicTask instances running on the current
event loop. A PeriodicTask never overlaps itself: each tick runs in its
own asyncio task, and if a tick is still running when the next one is due
the new tick is skipped and counted.

Stopping a task only suppresses future ticks. A tick already in flight
runs to completion; owners check their own liveness flag before applying
its results.

Example:
    >>> scheduler = TaskScheduler()
    >>> scheduler.schedule("health", 60.0, monitor.evaluate)
    >>> # Later...
    >>> await scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

TickFunction = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """
    A named coroutine function invoked every `interval` seconds.

    The first tick fires one interval after start(). Exceptions escaping a
    tick are logged and counted; they do not stop the task.

    Attributes:
        name: Task name, unique within a scheduler.
        interval: Seconds between ticks.
    """

    def __init__(self, name: str, interval: float, fn: TickFunction) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._loop_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[None] | None = None
        self._running = False
        self.ticks = 0
        self.skipped_ticks = 0
        self.failed_ticks = 0

    @property
    def is_running(self) -> bool:
        """Whether future ticks will fire."""
        return self._running

    @property
    def tick_in_flight(self) -> bool:
        """Whether a tick is currently executing."""
        return self._tick_task is not None and not self._tick_task.done()

    def start(self) -> None:
        """
        Start ticking. Calling start on a running task does nothing.
        """
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")

    def stop(self) -> None:
        """
        Suppress future ticks.

        Safe to call from inside a tick; the in-flight tick is not cancelled.
        """
        if not self._running:
            return
        self._running = False
        if self._loop_task is not None and self._loop_task is not asyncio.current_task():
            self._loop_task.cancel()
        self._loop_task = None

    async def wait_idle(self, timeout: float | None = None) -> None:
        """
        Wait for the in-flight tick, if any, to finish.

        Args:
            timeout: Maximum seconds to wait. The tick is cancelled if it
                does not finish in time.
        """
        tick = self._tick_task
        if tick is None or tick.done() or tick is asyncio.current_task():
            return
        try:
            await asyncio.wait_for(asyncio.shield(tick), timeout)
        except TimeoutError:
            tick.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await tick

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            if not self._running:
                break
            if self.tick_in_flight:
                self.skipped_ticks += 1
                logger.warning(
                    "Skipping tick of %s: previous tick still running",
                    self.name,
                )
                continue
            self._tick_task = asyncio.create_task(self._tick(), name=f"tick:{self.name}")

    async def _tick(self) -> None:
        self.ticks += 1
        try:
            await self._fn()
        except Exception as e:
            self.failed_ticks += 1
            logger.error(
                "Periodic task %s failed: %s",
                self.name,
                e,
                exc_info=True,
            )


class TaskScheduler:
    """
    Registry of named periodic tasks.

    The rollout controller's metrics loop and the health monitor's loop can
    share one scheduler; each owner only touches its own task names.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, PeriodicTask] = {}

    def schedule(self, name: str, interval: float, fn: TickFunction) -> PeriodicTask:
        """
        Create and start a periodic task.

        A stopped task with the same name is replaced.

        Args:
            name: Task name.
            interval: Seconds between ticks.
            fn: Coroutine function to invoke.

        Returns:
            The running task.

        Raises:
            ValueError: If a task with that name is already running.
        """
        existing = self._tasks.get(name)
        if existing is not None and existing.is_running:
            raise ValueError(f"Periodic task already running: {name}")
        task = PeriodicTask(name, interval, fn)
        self._tasks[name] = task
        task.start()
        logger.debug("Scheduled %s every %.3fs", name, interval)
        return task

    def cancel(self, name: str) -> bool:
        """
        Stop a task's future ticks.

        Returns:
            True if a running task was stopped.
        """
        task = self._tasks.get(name)
        if task is None or not task.is_running:
            return False
        task.stop()
        logger.debug("Cancelled %s", name)
        return True

    def get(self, name: str) -> PeriodicTask | None:
        return self._tasks.get(name)

    def is_scheduled(self, name: str) -> bool:
        """Whether a task with that name is running."""
        task = self._tasks.get(name)
        return task is not None and task.is_running

    @property
    def names(self) -> list[str]:
        """Names of running tasks."""
        return [name for name, task in self._tasks.items() if task.is_running]

    async def shutdown(self, timeout: float | None = 30.0) -> None:
        """
        Stop every task and wait for in-flight ticks.

        Args:
            timeout: Maximum seconds to wait for each in-flight tick.
        """
        for task in self._tasks.values():
            task.stop()
        for task in list(self._tasks.values()):
            await task.wait_idle(timeout)
        self._tasks.clear()


__all__ = [
    "TickFunction",
    "PeriodicTask",
    "TaskScheduler",
]
