"""
Cancellable periodic scheduling.

The orchestrator never calls asyncio.sleep() itself; it registers tasks
with a Scheduler so tests can inject a fake one and trigger runs directly.
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, time, timedelta, tzinfo
from typing import Any, Protocol

from onboarding_hub.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

ScheduledTask = Callable[[], Awaitable[Any]]


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)


def to_local(moment: datetime, tz: tzinfo) -> datetime:
    """Convert to the reference zone; naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(tz)


def seconds_until(now: datetime, at: time, tz: tzinfo) -> float:
    """Seconds from ``now`` to the next occurrence of wall-clock ``at`` in ``tz``."""
    local = to_local(now, tz)
    target = local.replace(hour=at.hour, minute=at.minute, second=0, microsecond=0)
    if target <= local:
        target += timedelta(days=1)
    return (target - local).total_seconds()


@dataclass(frozen=True, slots=True)
class ScheduleHandle:
    id: int
    name: str


class Scheduler(ABC):
    """Runs async tasks repeatedly until cancelled."""

    @abstractmethod
    def schedule(
        self,
        interval: float,
        task: ScheduledTask,
        *,
        initial_delay: float = 0.0,
        name: str = "task",
    ) -> ScheduleHandle:
        """Run ``task`` after ``initial_delay`` seconds, then every ``interval`` seconds."""

    @abstractmethod
    def cancel(self, handle: ScheduleHandle) -> bool:
        """Stop a scheduled task. Returns False if it was not scheduled."""

    @abstractmethod
    def cancel_all(self) -> None:
        """Stop every scheduled task."""


class AsyncioScheduler(Scheduler):
    """Scheduler backed by one asyncio task per handle."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._tasks: dict[int, asyncio.Task] = {}

    def schedule(
        self,
        interval: float,
        task: ScheduledTask,
        *,
        initial_delay: float = 0.0,
        name: str = "task",
    ) -> ScheduleHandle:
        if interval <= 0:
            raise ValueError("interval must be positive")

        handle = ScheduleHandle(id=next(self._ids), name=name)
        self._tasks[handle.id] = asyncio.create_task(
            self._run(handle, interval, task, initial_delay), name=f"scheduled:{name}"
        )
        logger.info(
            "Task scheduled",
            task_name=name,
            interval_seconds=interval,
            initial_delay_seconds=round(initial_delay, 1),
        )
        return handle

    async def _run(
        self, handle: ScheduleHandle, interval: float, task: ScheduledTask, initial_delay: float
    ) -> None:
        await asyncio.sleep(max(0.0, initial_delay))
        while True:
            try:
                await task()
            except Exception as e:
                # Keep the schedule alive; the next tick retries
                logger.error(
                    "Scheduled task failed",
                    task_name=handle.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            await asyncio.sleep(interval)

    def cancel(self, handle: ScheduleHandle) -> bool:
        task = self._tasks.pop(handle.id, None)
        if task is None:
            return False
        task.cancel()
        logger.info("Task cancelled", task_name=handle.name)
        return True

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()

    @property
    def active_count(self) -> int:
        return len(self._tasks)
