"""
Scheduling infrastructure: clock abstraction and cancellable periodic tasks.
"""

from onboarding_hub.infrastructure.scheduling.scheduler import (
    AsyncioScheduler,
    Clock,
    ScheduleHandle,
    Scheduler,
    SystemClock,
)

__all__ = ["AsyncioScheduler", "Clock", "ScheduleHandle", "Scheduler", "SystemClock"]
