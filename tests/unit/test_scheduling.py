import asyncio
from datetime import UTC, datetime, time
from zoneinfo import ZoneInfo

import pytest

from onboarding_hub.infrastructure.scheduling.scheduler import (
    AsyncioScheduler,
    seconds_until,
    to_local,
)
from onboarding_hub.services.infrastructure.throttle_gate import ThrottleGate

SHANGHAI = ZoneInfo("Asia/Shanghai")


def test_seconds_until_later_today():
    # 08:00 Shanghai
    now = datetime(2026, 10, 19, 0, 0, tzinfo=UTC)

    assert seconds_until(now, time(9, 0), SHANGHAI) == 3600


def test_seconds_until_rolls_to_tomorrow():
    # 10:00 Shanghai, digest already went out
    now = datetime(2026, 10, 19, 2, 0, tzinfo=UTC)

    assert seconds_until(now, time(9, 0), SHANGHAI) == 23 * 3600


def test_to_local_treats_naive_as_utc():
    assert to_local(datetime(2026, 10, 19, 17, 0), SHANGHAI).day == 20


@pytest.mark.asyncio
async def test_asyncio_scheduler_repeats_and_cancels():
    scheduler = AsyncioScheduler()
    runs = []

    async def task():
        runs.append(1)

    handle = scheduler.schedule(0.01, task, name="tick")
    await asyncio.sleep(0.055)

    assert scheduler.cancel(handle) is True
    count = len(runs)
    assert count >= 2

    await asyncio.sleep(0.03)
    assert len(runs) == count
    assert scheduler.cancel(handle) is False


@pytest.mark.asyncio
async def test_asyncio_scheduler_survives_failing_task():
    scheduler = AsyncioScheduler()
    runs = []

    async def flaky():
        runs.append(1)
        raise RuntimeError("boom")

    scheduler.schedule(0.01, flaky, name="flaky")
    await asyncio.sleep(0.045)
    scheduler.cancel_all()

    assert len(runs) >= 2
    assert scheduler.active_count == 0


@pytest.mark.asyncio
async def test_asyncio_scheduler_honours_initial_delay():
    scheduler = AsyncioScheduler()
    runs = []

    async def task():
        runs.append(1)

    scheduler.schedule(10, task, initial_delay=5, name="later")
    await asyncio.sleep(0.02)
    scheduler.cancel_all()

    assert runs == []


def test_asyncio_scheduler_rejects_zero_interval():
    async def task():
        return None

    with pytest.raises(ValueError):
        AsyncioScheduler().schedule(0, task)


class ManualTime:
    def __init__(self):
        self.now = 0.0
        self.waits: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.waits.append(seconds)
        self.now += seconds


@pytest.mark.asyncio
async def test_throttle_gate_spaces_request_starts():
    manual = ManualTime()
    gate = ThrottleGate(1.0, clock=manual.clock, sleep=manual.sleep)

    for _ in range(3):
        async with gate:
            pass

    assert manual.waits == [1.0, 1.0]
    assert manual.now == 2.0


@pytest.mark.asyncio
async def test_throttle_gate_does_not_wait_after_idle_period():
    manual = ManualTime()
    gate = ThrottleGate(1.0, clock=manual.clock, sleep=manual.sleep)

    await gate.acquire()
    manual.now += 0.4
    await gate.acquire()
    manual.now += 5
    await gate.acquire()

    assert manual.waits == [pytest.approx(0.6)]


@pytest.mark.asyncio
async def test_throttle_gate_serializes_concurrent_callers():
    manual = ManualTime()
    gate = ThrottleGate(0.5, clock=manual.clock, sleep=manual.sleep)
    starts = []

    async def call():
        async with gate:
            starts.append(manual.now)

    await asyncio.gather(call(), call(), call())

    assert starts == [0.0, 0.5, 1.0]
