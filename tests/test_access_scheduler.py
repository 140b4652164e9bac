from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime

import pytest

from accessglue.access.scheduler import MaintenanceScheduler, SchedulerState
from accessglue.common.schemas import MaintenanceRun


def _run(duration_ms: float, success: bool = True) -> MaintenanceRun:
    return MaintenanceRun(started_at=datetime.now(UTC), duration_ms=duration_ms, success=success)


async def _never() -> MaintenanceRun:  # pragma: no cover - not invoked
    raise AssertionError("run_once should not be called")


@pytest.mark.parametrize("seed", range(20))
def test_slow_run_backs_off_within_five_minutes(seed):
    scheduler = MaintenanceScheduler(_never, rng=random.Random(seed))
    delay = scheduler.next_delay(_run(6000))
    assert 0 <= delay <= 300


@pytest.mark.parametrize("seed", range(20))
def test_failed_run_backs_off_even_when_fast(seed):
    scheduler = MaintenanceScheduler(_never, rng=random.Random(seed))
    assert 0 <= scheduler.next_delay(_run(50, success=False)) <= 300


def test_fast_successful_run_waits_exactly_one_hour():
    scheduler = MaintenanceScheduler(_never, rng=random.Random(1))
    assert scheduler.next_delay(_run(50)) == 3600
    assert scheduler.next_delay(_run(5000)) == 3600


@pytest.mark.parametrize("seed", range(20))
def test_initial_delay_within_one_hour(seed):
    scheduler = MaintenanceScheduler(_never, rng=random.Random(seed))
    assert 0 <= scheduler.initial_delay() <= 3600


@pytest.mark.asyncio
async def test_run_forever_arms_next_delay_after_each_run():
    sleeps: list[float] = []
    durations = iter([6000.0, 10.0])
    states: list[SchedulerState] = []
    scheduler: MaintenanceScheduler

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    async def run_once() -> MaintenanceRun:
        states.append(scheduler.state)
        return _run(next(durations))

    scheduler = MaintenanceScheduler(run_once, rng=random.Random(7), sleep=fake_sleep)
    await scheduler.run_forever(max_runs=2)

    assert len(sleeps) == 2
    assert 0 <= sleeps[0] <= 3600
    assert 0 <= sleeps[1] <= 300
    assert scheduler.next_delay_seconds == 3600
    assert states == [SchedulerState.RUNNING, SchedulerState.RUNNING]
    assert scheduler.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_raising_run_is_recorded_as_failure():
    async def run_once() -> MaintenanceRun:
        raise RuntimeError("remote exploded")

    scheduler = MaintenanceScheduler(run_once, rng=random.Random(3))
    delay = await scheduler.tick()

    assert scheduler.last_run is not None
    assert scheduler.last_run.success is False
    assert 0 <= delay <= 300
    assert scheduler.state is SchedulerState.IDLE


@pytest.mark.asyncio
async def test_start_and_stop_cancel_background_task():
    started = asyncio.Event()

    async def blocking_sleep(delay: float) -> None:
        started.set()
        await asyncio.Event().wait()

    scheduler = MaintenanceScheduler(_never, sleep=blocking_sleep)
    task = scheduler.start()
    assert scheduler.start() is task
    await asyncio.wait_for(started.wait(), timeout=1)

    await scheduler.stop()

    assert task.cancelled()
