"""Self-rescheduling maintenance loop with latency-driven jitter."""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from ..common.schemas import MaintenanceRun

LOGGER = structlog.get_logger("accessglue.access.scheduler")

STEADY_INTERVAL_SECONDS = 3600.0
INITIAL_DELAY_MAX_SECONDS = 3600.0
BACKOFF_DELAY_MAX_SECONDS = 300.0
SLOW_RUN_THRESHOLD_MS = 5000.0

RunOnce = Callable[[], Awaitable[MaintenanceRun]]
Sleep = Callable[[float], Awaitable[None]]


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class MaintenanceScheduler:
    """Runs ``run_once`` forever, one run at a time.

    The first run is delayed uniformly in ``[0, 1h]`` so replicas do not
    sweep in lockstep. A slow (> 5 s) or failed run schedules the next one
    uniformly in ``[0, 5 min]``; a healthy run waits exactly one hour.
    """

    def __init__(
        self,
        run_once: RunOnce,
        *,
        rng: Optional[random.Random] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._run_once = run_once
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.state = SchedulerState.IDLE
        self.last_run: Optional[MaintenanceRun] = None
        self.next_delay_seconds: Optional[float] = None

    def initial_delay(self) -> float:
        return self._rng.uniform(0.0, INITIAL_DELAY_MAX_SECONDS)

    def next_delay(self, run: MaintenanceRun) -> float:
        if run.duration_ms > SLOW_RUN_THRESHOLD_MS or not run.success:
            return self._rng.uniform(0.0, BACKOFF_DELAY_MAX_SECONDS)
        return STEADY_INTERVAL_SECONDS

    async def tick(self) -> float:
        """Execute one run and return the delay before the next."""

        self.state = SchedulerState.RUNNING
        try:
            run = await self._run_once()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Maintenance run raised")
            run = MaintenanceRun(started_at=datetime.now(UTC), duration_ms=0.0, success=False)
        finally:
            self.state = SchedulerState.IDLE
        self.last_run = run
        delay = self.next_delay(run)
        self.next_delay_seconds = delay
        LOGGER.info(
            "Maintenance run complete",
            success=run.success,
            duration_ms=round(run.duration_ms, 2),
            deleted=run.deleted,
            next_delay_seconds=round(delay, 2),
        )
        return delay

    async def run_forever(self, *, max_runs: Optional[int] = None) -> None:
        delay = self.initial_delay()
        self.next_delay_seconds = delay
        LOGGER.info("Maintenance scheduler armed", initial_delay_seconds=round(delay, 2))
        runs = 0
        while max_runs is None or runs < max_runs:
            await self._sleep(delay)
            delay = await self.tick()
            runs += 1

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:  # noqa: BLE001
            LOGGER.exception("Maintenance task failed")
