"""
Schedulers

ScheduledLoop runs a coroutine on fixed interval boundaries, DailyTask runs
one at a local wall-clock time every day. Both read time from a Clock so
tests can substitute a fake one and never really sleep.

Usage:
    group = SchedulerGroup()
    group.add("poll", 5.0, poll_round)
    group.add_daily("retention", time(0, 1), ZoneInfo("Asia/Jakarta"), cleanup)
    await group.start_all()
    ...
    group.stop_all()
    await group.wait_all()
"""

import asyncio
import math
from datetime import datetime, time, timezone, tzinfo
from typing import Awaitable, Callable

from .logging_setup import get_service_logger
from .timestamp import next_daily_run

logger = get_service_logger("scheduler")

JobCallback = Callable[[], Awaitable[None]]


class Clock:
    """Source of aware UTC time and of sleeping"""

    def now(self) -> datetime:
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class _Job:
    """Background task plumbing shared by both scheduler kinds"""

    def __init__(self, callback: JobCallback, name: str, clock: Clock | None):
        self.callback = callback
        self.name = name
        self.clock = clock or SystemClock()

        self._running = False
        self._task: asyncio.Task | None = None
        self._execution_count = 0
        self._error_count = 0
        self._last_duration_s = 0.0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def execution_count(self) -> int:
        """Callbacks that completed without raising"""
        return self._execution_count

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"scheduler:{self.name}")

    def stop(self) -> None:
        """
        Stop scheduling further runs.

        Called from inside the callback, the current run completes and the
        loop exits afterwards; from anywhere else the pending sleep is
        cancelled.
        """
        self._running = False
        task = self._task
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def wait(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None

    async def _execute(self) -> None:
        started = self.clock.now()
        try:
            await self.callback()
        except Exception as e:
            self._error_count += 1
            logger.error(f"Scheduled job '{self.name}' failed: {e}", exc_info=True)
        else:
            self._execution_count += 1
        self._last_duration_s = (self.clock.now() - started).total_seconds()

    async def _run(self) -> None:
        raise NotImplementedError

    def get_stats(self) -> dict:
        return {
            "name": self.name,
            "running": self._running,
            "execution_count": self._execution_count,
            "error_count": self._error_count,
            "last_duration_s": round(self._last_duration_s, 3),
        }


class ScheduledLoop(_Job):
    """
    Run a callback every `interval_seconds`, on the interval grid.

    Runs are due at fixed points (multiples of the interval when aligned,
    otherwise start time plus multiples). A callback that overruns does not
    shift the grid: boundaries it overran are skipped and counted rather
    than run back to back.
    """

    def __init__(
        self,
        interval_seconds: float,
        callback: JobCallback,
        name: str = "unnamed",
        clock: Clock | None = None,
        align: bool = True,
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval must be positive, got {interval_seconds}")
        super().__init__(callback, name, clock)
        self.interval = interval_seconds
        self.align = align
        self._skipped_count = 0

    @property
    def skipped_count(self) -> int:
        return self._skipped_count

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def _first_due(self, now: float) -> float:
        if not self.align:
            return now
        return (now // self.interval + 1) * self.interval

    async def _run(self) -> None:
        due = self._first_due(self._now())

        while self._running:
            delay = due - self._now()
            if delay > 0:
                await self.clock.sleep(delay)
            if not self._running:
                break

            await self._execute()

            # next boundary strictly after now
            behind = self._now() - due
            steps = math.floor(behind / self.interval) + 1 if behind >= 0 else 1
            due += steps * self.interval
            if steps > 1:
                self._skipped_count += steps - 1
                logger.warning(
                    f"Scheduler '{self.name}' overran by {steps - 1} interval(s) "
                    f"(last run {self._last_duration_s:.3f}s)"
                )

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update(interval_s=self.interval, skipped_count=self._skipped_count)
        return stats


class DailyTask(_Job):
    """
    Run a callback once a day at `run_at` local time in `tz`.

    The next run is recomputed from the clock after each execution, so DST
    changes and clock corrections never accumulate.
    """

    def __init__(
        self,
        run_at: time,
        tz: tzinfo,
        callback: JobCallback,
        name: str = "daily",
        clock: Clock | None = None,
    ):
        super().__init__(callback, name, clock)
        self.run_at = run_at
        self.tz = tz
        self._last_run: datetime | None = None

    def next_run(self) -> datetime:
        return next_daily_run(self.clock.now(), self.run_at, self.tz)

    async def _run(self) -> None:
        while self._running:
            target = self.next_run()
            logger.debug(f"Daily task '{self.name}' next run at {target.isoformat()}")
            await self.clock.sleep((target - self.clock.now()).total_seconds())
            if not self._running:
                break

            await self._execute()
            self._last_run = self.clock.now()

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats.update(
            run_at=self.run_at.isoformat(),
            last_run=self._last_run.isoformat() if self._last_run else None,
        )
        return stats


class SchedulerGroup:
    """Named schedulers of one service, started and stopped together"""

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self._jobs: dict[str, ScheduledLoop | DailyTask] = {}

    def add(
        self,
        name: str,
        interval_seconds: float,
        callback: JobCallback,
        align: bool = True,
    ) -> ScheduledLoop:
        job = ScheduledLoop(interval_seconds, callback, name, clock=self.clock, align=align)
        self._jobs[name] = job
        return job

    def add_daily(
        self,
        name: str,
        run_at: time,
        tz: tzinfo,
        callback: JobCallback,
    ) -> DailyTask:
        job = DailyTask(run_at, tz, callback, name, clock=self.clock)
        self._jobs[name] = job
        return job

    def get(self, name: str) -> ScheduledLoop | DailyTask | None:
        return self._jobs.get(name)

    async def start_all(self) -> None:
        for job in self._jobs.values():
            await job.start()

    def stop_all(self) -> None:
        for job in self._jobs.values():
            job.stop()

    async def wait_all(self) -> None:
        for job in self._jobs.values():
            await job.wait()

    def get_stats(self) -> dict:
        return {name: job.get_stats() for name, job in self._jobs.items()}
