"""Cooperative task scheduler.

Every periodic job runs in its own asyncio task on the single event loop.
A job never overlaps with itself: if a firing arrives while the previous
run is still awaiting network I/O, the firing is skipped and counted.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

Job = Callable[[], Awaitable[None]]


def seconds_until_next_utc_midnight(now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` until the next 00:00:00 UTC."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (midnight - now).total_seconds()


class PeriodicTask:
    """Runs ``job`` every ``interval`` seconds with a reentrancy guard."""

    def __init__(
        self,
        name: str,
        job: Job,
        interval: float,
        run_immediately: bool = True,
        delay_fn: Optional[Callable[[], float]] = None,
    ):
        self.name = name
        self.job = job
        self.interval = interval
        self.run_immediately = run_immediately
        # For self-rescheduling jobs the delay is recomputed before each run
        self.delay_fn = delay_fn

        self.runs = 0
        self.skipped_runs = 0
        self.failures = 0
        self.last_run: Optional[datetime] = None
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._job_task: Optional[asyncio.Task] = None

    @property
    def is_busy(self) -> bool:
        return self._running

    async def fire(self) -> bool:
        """Run the job once unless it is already running. Returns True if it ran."""
        if self._running:
            self.skipped_runs += 1
            logger.debug("scheduler.task_skipped", task=self.name, skipped=self.skipped_runs)
            return False

        self._running = True
        try:
            await self.job()
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error("scheduler.task_error", task=self.name, error=str(e), exc_info=True)
        finally:
            self._running = False
            self.last_run = datetime.now(timezone.utc)
        return True

    def _next_delay(self) -> float:
        return self.delay_fn() if self.delay_fn else self.interval

    async def _loop(self) -> None:
        if not self.run_immediately:
            await asyncio.sleep(self._next_delay())
        while True:
            # Job runs detached from the timer so a slow run causes skips, not drift
            if self._job_task is None or self._job_task.done():
                self._job_task = asyncio.create_task(self.fire())
            else:
                self.skipped_runs += 1
                logger.debug("scheduler.task_skipped", task=self.name, skipped=self.skipped_runs)
            await asyncio.sleep(self._next_delay())

    def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._loop(), name=f"scheduler.{self.name}")

    async def stop(self) -> None:
        for task in (self._loop_task, self._job_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._job_task = None


class Scheduler:
    """Owns the controller's periodic tasks."""

    def __init__(self):
        self.tasks: Dict[str, PeriodicTask] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def add_task(
        self,
        name: str,
        job: Job,
        interval: float,
        run_immediately: bool = True,
        delay_fn: Optional[Callable[[], float]] = None,
    ) -> PeriodicTask:
        if name in self.tasks:
            raise ValueError(f"Task '{name}' already scheduled")
        task = PeriodicTask(name, job, interval, run_immediately, delay_fn)
        self.tasks[name] = task
        if self._running:
            task.start()
        return task

    def add_daily_task(self, name: str, job: Job) -> PeriodicTask:
        """Run ``job`` at every UTC midnight, rescheduling itself after each firing."""
        return self.add_task(
            name,
            job,
            interval=86400.0,
            run_immediately=False,
            delay_fn=seconds_until_next_utc_midnight,
        )

    def start(self) -> None:
        self._running = True
        for task in self.tasks.values():
            task.start()
        logger.info("scheduler.started", tasks=list(self.tasks))

    async def stop(self) -> None:
        """Cancel every task and wait for them to unwind."""
        self._running = False
        await asyncio.gather(*(task.stop() for task in self.tasks.values()))
        logger.info("scheduler.stopped", tasks=list(self.tasks))

    def clear(self) -> None:
        self.tasks.clear()

    def get_status(self) -> List[dict]:
        return [
            {
                "name": t.name,
                "interval": t.interval,
                "runs": t.runs,
                "skipped_runs": t.skipped_runs,
                "failures": t.failures,
                "last_run": t.last_run.isoformat() if t.last_run else None,
            }
            for t in self.tasks.values()
        ]
