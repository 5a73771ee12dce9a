"""Unit tests for the cooperative scheduler."""
import asyncio
from datetime import datetime, timezone

import pytest

from pyramid_trader.core.scheduler import PeriodicTask, Scheduler, seconds_until_next_utc_midnight


class TestMidnight:
    def test_seconds_until_midnight(self):
        now = datetime(2024, 1, 10, 23, 59, 30, tzinfo=timezone.utc)
        assert seconds_until_next_utc_midnight(now) == 30

    def test_exactly_midnight_waits_a_full_day(self):
        now = datetime(2024, 1, 10, 0, 0, tzinfo=timezone.utc)
        assert seconds_until_next_utc_midnight(now) == 86400


# =============================================================================
# PeriodicTask Tests
# =============================================================================

class TestPeriodicTask:
    """Test reentrancy and error isolation."""

    @pytest.mark.asyncio
    async def test_fire_runs_job(self):
        calls = []

        async def job():
            calls.append(1)

        task = PeriodicTask("job", job, interval=1)
        assert await task.fire()
        assert calls == [1]
        assert task.runs == 1

    @pytest.mark.asyncio
    async def test_overlapping_fire_is_skipped(self):
        release = asyncio.Event()

        async def slow_job():
            await release.wait()

        task = PeriodicTask("slow", slow_job, interval=1)
        first = asyncio.create_task(task.fire())
        await asyncio.sleep(0)

        assert task.is_busy
        assert not await task.fire()
        assert task.skipped_runs == 1

        release.set()
        assert await first
        assert task.runs == 1

    @pytest.mark.asyncio
    async def test_job_error_is_contained(self):
        async def failing():
            raise RuntimeError("boom")

        task = PeriodicTask("failing", failing, interval=1)
        assert await task.fire()
        assert task.failures == 1
        assert not task.is_busy

    @pytest.mark.asyncio
    async def test_loop_runs_repeatedly(self):
        calls = []

        async def job():
            calls.append(1)

        task = PeriodicTask("fast", job, interval=0.01)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_delay_fn_used_for_first_run(self):
        calls = []

        async def job():
            calls.append(1)

        task = PeriodicTask("daily", job, interval=86400, run_immediately=False, delay_fn=lambda: 0.01)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        assert calls


# =============================================================================
# Scheduler Tests
# =============================================================================

class TestScheduler:
    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        calls = []

        async def job():
            calls.append(1)

        scheduler = Scheduler()
        scheduler.add_task("job", job, interval=0.01)
        scheduler.start()
        await asyncio.sleep(0.03)
        await scheduler.stop()
        seen = len(calls)
        await asyncio.sleep(0.03)

        assert seen >= 1
        assert len(calls) == seen
        assert not scheduler.is_running

    def test_duplicate_task_rejected(self):
        async def job():
            pass

        scheduler = Scheduler()
        scheduler.add_task("job", job, interval=1)
        with pytest.raises(ValueError):
            scheduler.add_task("job", job, interval=1)

    def test_daily_task_uses_midnight_delay(self):
        async def job():
            pass

        task = Scheduler().add_daily_task("rollover", job)
        assert task.delay_fn is seconds_until_next_utc_midnight
        assert not task.run_immediately

    def test_status(self):
        async def job():
            pass

        scheduler = Scheduler()
        scheduler.add_task("price", job, interval=3)
        status = scheduler.get_status()
        assert status == [
            {
                "name": "price",
                "interval": 3,
                "runs": 0,
                "skipped_runs": 0,
                "failures": 0,
                "last_run": None,
            }
        ]
