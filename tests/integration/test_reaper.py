"""
Integration tests for the reaper loop.
"""

import asyncio

from jobstore.constants import JobStatus
from jobstore.db.repository import JobStore
from jobstore.reaper.main import Reaper
from jobstore.types.job import Job


async def reserve_all(store: JobStore, *jobs: Job) -> None:
    for job in jobs:
        await store.add(job)
        await store.reserve("w1")


class TestReaper:
    """Tests for Reaper."""

    async def test_run_once_returns_counts(self, store: JobStore, clock):
        """Test that one pass runs both sweeps."""
        await reserve_all(
            store,
            Job(id="expired", expire_ms=1000),
            Job(id="stalled", expire_ms=60_000, stall_ms=1000),
            Job(id="healthy", expire_ms=60_000),
        )
        clock.advance(seconds=2)

        reaper = Reaper(store, interval_seconds=1)
        reclaimed = await reaper.run_once()

        assert reclaimed == {"expired": 1, "stalled": 1}
        assert (await store.get_by_id("healthy")).status == JobStatus.PROCESSING

    async def test_run_once_nothing_due(self, store: JobStore):
        """Test a pass over an idle queue."""
        await store.add(Job(id="j1", expire_ms=1000))

        reaper = Reaper(store, interval_seconds=1)

        assert await reaper.run_once() == {"expired": 0, "stalled": 0}

    async def test_loop_reclaims_until_stopped(self, store: JobStore, clock):
        """Test that the running loop returns abandoned jobs to the queue."""
        await reserve_all(store, Job(id="j1", expire_ms=1000))
        reaper = Reaper(store, interval_seconds=0.01)

        task = asyncio.create_task(reaper.start())
        clock.advance(seconds=2)

        async with asyncio.timeout(2):
            while (await store.get_by_id("j1")).status != JobStatus.READY:
                await asyncio.sleep(0.01)

        assert reaper.running

        await reaper.stop()
        await asyncio.wait_for(task, timeout=1)

        assert not reaper.running

    async def test_loop_survives_closed_store(self, store: JobStore):
        """Test that sweep failures are logged and the loop keeps going."""
        reaper = Reaper(store, interval_seconds=0.01)
        await store.close()

        task = asyncio.create_task(reaper.start())
        await asyncio.sleep(0.05)

        assert not task.done()

        await reaper.stop()
        await asyncio.wait_for(task, timeout=1)
