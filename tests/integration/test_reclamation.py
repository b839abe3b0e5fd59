"""
Integration tests for reclamation of abandoned jobs.
"""

from contextlib import asynccontextmanager
from datetime import timedelta

from jobstore.constants import JobStatus
from jobstore.db.connection import StoreConnection
from jobstore.db.repository import JobStore
from jobstore.errors import JobStoreError
from jobstore.observability.metrics import MetricsCollector
from jobstore.types.job import Job


class TestReclamation:
    """Tests for the expiry and stall sweeps."""

    async def test_end_to_end_expiry(self, store: JobStore, clock):
        """Test add -> reserve -> expire -> reclaim back to ready."""
        await store.add(Job(id="j1", status=JobStatus.READY, expire_ms=5000))

        reserved = await store.reserve("w1")
        assert reserved.status == JobStatus.PROCESSING
        assert reserved.worker_id == "w1"

        now = clock.advance(seconds=6)
        assert await store.reclaim_expired() == 1

        job = await store.get_by_id("j1")
        assert job.status == JobStatus.READY
        assert job.attempts == 1
        assert job.worker_id is None
        assert job.expires == now + timedelta(milliseconds=5000)

    async def test_expiry_not_yet_due(self, store: JobStore, clock):
        """Test that jobs inside their deadline are left alone."""
        await store.add(Job(id="j1", expire_ms=5000))
        await store.reserve("w1")

        clock.advance(seconds=4)

        assert await store.reclaim_expired() == 0
        assert (await store.get_by_id("j1")).status == JobStatus.PROCESSING

    async def test_stall_reclaim_independent_of_expiry(self, store: JobStore, clock):
        """Test that a missed heartbeat is reclaimed before expiry."""
        await store.add(Job(id="j1", expire_ms=60000, stall_ms=1000))
        reserved = await store.reserve("w1")

        now = clock.advance(seconds=2)

        assert await store.reclaim_expired() == 0
        assert await store.reclaim_stalled() == 1

        job = await store.get_by_id("j1")
        assert job.status == JobStatus.READY
        assert job.attempts == 1
        assert job.stalls == now + timedelta(milliseconds=1000)
        assert job.expires == reserved.expires

    async def test_attempts_increment_per_reclaim(self, store: JobStore, clock):
        """Test that every reclaim adds exactly one attempt."""
        await store.add(Job(id="j1", expire_ms=1000))

        for expected in (1, 2, 3):
            await store.reserve("w1")
            clock.advance(seconds=2)
            assert await store.reclaim_expired() == 1
            assert (await store.get_by_id("j1")).attempts == expected

    async def test_second_sweep_is_noop(self, store: JobStore, clock):
        """Test that a reclaimed job is not reclaimed again."""
        await store.add(Job(id="j1", expire_ms=1000))
        await store.reserve("w1")
        clock.advance(seconds=2)

        assert await store.reclaim_expired() == 1
        assert await store.reclaim_expired() == 0
        assert (await store.get_by_id("j1")).attempts == 1

    async def test_only_processing_jobs_reclaimed(self, store: JobStore, clock):
        """Test that ready and finished jobs with past deadlines stay put."""
        past = clock.now - timedelta(seconds=1)
        await store.add(Job(id="ready", expires=past, expire_ms=1000))
        await store.add(Job(id="done", status=JobStatus.DONE, expires=past, expire_ms=1000))

        assert await store.reclaim_expired() == 0
        assert (await store.get_by_id("done")).status == JobStatus.DONE
        assert (await store.get_by_id("ready")).attempts == 0

    async def test_reclaim_without_duration_clears_deadline(self, store: JobStore, clock):
        """Test that a job without expire_ms gets no new deadline."""
        await store.add(
            Job(
                id="j1",
                status=JobStatus.PROCESSING,
                worker_id="w1",
                expires=clock.now - timedelta(seconds=1),
            )
        )

        assert await store.reclaim_expired() == 1

        job = await store.get_by_id("j1")
        assert job.status == JobStatus.READY
        assert job.expires is None

    async def test_reclaim_both(self, store: JobStore, clock, metrics: MetricsCollector):
        """Test running both sweeps in one call."""
        await store.add(Job(id="expired", expire_ms=1000))
        await store.add(Job(id="stalled", stall_ms=1000, expire_ms=60000))
        await store.reserve("w1")
        await store.reserve("w2")
        clock.advance(seconds=2)

        assert await store.reclaim() == {"expired": 1, "stalled": 1}
        assert b'jobstore_jobs_reclaimed_total{reason="expired"} 1.0' in metrics.get_metrics()

    async def test_failed_update_does_not_abort_sweep(
        self,
        store: JobStore,
        clock,
        metrics: MetricsCollector,
        monkeypatch,
    ):
        """Test that one failing record does not stop the others."""
        for job_id in ("j1", "j2", "j3"):
            await store.add(Job(id=job_id, expire_ms=1000))
            await store.reserve("w1")
        clock.advance(seconds=2)

        connection = store.connection
        original = StoreConnection.session
        calls: list[str] = []

        def flaky_session(operation: str):
            calls.append(operation)
            if operation == "reclaim expired job" and calls.count(operation) == 2:
                raise JobStoreError("simulated failure")
            return original(connection, operation)

        monkeypatch.setattr(connection, "session", flaky_session)

        assert await store.reclaim_expired() == 2
        assert calls.count("reclaim expired job") == 3
        assert b'jobstore_reclaim_failures_total{reason="expired"} 1.0' in metrics.get_metrics()

        monkeypatch.undo()
        statuses = sorted(job.status for job in await store.get({}))
        assert statuses == [JobStatus.PROCESSING, JobStatus.READY, JobStatus.READY]

    async def test_jobs_changed_after_scan_are_left_alone(
        self,
        store: JobStore,
        clock,
        monkeypatch,
    ):
        """Test that jobs finished or removed between scan and update are not reclaimed."""
        for job_id in ("j1", "j2", "j3"):
            await store.add(Job(id=job_id, expire_ms=1000))
            await store.reserve("w1")
        clock.advance(seconds=2)

        connection = store.connection
        original = StoreConnection.session
        changed: list[str] = []

        @asynccontextmanager
        async def session_after_scan(operation: str):
            # The scan has run; finish one job and drop another before any update
            if operation == "reclaim expired job" and not changed:
                changed.append(operation)
                await store.update_by_id("j1", {"status": JobStatus.DONE})
                await store.remove_by_id("j2")
            async with original(connection, operation) as session:
                yield session

        monkeypatch.setattr(connection, "session", session_after_scan)

        assert await store.reclaim_expired() == 1

        monkeypatch.undo()
        finished = await store.get_by_id("j1")
        assert finished.status == JobStatus.DONE
        assert finished.attempts == 0
        assert await store.get_by_id("j2") is None

        reclaimed = await store.get_by_id("j3")
        assert reclaimed.status == JobStatus.READY
        assert reclaimed.attempts == 1
