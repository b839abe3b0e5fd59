"""
Job store for database operations.
Implements the job CRUD surface, atomic reservation and reclamation.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import BigInteger, and_, case, delete, insert, literal, select, update
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from jobstore.config import StoreConfig
from jobstore.constants import (
    CREATED_AT_COLUMN,
    DOMAIN_KEY,
    EXTRA_FIELDS_COLUMN,
    PRIMARY_KEY,
    SPAN_RECLAIM_JOBS,
    SPAN_RESERVE_JOB,
    JobStatus,
    ReclaimReason,
    StoreState,
)
from jobstore.db.codec import decode, encode
from jobstore.db.connection import StoreConnection
from jobstore.db.models import filter_clauses, from_row, split_record, to_row
from jobstore.errors import (
    JobCreateError,
    JobDecodeError,
    JobStoreError,
    StoreConnectionError,
    StoreNotOpenError,
    WriteCountMismatchError,
)
from jobstore.observability.metrics import MetricsCollector, get_metrics
from jobstore.observability.tracing import get_tracer, set_span_attributes
from jobstore.types.events import EventSink
from jobstore.types.job import Job, to_epoch_ms, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# (deadline column, duration column) per reclaim reason
DEADLINES: dict[ReclaimReason, tuple[str, str]] = {
    ReclaimReason.EXPIRED: ("expires", "expire_ms"),
    ReclaimReason.STALLED: ("stalls", "stall_ms"),
}


class JobStore:
    """
    Store for job records.

    Implements atomic operations for:
    - Reservation of the next ready job by a worker
    - Reclamation of processing jobs past their expiry or stall deadline

    Everything else is a thin wrapper over single statements. Exclusivity
    of reservation comes from the store evaluating filter and update as
    one statement; nothing here locks in process.
    """

    def __init__(
        self,
        config: StoreConfig | None = None,
        events: EventSink | None = None,
        clock: Clock = utcnow,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the store.

        Args:
            config: Connection configuration. Built from settings if not
                provided.
            events: Async callable receiving ``opened`` / ``closed`` events.
            clock: Source of the current time for deadlines.
            metrics: Metrics collector. Uses the global one if not provided.
        """
        self._metrics = metrics or get_metrics()
        self._connection = StoreConnection(
            config or StoreConfig.build(),
            events=events,
            metrics=self._metrics,
        )
        self._table = self._connection.table
        self._clock = clock
        self._tracer = get_tracer()

    @property
    def connection(self) -> StoreConnection:
        """The underlying store connection."""
        return self._connection

    @property
    def state(self) -> StoreState:
        """Current connection state."""
        return self._connection.state

    async def open(self) -> bool:
        """
        Open the store. Failures are reported as a ``closed`` event.

        Returns:
            True if the store is open.
        """
        return await self._connection.open()

    async def close(self, force: bool = False) -> None:
        """
        Close the store.

        Args:
            force: If True, do not wait for in-flight operations.
        """
        await self._connection.close(force=force)

    def _to_job(self, row: Mapping[str, Any]) -> Job:
        try:
            return Job.from_document(decode(from_row(row)))
        except ValidationError as e:
            raise JobDecodeError(row[PRIMARY_KEY], str(e)) from e

    async def add(self, job: Job) -> None:
        """
        Insert a new job.

        Args:
            job: The job to insert.

        Raises:
            JobCreateError: If the job could not be inserted.
        """
        logger.debug(f"Add job {job.id}")

        try:
            async with self._connection.session("add job") as session:
                result = await session.execute(
                    insert(self._table).values(**to_row(encode(job.to_document())))
                )
                if result.rowcount != 1:
                    raise JobCreateError(job.id, f"inserted {result.rowcount} jobs")
        except (JobCreateError, StoreNotOpenError, StoreConnectionError):
            raise
        except JobStoreError as e:
            reason = "duplicate id" if isinstance(e.__cause__, IntegrityError) else str(e)
            raise JobCreateError(job.id, reason) from e

        self._metrics.record_job_added()

    async def get_by_id(self, job_id: str) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job identifier.

        Returns:
            The Job or None if not found.
        """
        logger.debug("Get job by id", extra={"job_id": job_id})

        async with self._connection.session("get job") as session:
            result = await session.execute(
                select(self._table).where(self._table.c[PRIMARY_KEY] == job_id)
            )
            row = result.mappings().one_or_none()

        return self._to_job(row) if row is not None else None

    async def get(self, query: Mapping[str, Any]) -> list[Job]:
        """
        Search jobs by field equality.

        Args:
            query: Partial job fields to match. An empty query matches all.

        Returns:
            Matching jobs in insertion order.
        """
        logger.debug("Search jobs", extra={"fields": sorted(query)})

        clauses = filter_clauses(self._table, encode(query))
        stmt = select(self._table).where(*clauses).order_by(
            self._table.c[CREATED_AT_COLUMN],
            self._table.c[PRIMARY_KEY],
        )

        async with self._connection.session("search jobs") as session:
            result = await session.execute(stmt)
            rows = result.mappings().all()

        return [self._to_job(row) for row in rows]

    async def reserve(self, worker_id: str) -> Job | None:
        """
        Atomically reserve the next ready job for a worker.

        The job is picked and moved to PROCESSING by one statement, so two
        concurrent callers can never both get the same job. Deadlines are
        armed from their durations on jobs that define them.

        Args:
            worker_id: The worker identifier.

        Returns:
            The reserved Job, or None if no job is ready.
        """
        if not worker_id:
            raise ValueError("worker_id is required")

        logger.debug(f"Atomic reserve job {worker_id}")

        table = self._table
        now_ms = literal(to_epoch_ms(self._clock()), BigInteger)

        # Uses FOR UPDATE SKIP LOCKED where supported so concurrent
        # reservations pick different rows instead of queueing up.
        candidate = (
            select(table.c[PRIMARY_KEY])
            .where(table.c.status == JobStatus.READY)
            .order_by(table.c[CREATED_AT_COLUMN], table.c[PRIMARY_KEY])
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(table)
            .where(
                and_(
                    table.c[PRIMARY_KEY] == candidate,
                    table.c.status == JobStatus.READY,
                )
            )
            .values(
                status=JobStatus.PROCESSING,
                worker_id=worker_id,
                expires=case(
                    (table.c.expire_ms.is_(None), table.c.expires),
                    else_=now_ms + table.c.expire_ms,
                ),
                stalls=case(
                    (table.c.stall_ms.is_(None), table.c.stalls),
                    else_=now_ms + table.c.stall_ms,
                ),
            )
            .returning(*table.c)
        )

        with self._tracer.start_as_current_span(SPAN_RESERVE_JOB):
            set_span_attributes(worker_id=worker_id)
            async with self._connection.session("reserve job") as session:
                result = await session.execute(stmt)
                row = result.mappings().one_or_none()

            if row is None:
                self._metrics.record_reserve_empty()
                return None

            job = self._to_job(row)
            set_span_attributes(job_id=job.id, attempts=job.attempts)

        logger.info(
            "Reserved job",
            extra={"job_id": job.id, "worker_id": worker_id, "attempts": job.attempts},
        )
        self._metrics.record_job_reserved(worker_id)
        return job

    async def update_by_id(self, job_id: str, values: Mapping[str, Any]) -> None:
        """
        Apply a partial update to one job.

        Extra fields are merged into the stored ones. The stored record is
        locked and the patched job is validated before anything is written,
        so a patch can not leave a record that no longer reads back.

        Args:
            job_id: The job identifier.
            values: Fields to set.

        Raises:
            ValueError: If no fields are given, the id would change, the
                patched job is invalid or its attempts would go down.
            WriteCountMismatchError: If not exactly one job was updated.
        """
        logger.debug("Update job", extra={"job_id": job_id})

        if DOMAIN_KEY in values and values[DOMAIN_KEY] != job_id:
            raise ValueError("job id is immutable")
        columns, extra = split_record(
            {key: value for key, value in values.items() if key != DOMAIN_KEY}
        )
        if not columns and not extra:
            raise ValueError("no fields to update")

        match = self._table.c[PRIMARY_KEY] == job_id

        async with self._connection.session("update job") as session:
            result = await session.execute(select(self._table).where(match).with_for_update())
            current = result.mappings().one_or_none()
            if current is None:
                raise WriteCountMismatchError("updated", 0)

            if extra:
                columns[EXTRA_FIELDS_COLUMN] = {**(current[EXTRA_FIELDS_COLUMN] or {}), **extra}
            self._check_update(current, columns)

            result = await session.execute(update(self._table).where(match).values(**columns))
            if result.rowcount != 1:
                raise WriteCountMismatchError("updated", result.rowcount or 0)

    def _check_update(self, current: Mapping[str, Any], columns: Mapping[str, Any]) -> None:
        """Reject a patch that would leave an invalid job behind."""
        try:
            patched = Job.from_document(decode(from_row({**current, **columns})))
        except ValidationError as e:
            raise ValueError(f"invalid update of job {current[PRIMARY_KEY]}: {e}") from e

        if patched.attempts < current["attempts"]:
            raise ValueError(
                f"attempts of job {patched.id} can not go down "
                f"({current['attempts']} -> {patched.attempts})"
            )

    async def remove_by_id(self, job_id: str) -> bool:
        """
        Delete one job.

        Args:
            job_id: The job identifier.

        Returns:
            True once the job is deleted.

        Raises:
            WriteCountMismatchError: If not exactly one job was deleted.
        """
        logger.debug("Remove job by id", extra={"job_id": job_id})

        async with self._connection.session("remove job") as session:
            result = await session.execute(
                delete(self._table).where(self._table.c[PRIMARY_KEY] == job_id)
            )
            if result.rowcount != 1:
                raise WriteCountMismatchError("deleted", result.rowcount or 0)

        return True

    async def remove(self, query: Mapping[str, Any]) -> int:
        """
        Delete all jobs matching the query.

        Args:
            query: Partial job fields to match. An empty query matches all.

        Returns:
            Number of deleted jobs.
        """
        logger.debug("Remove jobs", extra={"fields": sorted(query)})

        clauses = filter_clauses(self._table, encode(query))
        async with self._connection.session("remove jobs") as session:
            result = await session.execute(delete(self._table).where(*clauses))
            deleted = result.rowcount or 0

        if deleted:
            logger.info(f"Removed {deleted} jobs")
        return deleted

    async def remove_by_status(self, status: str) -> int:
        """
        Delete all jobs with the given status.

        Returns:
            Number of deleted jobs.
        """
        return await self.remove({"status": status})

    async def clear(self) -> int:
        """
        Delete all jobs.

        Returns:
            Number of deleted jobs.
        """
        return await self.remove({})

    async def reclaim_expired(self) -> int:
        """
        Reset processing jobs whose expiry deadline has passed.

        Returns:
            Number of reclaimed jobs.
        """
        return await self._reclaim(ReclaimReason.EXPIRED)

    async def reclaim_stalled(self) -> int:
        """
        Reset processing jobs whose stall deadline has passed.

        Returns:
            Number of reclaimed jobs.
        """
        return await self._reclaim(ReclaimReason.STALLED)

    async def reclaim(self) -> dict[str, int]:
        """
        Run both reclamation passes.

        Returns:
            Dictionary of reason -> reclaimed count.
        """
        return {
            ReclaimReason.EXPIRED.value: await self.reclaim_expired(),
            ReclaimReason.STALLED.value: await self.reclaim_stalled(),
        }

    async def _reclaim(self, reason: ReclaimReason) -> int:
        """
        Scan for overdue jobs, then reset each one with its own update.

        Each update is conditional on the job still being processing and
        overdue, so a job completed, removed or reclaimed by someone else
        since the scan is left alone and not counted. A failed update is
        logged and the pass goes on with the next job.
        """
        table = self._table
        deadline_name, duration_name = DEADLINES[reason]
        deadline = table.c[deadline_name]
        now = self._clock()

        with self._tracer.start_as_current_span(SPAN_RECLAIM_JOBS):
            set_span_attributes(reason=reason)

            async with self._connection.session(f"scan {reason} jobs") as session:
                result = await session.execute(
                    select(table.c[PRIMARY_KEY], table.c[duration_name]).where(
                        table.c.status == JobStatus.PROCESSING,
                        deadline < now,
                    )
                )
                overdue = result.all()

            reclaimed = 0
            for job_id, duration_ms in overdue:
                next_deadline = (
                    now + timedelta(milliseconds=duration_ms) if duration_ms is not None else None
                )
                stmt = (
                    update(table)
                    .where(
                        table.c[PRIMARY_KEY] == job_id,
                        table.c.status == JobStatus.PROCESSING,
                        deadline < now,
                    )
                    .values(
                        {
                            "status": JobStatus.READY,
                            "worker_id": None,
                            "attempts": table.c.attempts + 1,
                            deadline_name: next_deadline,
                        }
                    )
                )
                try:
                    async with self._connection.session(f"reclaim {reason} job") as session:
                        result = await session.execute(stmt)
                        modified = result.rowcount or 0
                except StoreNotOpenError:
                    raise
                except JobStoreError as e:
                    logger.warning(
                        f"Could not reclaim {reason} job: {e}",
                        extra={"job_id": job_id},
                    )
                    self._metrics.record_reclaim_failure(reason)
                    continue

                reclaimed += modified

            set_span_attributes(scanned=len(overdue), reclaimed=reclaimed)

        if reclaimed:
            logger.info(f"Reclaimed {reclaimed} {reason} jobs")
        self._metrics.record_jobs_reclaimed(reason, reclaimed)
        return reclaimed
