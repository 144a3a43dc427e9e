"""
Job repository for database operations.
Implements the lease protocol and the retry/backoff policy on the job table.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Sequence

from pydantic_core import to_jsonable_python
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from backlog.config import Settings, get_settings
from backlog.constants import DEFAULT_PRIORITY, SPAN_ENQUEUE_JOB, JobState
from backlog.db.models import Job, UTCDateTime
from backlog.errors import DeserializationError
from backlog.observability.metrics import get_metrics
from backlog.observability.tracing import get_tracer
from backlog.payloads.registry import serialize_payload

logger = logging.getLogger(__name__)

LeaseDuration = timedelta | float | int | None


class JobRepository:
    """
    Repository for job database operations.

    Implements atomic operations for:
    - Candidate selection for a worker
    - Lease acquisition with a conditional single-row UPDATE
    - Completion, rescheduling with backoff and permanent failure
    - Releasing every lease held by a worker

    Methods flush but never commit; the caller owns the transaction and
    must commit after each state transition so other workers see it.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            settings: Queue settings. Defaults to the cached global settings.
            worker_id: Lock owner name. Defaults to the configured identity.
        """
        self._session = session
        self._settings = settings or get_settings()
        self.worker_id = worker_id or self._settings.worker_identity()

    @property
    def settings(self) -> Settings:
        return self._settings

    def lease_delta(self, lease_duration: LeaseDuration = None) -> timedelta:
        """Normalize a lease duration, defaulting to ``max_run_time_seconds``."""
        if lease_duration is None:
            lease_duration = self._settings.max_run_time_seconds
        if isinstance(lease_duration, timedelta):
            return lease_duration
        return timedelta(seconds=lease_duration)

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next run after ``attempts`` failures."""
        return timedelta(
            seconds=attempts ** self._settings.backoff_exponent
            + self._settings.backoff_base_seconds
        )

    async def db_time_now(self) -> datetime:
        """
        Current time according to the database.

        All lease and scheduling comparisons use this clock so that workers
        with drifting local clocks still agree.
        """
        result = await self._session.execute(select(func.now(type_=UTCDateTime())))
        return result.scalar_one()

    async def enqueue(
        self,
        payload: Any,
        priority: int = DEFAULT_PRIORITY,
        run_at: datetime | None = None,
    ) -> Job:
        """
        Add a job to the queue.

        Args:
            payload: A registered payload exposing ``perform()``.
            priority: Higher runs first.
            run_at: Earliest time the job may run. Defaults to now.

        Returns:
            The persisted Job.

        Raises:
            InvalidPayloadError: If the payload cannot be run or stored.
        """
        handler = serialize_payload(payload)
        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job_type", handler["type"])
            job = Job(
                handler=handler,
                priority=int(priority),
                attempts=0,
                run_at=run_at or await self.db_time_now(),
            )
            self._session.add(job)
            await self._session.flush()
            span.set_attribute("job_id", job.id)

        logger.info(
            "Enqueued job",
            extra={
                "job_id": job.id,
                "job_type": handler["type"],
                "priority": job.priority,
                "run_at": job.run_at.isoformat(),
            },
        )
        get_metrics().record_job_enqueued(handler["type"])
        return job

    async def get_job(self, job_id: int) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job ID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_job_by_unique_key(self, unique_key: str) -> Job | None:
        """
        Get a job by its public handle.

        Args:
            unique_key: The job's unique key.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.unique_key == unique_key)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_available(
        self,
        limit: int | None = None,
        lease_duration: LeaseDuration = None,
    ) -> Sequence[Job]:
        """
        Find a few candidate jobs to run.

        Several candidates are returned so that a worker losing the lease
        race on one can move on to the next without another query.

        A job is a candidate when it has no terminal state and either it is
        due and unlocked (or its lease expired), or it is locked by this
        worker, which then must have crashed while running it.

        Args:
            limit: Maximum number of jobs. Defaults to ``batch_size``.
            lease_duration: Lease length used to decide expiry.

        Returns:
            Jobs ordered by priority (highest first), then run_at.
        """
        if limit is None:
            limit = self._settings.batch_size
        now = await self.db_time_now()
        expired_before = now - self.lease_delta(lease_duration)

        filters = [
            Job.state.is_(None),
            or_(
                and_(
                    Job.run_at <= now,
                    or_(Job.locked_at.is_(None), Job.locked_at < expired_before),
                ),
                Job.locked_by == self.worker_id,
            ),
        ]
        if self._settings.min_priority is not None:
            filters.append(Job.priority >= self._settings.min_priority)
        if self._settings.max_priority is not None:
            filters.append(Job.priority <= self._settings.max_priority)

        stmt = (
            select(Job)
            .where(and_(*filters))
            .order_by(Job.priority.desc(), Job.run_at.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def acquire_lease(
        self,
        job: Job,
        lease_duration: LeaseDuration = None,
        worker_id: str | None = None,
    ) -> bool:
        """
        Lock this job for a worker.

        This is the only mutual exclusion between workers: a conditional
        UPDATE that matches the row only while nobody else holds a live
        lease. Exactly one affected row means the lease is ours.

        Args:
            job: The candidate job.
            lease_duration: Lease length; an older lock counts as expired.
            worker_id: Lock owner. Defaults to this repository's worker.

        Returns:
            True if we hold the lease, False if another worker won the race
            or the job is no longer eligible.
        """
        worker_id = worker_id or self.worker_id
        now = await self.db_time_now()

        if job.locked_by != worker_id:
            # We don't own this job so we take it over if the lock is free or stale
            stmt = (
                update(Job)
                .where(
                    and_(
                        Job.id == job.id,
                        Job.state.is_(None),
                        or_(
                            Job.locked_at.is_(None),
                            Job.locked_at < now - self.lease_delta(lease_duration),
                        ),
                        Job.run_at <= now,
                    )
                )
                .values(locked_at=now, locked_by=worker_id)
            )
        else:
            # We already own this job; we crashed while running it. Resume.
            stmt = (
                update(Job)
                .where(and_(Job.id == job.id, Job.locked_by == worker_id))
                .values(locked_at=now)
            )

        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        set_committed_value(job, "locked_at", now)
        set_committed_value(job, "locked_by", worker_id)
        return True

    def max_attempts_for(self, job: Job) -> int:
        """
        Attempt budget for a job.

        A payload may declare its own ``max_attempts``; otherwise the
        configured default applies.
        """
        try:
            payload = job.payload_object
        except DeserializationError:
            return self._settings.max_attempts

        override = getattr(payload, "max_attempts", None)
        try:
            if callable(override):
                override = override()
            if override is None:
                return self._settings.max_attempts
            return int(override)
        except Exception:
            logger.exception(
                f"* [JOB {job.name}] max_attempts() failed, using the default",
                extra={"job_id": job.id},
            )
            return self._settings.max_attempts

    async def reschedule(
        self,
        job: Job,
        message: str,
        backtrace: Iterable[str] = (),
        now: datetime | None = None,
    ) -> Job | None:
        """
        Record a failed run.

        Under the attempt budget the job is unlocked and pushed back by
        ``attempts ** 4 + 5`` seconds (exponent and offset configurable).
        Past the budget it is deleted, or marked failed when
        ``destroy_failed_jobs`` is off.

        Args:
            job: The job that failed.
            message: Error message.
            backtrace: Traceback lines stored with the message.
            now: Base time for the backoff. Defaults to the database clock.

        Returns:
            The job, or None if it was deleted.
        """
        max_attempts = self.max_attempts_for(job)
        job.attempts += 1
        # NUL is not storable in PostgreSQL text or JSONB
        error_text = "\n".join([message, *backtrace]).replace("\x00", "")
        now = now or await self.db_time_now()

        if job.attempts < max_attempts:
            job.run_at = now + self.backoff(job.attempts)
            job.result = error_text
            job.unlock()
            await self._session.flush()
            logger.info(
                f"* [JOB {job.name}] Rescheduled after {job.attempts} failures",
                extra={"job_id": job.id, "run_at": job.run_at.isoformat()},
            )
            return job

        if self._settings.destroy_failed_jobs:
            logger.warning(
                f"* [JOB {job.name}] PERMANENTLY removing because of {job.attempts} failures.",
                extra={"job_id": job.id, "error": message},
            )
            await self._session.delete(job)
            await self._session.flush()
            return None

        logger.warning(
            f"* [JOB {job.name}] Giving up after {job.attempts} failures.",
            extra={"job_id": job.id, "error": message},
        )
        job.result = error_text
        job.state = JobState.FAILED
        job.completed_at = now
        job.unlock()
        await self._session.flush()
        return job

    async def complete(
        self,
        job: Job,
        return_value: Any = None,
        keep_after_success: bool = False,
    ) -> Job | None:
        """
        Record a successful run.

        Args:
            job: The job that ran.
            return_value: Value returned by ``perform()``; stored when kept.
            keep_after_success: Keep the row as ``successful`` instead of
                deleting it.

        Returns:
            The job, or None if it was deleted.
        """
        if not keep_after_success:
            await self._session.delete(job)
            await self._session.flush()
            return None

        job.result = to_jsonable_python(return_value, fallback=str)
        job.state = JobState.SUCCESSFUL
        job.completed_at = await self.db_time_now()
        job.unlock()
        await self._session.flush()
        return job

    async def mark_failed(self, job: Job) -> Job:
        """Move a job to the terminal failed state without running it again."""
        job.state = JobState.FAILED
        job.completed_at = await self.db_time_now()
        job.unlock()
        await self._session.flush()
        return job

    async def delete_job(self, job: Job) -> None:
        """Remove a job from the queue."""
        await self._session.delete(job)
        await self._session.flush()

    async def release_failed_lease(self, job_id: int, attempts: int) -> bool:
        """
        Unlock a job whose failure could not be recorded normally.

        Counts the failed attempt and applies the usual backoff without
        touching the payload or the error text, so the job is neither run
        again right away nor retried forever.

        Args:
            job_id: The job that failed.
            attempts: Failed runs including this one.

        Returns:
            True if this worker still held the lease and released it.
        """
        now = await self.db_time_now()
        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.locked_by == self.worker_id))
            .values(
                attempts=attempts,
                run_at=now + self.backoff(attempts),
                locked_at=None,
                locked_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def clear_locks(self, worker_id: str | None = None) -> int:
        """
        Release every lease held by a worker.

        Called when a worker exits so its jobs become available at once
        instead of after the lease expires.

        Args:
            worker_id: Lock owner. Defaults to this repository's worker.

        Returns:
            Number of released jobs.
        """
        worker_id = worker_id or self.worker_id
        stmt = (
            update(Job)
            .where(Job.locked_by == worker_id)
            .values(locked_at=None, locked_by=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount

        if count > 0:
            logger.info(
                f"Released {count} locked jobs",
                extra={"worker_id": worker_id},
            )
        return count

    async def clear_all(self) -> int:
        """
        Delete every job in the queue.

        Returns:
            Number of deleted jobs.
        """
        result = await self._session.execute(
            delete(Job).execution_options(synchronize_session=False)
        )
        logger.info(f"Cleared {result.rowcount} jobs from the queue")
        return result.rowcount

    async def get_queue_depth(self) -> int:
        """Number of jobs that have not reached a terminal state."""
        stmt = select(func.count()).select_from(Job).where(Job.state.is_(None))
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_job_stats(self) -> dict[str, int]:
        """
        Get job counts.

        Returns:
            Dictionary with ``pending``, ``locked``, ``successful`` and
            ``failed`` counts.
        """
        stats = {"pending": 0, "locked": 0}
        stats.update({state.value: 0 for state in JobState})

        stmt = select(Job.state, func.count()).group_by(Job.state)
        result = await self._session.execute(stmt)
        for state, count in result.all():
            stats["pending" if state is None else JobState(state).value] = count

        locked_stmt = select(func.count()).select_from(Job).where(
            and_(Job.state.is_(None), Job.locked_by.is_not(None))
        )
        stats["locked"] = (await self._session.execute(locked_stmt)).scalar() or 0
        return stats
