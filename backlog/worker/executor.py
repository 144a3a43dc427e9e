"""
Job execution under a lease.

Payloads must be idempotent: a job whose worker died mid-run is run again
once its lease expires.
"""

import asyncio
import inspect
import logging
import time
import traceback
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backlog.config import Settings
from backlog.constants import SPAN_ACQUIRE_LEASE, SPAN_EXECUTE_JOB, RunOutcome
from backlog.db.models import Job
from backlog.db.repository import JobRepository, LeaseDuration
from backlog.errors import JobTimeoutError
from backlog.observability.metrics import get_metrics
from backlog.observability.tracing import get_tracer

logger = logging.getLogger(__name__)


async def invoke_job(payload: Any, timeout: float) -> Any:
    """
    Run ``payload.perform()`` with a hard deadline.

    ``async def`` payloads run on the event loop; plain ones run in a
    thread so the deadline still applies. A thread that overruns keeps
    running in the background, but the job is already counted as failed.

    Args:
        payload: The payload object.
        timeout: Deadline in seconds.

    Returns:
        Whatever ``perform()`` returned.

    Raises:
        JobTimeoutError: If the deadline passed.
    """
    perform = payload.perform
    deadline = asyncio.timeout(timeout)
    try:
        async with deadline:
            if inspect.iscoroutinefunction(perform):
                returned = await perform()
            else:
                returned = await asyncio.to_thread(perform)
            if inspect.isawaitable(returned):
                returned = await returned
            return returned
    except TimeoutError as e:
        if deadline.expired():
            raise JobTimeoutError("execution expired") from e
        raise


def keeps_record(payload: Any) -> bool:
    """Whether the payload asked to keep its row after a successful run."""
    keep = getattr(payload, "keep_after_success", None)
    if callable(keep):
        keep = keep()
    return bool(keep)


def _backtrace(error: BaseException) -> list[str]:
    return "".join(traceback.format_tb(error.__traceback__)).splitlines()


async def _notify_exception(payload: Any, name: str, error: Exception) -> None:
    """Hand the error to the payload's ``on_exception`` hook, if it has one."""
    hook = getattr(payload, "on_exception", None)
    if not callable(hook):
        return
    try:
        returned = hook(error)
        if inspect.isawaitable(returned):
            await returned
    except Exception:
        logger.exception(f"* [JOB {name}] on_exception hook failed")


async def _record_failure(
    session: AsyncSession,
    repo: JobRepository,
    job: Job,
    name: str,
    error: Exception,
) -> None:
    # A rollback expires the instance, so keep what is needed afterwards
    job_id, attempts = job.id, job.attempts
    try:
        max_attempts = repo.max_attempts_for(job)
        await repo.reschedule(job, str(error) or type(error).__name__, _backtrace(error))
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(
            f"* [JOB {name}] Failed to record failure",
            extra={"job_id": job_id},
        )
        await _release_after_failed_record(session, repo, job_id, attempts + 1, name)
        return

    logger.error(
        f"* [JOB {name}] Failed with {type(error).__name__}: {error} - "
        f"{job.attempts} of {max_attempts} attempts",
        extra={"job_id": job_id, "error": str(error)},
    )


async def _release_after_failed_record(
    session: AsyncSession,
    repo: JobRepository,
    job_id: int,
    attempts: int,
    name: str,
) -> None:
    # Left locked, the job would be resumed at once by this same worker
    try:
        await repo.release_failed_lease(job_id, attempts)
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception(
            f"* [JOB {name}] Failed to release lease; it expires after the lease duration",
            extra={"job_id": job_id},
        )


async def run_with_lease(
    session: AsyncSession,
    job: Job,
    lease_duration: LeaseDuration = None,
    worker_id: str | None = None,
    settings: Settings | None = None,
) -> RunOutcome:
    """
    Try to run one job.

    Takes the lease, runs the payload under a deadline equal to the lease
    duration and records the outcome. The lease is committed before the
    payload starts so that other workers see it.

    Args:
        session: The async database session.
        job: A candidate returned by ``find_available``.
        lease_duration: Lease length and execution deadline.
        worker_id: Lock owner.
        settings: Queue settings.

    Returns:
        NO_LEASE if another worker holds the job, otherwise SUCCEEDED or
        FAILED depending on the run.
    """
    repo = JobRepository(session, settings=settings, worker_id=worker_id)
    lease = repo.lease_delta(lease_duration)
    metrics = get_metrics()
    tracer = get_tracer()
    name = job.name

    logger.info(f"* [JOB {name}] Acquiring lease", extra={"job_id": job.id})
    with tracer.start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
        span.set_attribute("job_id", job.id)
        span.set_attribute("worker_id", repo.worker_id)
        acquired = await repo.acquire_lease(job, lease, repo.worker_id)
        await session.commit()

    if not acquired:
        # Some other worker process must have it
        logger.warning(
            f"* [JOB {name}] Failed to acquire exclusive lock",
            extra={"job_id": job.id},
        )
        metrics.record_lease_contended(repo.worker_id)
        return RunOutcome.NO_LEASE

    metrics.record_lease_acquired(repo.worker_id)
    start_time = time.monotonic()

    with tracer.start_as_current_span(SPAN_EXECUTE_JOB) as span:
        span.set_attribute("job_id", job.id)
        span.set_attribute("job_name", name)
        span.set_attribute("attempts", job.attempts)
        payload = None
        try:
            payload = job.payload_object
            returned = await invoke_job(payload, lease.total_seconds())
        except Exception as e:
            span.record_exception(e)
            await _record_failure(session, repo, job, name, e)
            await _notify_exception(payload, name, e)
            metrics.record_job_completed(
                outcome=RunOutcome.FAILED.value,
                duration_seconds=time.monotonic() - start_time,
            )
            return RunOutcome.FAILED

        keep = keeps_record(payload)
        await repo.complete(job, returned, keep_after_success=keep)
        await session.commit()

    duration = time.monotonic() - start_time
    logger.info(
        f"* [JOB {name}] Completed and {'kept' if keep else 'removed'} after {duration:.4f} sec",
        extra={"job_id": job.id},
    )
    metrics.record_job_completed(
        outcome=RunOutcome.SUCCEEDED.value,
        duration_seconds=duration,
    )
    return RunOutcome.SUCCEEDED


async def reserve_and_run_one_job(
    session: AsyncSession,
    lease_duration: LeaseDuration = None,
    worker_id: str | None = None,
    settings: Settings | None = None,
) -> RunOutcome:
    """
    Run the first candidate this worker can lease.

    Up to ``batch_size`` candidates are fetched; when the lease on one is
    lost to another worker the next is tried, which spreads jobs more
    evenly across workers.

    Returns:
        The outcome of the job that ran, or NO_LEASE if none could be
        leased (including when there were no candidates).
    """
    repo = JobRepository(session, settings=settings, worker_id=worker_id)
    candidates = await repo.find_available(repo.settings.batch_size, lease_duration)

    for job in candidates:
        outcome = await run_with_lease(
            session,
            job,
            lease_duration=lease_duration,
            worker_id=repo.worker_id,
            settings=repo.settings,
        )
        if outcome is not RunOutcome.NO_LEASE:
            return outcome

    return RunOutcome.NO_LEASE
