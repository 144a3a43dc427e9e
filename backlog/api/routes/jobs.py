"""
Job routes.

Jobs are addressed by ``unique_key`` only; row ids are never exposed.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from backlog.constants import API_V1_PREFIX
from backlog.db import get_async_session
from backlog.db.models import Job
from backlog.db.repository import JobRepository
from backlog.errors import DeserializationError, InvalidPayloadError
from backlog.payloads import deserialize_payload, is_public_payload
from backlog.types.api import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobStatsResponse,
    JobStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=API_V1_PREFIX, tags=["Jobs"])


def _job_to_response(job: Job) -> JobStatusResponse:
    """Convert a Job model to a JobStatusResponse."""
    if job.successful:
        result, last_error = job.result, None
    else:
        # Only the message line; the stored backtrace stays internal
        result = None
        last_error = job.last_error.splitlines()[0] if job.last_error else None

    return JobStatusResponse(
        unique_key=job.unique_key,
        name=job.name,
        priority=job.priority,
        attempts=job.attempts,
        state=job.state,
        locked=job.locked,
        run_at=job.run_at,
        completed_at=job.completed_at,
        result=result,
        last_error=last_error,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


@router.post(
    "/jobs",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Enqueue a job of a payload type registered as public.",
)
async def enqueue_job(
    request: EnqueueJobRequest,
    session: AsyncSession = Depends(get_async_session),
) -> EnqueueJobResponse:
    """
    Enqueue a new job.

    Args:
        request: Payload type, payload fields and scheduling options.
        session: Database session.

    Returns:
        EnqueueJobResponse with the job's public handle.

    Raises:
        HTTPException: 422 if the type is unknown, not public or the data
            does not validate.
    """
    if not is_public_payload(request.type):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown payload type: {request.type}",
        )

    try:
        payload = deserialize_payload({"type": request.type, "data": request.data})
        repo = JobRepository(session)
        job = await repo.enqueue(payload, priority=request.priority, run_at=request.run_at)
    except (DeserializationError, InvalidPayloadError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    await session.commit()

    return EnqueueJobResponse(
        unique_key=job.unique_key,
        name=job.name,
        priority=job.priority,
        run_at=job.run_at,
        created_at=job.created_at,
    )


@router.get(
    "/jobs/{unique_key}",
    response_model=JobStatusResponse,
    summary="Get job status",
    description="Look up a job by its unique key.",
)
async def get_job(
    unique_key: str,
    session: AsyncSession = Depends(get_async_session),
) -> JobStatusResponse:
    """
    Get job status by unique key.

    A job removed after success or after giving up is reported as not
    found, like a key that never existed.

    Raises:
        HTTPException: If no job has this key.
    """
    repo = JobRepository(session)
    job = await repo.get_job_by_unique_key(unique_key)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return _job_to_response(job)


@router.get(
    "/stats",
    response_model=JobStatsResponse,
    summary="Job statistics",
    description="Count jobs by lifecycle stage.",
)
async def get_stats(
    session: AsyncSession = Depends(get_async_session),
) -> JobStatsResponse:
    """Get job counts."""
    stats = await JobRepository(session).get_job_stats()
    return JobStatsResponse(**stats)
