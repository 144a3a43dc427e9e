"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from backlog.constants import JobState


class EnqueueJobRequest(BaseModel):
    """Request body for enqueueing a job."""

    type: str = Field(..., description="Registered payload type")
    data: dict[str, Any] = Field(default_factory=dict, description="Payload fields")
    priority: int = Field(default=0, description="Higher runs first")
    run_at: datetime | None = Field(
        default=None, description="Earliest time to run the job"
    )


class EnqueueJobResponse(BaseModel):
    """Response body after enqueueing a job."""

    unique_key: str
    name: str
    priority: int
    run_at: datetime
    created_at: datetime
    message: str = "Job enqueued"


class JobStatusResponse(BaseModel):
    """
    Job status looked up by its public handle.

    Internal details (row id, lock owner, stack traces) are left out.
    """

    unique_key: str
    name: str
    priority: int
    attempts: int
    state: JobState | None
    locked: bool
    run_at: datetime
    completed_at: datetime | None
    result: Any | None = None
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class JobStatsResponse(BaseModel):
    """Job counts by lifecycle stage."""

    pending: int
    locked: int
    successful: int
    failed: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    timestamp: datetime

