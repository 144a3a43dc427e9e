"""
Type definitions for the job queue API.
"""

from backlog.types.api import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    HealthResponse,
    JobStatsResponse,
    JobStatusResponse,
)

__all__ = [
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "JobStatusResponse",
    "JobStatsResponse",
    "HealthResponse",
]
