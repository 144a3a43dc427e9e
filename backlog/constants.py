"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Terminal job states.

    A pending job has no state at all (``NULL``). Once a state is set the job
    is never picked up again:
    - pending -> SUCCESSFUL (ran and the payload asked to keep the record)
    - pending -> FAILED (attempts exhausted and failed jobs are kept)
    """

    SUCCESSFUL = "successful"
    FAILED = "failed"


class RunOutcome(StrEnum):
    """Result of trying to run a single candidate job."""

    NO_LEASE = "no_lease"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TABLE_NAME = "delayed_jobs"

# Default values
DEFAULT_PRIORITY = 0
DEFAULT_MAX_ATTEMPTS = 25
DEFAULT_BATCH_SIZE = 5
UNIQUE_KEY_BYTES = 10

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "backlog_queue_depth"
METRIC_JOBS_ENQUEUED = "backlog_jobs_enqueued_total"
METRIC_JOBS_COMPLETED = "backlog_jobs_completed_total"
METRIC_JOB_DURATION = "backlog_job_duration_seconds"
METRIC_LEASE_ACQUIRED = "backlog_lease_acquired_total"
METRIC_LEASE_CONTENDED = "backlog_lease_contended_total"
METRIC_LOCKS_CLEARED = "backlog_locks_cleared_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_CLEAR_LOCKS = "clear_locks"
