"""
Exception types raised by the job queue.

Lease contention is deliberately absent: losing a lease race is reported
as a plain ``False`` from ``JobRepository.acquire_lease``.
"""


class BacklogError(Exception):
    """Base class for all queue errors."""


class InvalidPayloadError(BacklogError, ValueError):
    """The object handed to enqueue cannot be stored as a job payload."""


class DeserializationError(BacklogError):
    """A stored payload could not be turned back into a runnable object."""


class JobTimeoutError(BacklogError, TimeoutError):
    """A payload ran past its lease duration."""
