"""
Backlog: a persistent, lease-based background job queue.

Producers enqueue work into a shared SQL table; independent workers poll it,
take a time-bounded lease on a job with a compare-and-swap update, run it and
record the outcome with retry/backoff semantics.
"""

__version__ = "1.0.0"
