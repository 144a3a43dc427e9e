"""
SQLAlchemy database models.
Defines the delayed job table and its persistence guards.
"""

import secrets
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from backlog.constants import TABLE_NAME, UNIQUE_KEY_BYTES, JobState
from backlog.errors import DeserializationError
from backlog.payloads.registry import deserialize_payload

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current local time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def generate_unique_key() -> str:
    """Random public handle for a job; not guessable from other keys."""
    return secrets.token_hex(UNIQUE_KEY_BYTES)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime on every backend.

    PostgreSQL keeps the offset itself; SQLite hands back naive values, which
    are stored in UTC and get their tzinfo re-attached on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    A unit of work persisted in the queue.

    The row is the only shared state between workers. A worker owns a job
    while ``locked_by`` names it and ``locked_at`` is younger than the lease
    duration; ownership is taken with a conditional single-row update.

    Key invariants:
    - ``state`` is NULL while the job is pending; ``completed_at`` is set
      exactly when ``state`` is
    - ``locked_at`` and ``locked_by`` are set or cleared together
    - ``unique_key`` is assigned before the first insert and never changes
    """

    __tablename__ = TABLE_NAME
    # Fetch server-generated columns right after INSERT
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Allows some jobs to jump to the front of the queue
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Failed runs so far
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Serialized payload: {"type": <registry tag>, "data": {...}}
    handler: Mapped[dict] = mapped_column(JSONType, nullable=False)
    # Return value of a retained job, or the text of the last error
    result: Mapped[Any | None] = mapped_column(JSONType, nullable=True)

    run_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    unique_key: Mapped[str] = mapped_column(String(2 * UNIQUE_KEY_BYTES), nullable=False, unique=True)

    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    state: Mapped[JobState | None] = mapped_column(
        Enum(
            JobState,
            name="job_state",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=True,
        default=None,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        server_default=func.now(),
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        # Candidate polling: priority DESC, run_at ASC
        Index("ix_delayed_jobs_poll", "state", "priority", "run_at"),
    )

    @property
    def failed(self) -> bool:
        return self.state == JobState.FAILED

    @property
    def successful(self) -> bool:
        return self.state == JobState.SUCCESSFUL

    @property
    def locked(self) -> bool:
        return self.locked_by is not None

    @property
    def last_error(self) -> Any | None:
        """Alias of ``result`` for jobs that have failed at least once."""
        return self.result

    @property
    def payload_object(self) -> Any:
        """
        The payload reconstructed from ``handler``.

        Cached on the instance after the first successful load. A payload
        with a ``job_key`` attribute gets this job's ``unique_key``.

        Raises:
            DeserializationError: If the payload cannot be rebuilt.
        """
        cached = self.__dict__.get("_payload_object")
        if cached is None:
            cached = deserialize_payload(self.handler)
            if self.unique_key and hasattr(cached, "job_key"):
                cached.job_key = self.unique_key
            self.__dict__["_payload_object"] = cached
        return cached

    @property
    def name(self) -> str:
        """Human readable job name used in log lines."""
        try:
            payload = self.payload_object
        except DeserializationError:
            handler = self.handler if isinstance(self.handler, dict) else {}
            return str(handler.get("type", "Unknown"))
        display_name = getattr(payload, "display_name", None)
        if callable(display_name):
            return display_name()
        return type(payload).__name__

    def unlock(self) -> None:
        """Clear the lease fields in memory (not flushed)."""
        self.locked_at = None
        self.locked_by = None

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, priority={self.priority}, "
            f"attempts={self.attempts}, state={self.state}, locked_by={self.locked_by})"
        )


def _guard_state(job: Job) -> None:
    if job.run_at is None:
        job.run_at = utcnow()
    if job.state is None:
        job.completed_at = None
    elif job.completed_at is None:
        job.completed_at = utcnow()
    if (job.locked_at is None) != (job.locked_by is None):
        job.unlock()


@event.listens_for(Job, "before_insert")
def _job_before_insert(mapper: Any, connection: Any, target: Job) -> None:
    if not target.unique_key:
        target.unique_key = generate_unique_key()
    _guard_state(target)


@event.listens_for(Job, "before_update")
def _job_before_update(mapper: Any, connection: Any, target: Job) -> None:
    _guard_state(target)
