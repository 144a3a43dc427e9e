"""
Worker process for executing jobs.

The worker polls the job table, runs one job at a time under a lease and
records the outcome. Any number of workers, in separate processes or in
one event loop, can share the same table.
"""

import asyncio
import logging
import signal
import time
import weakref
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backlog.config import Settings, get_settings
from backlog.constants import SPAN_CLEAR_LOCKS, RunOutcome
from backlog.db import close_db, get_engine, get_session_context, init_db
from backlog.db.connection import get_session_factory
from backlog.db.repository import JobRepository
from backlog.observability.logging import bind_worker_context, clear_context, setup_logging
from backlog.observability.metrics import get_metrics, setup_metrics
from backlog.observability.tracing import get_tracer, instrument_sqlalchemy, setup_tracing
from backlog.payloads import load_payload_modules
from backlog.worker.executor import reserve_and_run_one_job

logger = logging.getLogger(__name__)

# Identities held by live workers in this process
_live_workers: "weakref.WeakValueDictionary[str, Worker]" = weakref.WeakValueDictionary()


class ShutdownToken:
    """
    Cooperative shutdown flag.

    Set from outside the worker (usually a signal handler) and polled
    between rounds and between idle sleep steps. A running job is never
    interrupted; only its deadline stops it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def request(self) -> None:
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()


class Worker:
    """
    Job worker that polls for and executes jobs.

    Features:
    - Up to ``batch_size`` candidates per round, skipping contended ones
    - Interruptible idle sleep between empty rounds
    - Graceful shutdown on SIGTERM/SIGINT
    - Releases every lease it holds when it exits, however it exits
    """

    def __init__(
        self,
        settings: Settings | None = None,
        worker_id: str | None = None,
        shutdown: ShutdownToken | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lease_duration: float | None = None,
    ):
        """
        Initialize the worker.

        Args:
            settings: Queue settings. Defaults to the cached global settings.
            worker_id: Lock owner name. Keep it stable across restarts to
                resume jobs locked before a crash.
            shutdown: Shutdown token; a new one is created if omitted.
            session_factory: Session factory. Defaults to the global one
                set up by ``init_db``.
            lease_duration: Lease length and execution deadline in seconds.
        """
        self.settings = settings or get_settings()
        self.worker_id = worker_id or self._claim_identity()
        self.shutdown = shutdown or ShutdownToken()
        self.lease_duration = lease_duration or self.settings.max_run_time_seconds
        self._session_factory = session_factory
        self._metrics = get_metrics()

    def _claim_identity(self) -> str:
        """
        Take the configured identity, or a suffixed one if another live
        worker in this process already holds it.

        The first worker keeps the stable name, so it can still resume
        jobs it had locked before a restart.
        """
        identity = self.settings.worker_identity()
        while identity in _live_workers:
            identity = self.settings.worker_identity(instance=uuid4().hex[:8])
        _live_workers[identity] = self
        return identity

    def _new_session(self) -> AsyncSession:
        factory = self._session_factory or get_session_factory()
        return factory()

    def _repository(self, session: AsyncSession) -> JobRepository:
        return JobRepository(session, settings=self.settings, worker_id=self.worker_id)

    async def work_off(self, num: int | None = None) -> tuple[int, int]:
        """
        Run up to ``num`` jobs.

        Stops early when no job could be leased or shutdown was requested.

        Args:
            num: Maximum number of jobs. Defaults to ``work_off_limit``.

        Returns:
            Tuple of (succeeded, failed) counts.
        """
        if num is None:
            num = self.settings.work_off_limit
        success, failure = 0, 0

        for _ in range(num):
            async with self._new_session() as session:
                outcome = await reserve_and_run_one_job(
                    session,
                    lease_duration=self.lease_duration,
                    worker_id=self.worker_id,
                    settings=self.settings,
                )

            if outcome is RunOutcome.SUCCEEDED:
                success += 1
            elif outcome is RunOutcome.FAILED:
                failure += 1
            else:
                break  # no work could be done
            if self.shutdown.requested:
                break

        return success, failure

    async def start(self) -> None:
        """Run rounds until shutdown is requested, then release all leases."""
        logger.info(
            f"*** Starting job worker {self.worker_id}",
            extra={
                "batch_size": self.settings.batch_size,
                "lease_duration": self.lease_duration,
                "min_priority": self.settings.min_priority,
                "max_priority": self.settings.max_priority,
            },
        )

        try:
            while not self.shutdown.requested:
                started = time.monotonic()
                try:
                    success, failure = await self.work_off()
                    await self._update_queue_depth()
                except Exception as e:
                    logger.exception(f"Error in worker loop: {e}")
                    success, failure = 0, 0

                count = success + failure
                if count == 0:
                    await self._idle_sleep()
                else:
                    elapsed = max(time.monotonic() - started, 1e-9)
                    logger.info(
                        f"{count} jobs processed at {count / elapsed:.4f} j/sec, {failure} failed ...",
                        extra={"succeeded": success, "failed": failure},
                    )

            logger.info("Shutting down now!")
        finally:
            await self._clear_locks()

    def stop(self) -> None:
        """Stop the worker after the current round."""
        logger.info("Shutting down after all acquired jobs finished...")
        self.shutdown.request()

    async def _idle_sleep(self) -> None:
        remaining = self.settings.sleep_delay_seconds
        step = self.settings.sleep_increment_seconds
        while remaining > 0 and not self.shutdown.requested:
            await asyncio.sleep(min(step, remaining))
            remaining -= step

    async def _update_queue_depth(self) -> None:
        async with self._new_session() as session:
            depth = await self._repository(session).get_queue_depth()
        self._metrics.update_queue_depth(depth)

    async def _clear_locks(self) -> None:
        with get_tracer().start_as_current_span(SPAN_CLEAR_LOCKS) as span:
            span.set_attribute("worker_id", self.worker_id)
            async with self._new_session() as session:
                count = await self._repository(session).clear_locks()
                await session.commit()
        if count:
            self._metrics.record_locks_cleared(self.worker_id, count)


async def run_async() -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics(settings.worker_metrics_port)
    setup_tracing()
    load_payload_modules(settings.payload_modules)
    await init_db()
    instrument_sqlalchemy(get_engine())

    worker = Worker(settings)
    bind_worker_context(worker.worker_id)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.start()
    finally:
        await close_db()
        clear_context()


async def clear_async() -> int:
    """Delete every job in the queue."""
    setup_logging()
    await init_db()
    try:
        async with get_session_context() as session:
            return await JobRepository(session).clear_all()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


def clear() -> None:
    """Clear the job queue."""
    asyncio.run(clear_async())


if __name__ == "__main__":
    run()
