############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# monitor.py: Background dispatch and completion polling loop
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Queue monitor - moves jobs from PENDING to a terminal state.

Each tick dispatches a batch of PENDING jobs (oldest first) to the best
healthy backend and then polls every PROCESSING job's backend until the
job completes or fails. Backend failures never escape a tick; store
failures abort the current tick and are retried on the next one.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from backend.app.core import metrics
from backend.app.core.backends.models import QueueSnapshot
from backend.app.core.backends.pool import ServerPool
from backend.app.core.errors import BackendClientError, StateError, SubmissionError
from backend.app.core.jobs.states import JobState
from backend.app.core.jobs.store import Job, JobStore
from backend.app.core.schemas import MonitorStatus
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

NO_BACKEND_ERROR = "no backend available"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueMonitor:
    """
    Single background loop driving dispatch and completion polling.

    The loop sleeps for `interval` seconds between ticks, or until wake()
    is called (every enqueue wakes it).
    """

    def __init__(
        self,
        store: JobStore,
        pool: ServerPool,
        interval: float = 5.0,
        batch_size: int = 4,
        stuck_grace_seconds: float = 120.0,
        max_processing_seconds: float = 1800.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._pool = pool
        self.interval = interval
        self.batch_size = max(1, batch_size)
        self.stuck_grace_seconds = stuck_grace_seconds
        self.max_processing_seconds = max_processing_seconds
        self._clock = clock

        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._tick_lock = asyncio.Lock()

        # job_id -> first time its backend could not be reached
        self._unreachable_since: Dict[str, datetime] = {}

        self._ticks = 0
        self._last_tick_at: Optional[datetime] = None
        self._polled = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the loop. A second call while running is a no-op."""
        if self.is_running:
            logger.warning("queue_monitor_already_running")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("queue_monitor_started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the loop after the in-flight iteration finishes."""
        if self._task is None:
            return
        self._stop_event.set()
        self._wake_event.set()
        await self._task
        self._task = None
        logger.info("queue_monitor_stopped", ticks=self._ticks)

    def wake(self) -> None:
        """Run the next tick now instead of waiting out the interval."""
        self._wake_event.set()

    def status(self) -> MonitorStatus:
        running = self.is_running
        return MonitorStatus(
            running=running,
            active_loops=1 if running else 0,
            interval=self.interval,
            ticks=self._ticks,
            last_tick_at=self._last_tick_at,
            polled=self._polled,
        )

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("queue_monitor_tick_error")

            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    async def tick(self) -> None:
        """Run one dispatch + poll cycle."""
        async with self._tick_lock:
            self._ticks += 1
            self._last_tick_at = self._clock()
            metrics.MONITOR_TICKS.inc()
            try:
                await self._dispatch_pending()
                await self._poll_processing()
            except SQLAlchemyError as e:
                logger.error("queue_monitor_store_error", error=str(e))

    async def _dispatch_pending(self) -> None:
        pending = await self._store.list_pending(limit=self.batch_size)
        if not pending:
            return
        for job in pending:
            if not await self._dispatch(job):
                break

    async def _dispatch(self, job: Job) -> bool:
        """
        Hand one job to the best backend.

        Returns:
            False if dispatching should stop for this tick
        """
        descriptor = await self._pool.select_best()
        if descriptor is None:
            await self._record_failure(job, NO_BACKEND_ERROR, reason="no_backend")
            return False

        client = self._pool.client_for(descriptor.id)
        try:
            prompt_id = await client.submit_job(job.prompt)
        except SubmissionError as e:
            await self._record_failure(
                job, str(e), reason="submit_error", backend_id=descriptor.id
            )
            return False

        self._pool.reserve(descriptor.id)

        try:
            await self._store.transition(
                job.id,
                JobState.PROCESSING,
                backend_id=descriptor.id,
                backend_prompt_id=prompt_id,
            )
        except StateError:
            # Cancelled while the submit was in flight
            logger.info(
                "job_cancelled_during_dispatch",
                job_id=job.id,
                backend_id=descriptor.id,
                prompt_id=prompt_id,
            )
            await self._pool.cancel_prompt(descriptor.id, prompt_id)
            return True

        metrics.JOBS_DISPATCHED.labels(backend=descriptor.id).inc()
        logger.info(
            "job_dispatched",
            job_id=job.id,
            backend_id=descriptor.id,
            prompt_id=prompt_id,
        )
        return True

    async def _record_failure(
        self,
        job: Job,
        error: str,
        reason: str,
        backend_id: Optional[str] = None,
    ) -> None:
        metrics.DISPATCH_FAILURES.labels(reason=reason).inc()
        logger.warning(
            "job_dispatch_failed",
            job_id=job.id,
            backend_id=backend_id,
            attempt=job.attempts + 1,
            error=error,
        )
        try:
            await self._store.record_attempt(job.id, error)
        except StateError:
            logger.info("job_left_pending_during_dispatch", job_id=job.id)

    # ------------------------------------------------------------------
    # Completion polling
    # ------------------------------------------------------------------

    async def _poll_processing(self) -> None:
        jobs = await self._store.list_processing()
        self._polled = len(jobs)

        active_ids = {j.id for j in jobs}
        for job_id in list(self._unreachable_since):
            if job_id not in active_ids:
                del self._unreachable_since[job_id]

        if not jobs:
            return

        queues = await self._fetch_queues(sorted({j.backend_id for j in jobs}))
        for job in jobs:
            await self._poll(job, queues.get(job.backend_id))

    async def _fetch_queues(
        self,
        backend_ids: List[str],
    ) -> Dict[str, Union[QueueSnapshot, BaseException]]:
        """One queue snapshot per backend, fetched concurrently."""
        results = await asyncio.gather(
            *(self._query_queue(b) for b in backend_ids),
            return_exceptions=True,
        )
        return dict(zip(backend_ids, results))

    async def _query_queue(self, backend_id: str) -> QueueSnapshot:
        client = self._pool.client_for(backend_id)
        if client is None:
            raise BackendClientError(f"Unknown backend {backend_id}")
        return await client.query_queue()

    async def _poll(
        self,
        job: Job,
        queue: Optional[Union[QueueSnapshot, BaseException]],
    ) -> None:
        now = self._clock()

        started = job.started_at or job.updated_at
        if (now - started).total_seconds() > self.max_processing_seconds:
            minutes = int(self.max_processing_seconds // 60)
            failed = await self._finish(
                job,
                JobState.FAILED,
                f"Job exceeded maximum processing time of {minutes} minutes",
            )
            if failed:
                await self._pool.cancel_prompt(job.backend_id, job.backend_prompt_id)
            return

        if queue is None or isinstance(queue, BaseException):
            await self._backend_unreachable(job, now, queue)
            return

        if queue.contains(job.backend_prompt_id):
            self._unreachable_since.pop(job.id, None)
            return

        client = self._pool.client_for(job.backend_id)
        try:
            entry = await client.get_history(job.backend_prompt_id)
        except BackendClientError as e:
            await self._backend_unreachable(job, now, e)
            return

        self._unreachable_since.pop(job.id, None)

        if entry is None:
            # Left the queue but not yet written to history
            return

        if entry.succeeded:
            await self._finish(job, JobState.COMPLETED, None)
        else:
            await self._finish(
                job,
                JobState.FAILED,
                entry.error or "Backend finished without producing outputs",
            )

    async def _backend_unreachable(
        self,
        job: Job,
        now: datetime,
        error: Optional[BaseException],
    ) -> None:
        first = self._unreachable_since.setdefault(job.id, now)
        elapsed = (now - first).total_seconds()

        if elapsed >= self.stuck_grace_seconds:
            await self._finish(
                job,
                JobState.FAILED,
                f"stuck job: backend {job.backend_id} unreachable for {int(elapsed)}s",
            )
            return

        logger.warning(
            "job_backend_unreachable",
            job_id=job.id,
            backend_id=job.backend_id,
            unreachable_for=elapsed,
            error=str(error) if error else None,
        )

    async def _finish(self, job: Job, state: JobState, error: Optional[str]) -> bool:
        """Move a job to a terminal state; False if another writer got there first."""
        self._unreachable_since.pop(job.id, None)
        try:
            await self._store.transition(job.id, state, error=error)
        except StateError:
            logger.info("job_finished_concurrently", job_id=job.id, state=state.value)
            return False
        return True
