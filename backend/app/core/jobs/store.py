############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# store.py: Durable job bookkeeping with an enforced state machine
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Job store - the single source of truth for job state.

Every state change goes through transition(), which checks the edge
against the state machine and writes it as a compare-and-swap on the
prior state. Writes for one job are also serialized by a per-job lock, so
two coroutines racing on the same job (e.g. the monitor completing it
while a user cancels it) cannot both succeed.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core import metrics
from backend.app.core.errors import (
    AuthorizationError,
    NotFoundError,
    StateError,
    ValidationError,
)
from backend.app.core.jobs.states import JobState, validate_transition
from backend.app.db import crud
from backend.app.db.base import utcnow
from backend.app.db.models import GenerationJob
from backend.app.db.session import session_scope
from backend.app.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Job:
    """Immutable view of a job record."""

    id: str
    user_id: Optional[str]
    prompt: Any
    state: JobState
    created_at: datetime
    updated_at: datetime
    backend_id: Optional[str] = None
    backend_prompt_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @classmethod
    def from_model(cls, row: GenerationJob) -> "Job":
        return cls(
            id=row.id,
            user_id=row.user_id,
            prompt=row.prompt,
            state=JobState(row.state),
            created_at=crud.ensure_aware(row.created_at),
            updated_at=crud.ensure_aware(row.updated_at),
            backend_id=row.backend_id,
            backend_prompt_id=row.backend_prompt_id,
            error=row.error,
            attempts=row.attempts or 0,
            started_at=crud.ensure_aware(row.started_at),
            completed_at=crud.ensure_aware(row.completed_at),
        )


def validate_prompt(prompt: Any) -> None:
    """Reject missing, empty, or non-JSON payloads."""
    if prompt is None:
        raise ValidationError("Prompt is required")
    if isinstance(prompt, str):
        if not prompt.strip():
            raise ValidationError("Prompt must not be empty")
    elif isinstance(prompt, (dict, list)):
        if not prompt:
            raise ValidationError("Prompt must not be empty")
    else:
        raise ValidationError("Prompt must be a string or a JSON object/array")

    try:
        json.dumps(prompt, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Prompt is not JSON serializable: {e}") from e


class JobStore:
    """
    Persistent job records backed by SQLAlchemy.

    Reads always go to the database; nothing is cached.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_active_jobs_per_user: int = 0,
    ):
        self._session_factory = session_factory
        self.max_active_jobs_per_user = max_active_jobs_per_user
        self._job_locks: Dict[str, asyncio.Lock] = {}
        self._user_locks: Dict[str, asyncio.Lock] = {}
        # Enqueues holding or waiting on each user lock
        self._user_lock_holders: Dict[str, int] = {}
        self._last_created_at: Optional[datetime] = None

    def _session(self):
        return session_scope(self._session_factory)

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        return self._job_locks.setdefault(job_id, asyncio.Lock())

    def _release_lock(self, job_id: str) -> None:
        """Drop a terminal job's lock; it will never be written again."""
        lock = self._job_locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._job_locks[job_id]

    @asynccontextmanager
    async def _user_guard(self, user_id: Optional[str]) -> AsyncIterator[None]:
        """Serialize one user's enqueues; the lock is dropped with its last holder."""
        key = user_id or ""
        lock = self._user_locks.setdefault(key, asyncio.Lock())
        self._user_lock_holders[key] = self._user_lock_holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._user_lock_holders[key] -= 1
            if not self._user_lock_holders[key]:
                del self._user_lock_holders[key]
                del self._user_locks[key]

    def _next_created_at(self) -> datetime:
        # Strictly increasing so FIFO order matches enqueue order
        now = utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def enqueue(self, user_id: Optional[str], prompt: Any) -> Job:
        """
        Create a PENDING job.

        Raises:
            ValidationError: bad payload or per-user active job limit reached
        """
        validate_prompt(prompt)

        async with self._user_guard(user_id):
            async with self._session() as db:
                if user_id and self.max_active_jobs_per_user > 0:
                    active = await crud.count_user_active_jobs(db, user_id)
                    if active >= self.max_active_jobs_per_user:
                        raise ValidationError(
                            f"Maximum {self.max_active_jobs_per_user} active jobs per user. "
                            "Please wait for current jobs to complete."
                        )
                row = await crud.create_job(
                    db, user_id=user_id, prompt=prompt, created_at=self._next_created_at()
                )
                job = Job.from_model(row)

        metrics.JOBS_ENQUEUED.inc()
        logger.info("job_enqueued", job_id=job.id, user_id=user_id)
        return job

    async def transition(
        self,
        job_id: str,
        new_state: JobState,
        *,
        backend_id: Optional[str] = None,
        backend_prompt_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> Job:
        """
        Move a job along a legal edge of the state machine.

        Entering PROCESSING requires both backend fields and counts as a
        dispatch attempt. Entering a terminal state stamps completed_at.

        Raises:
            NotFoundError: unknown job
            StateError: illegal edge, missing backend fields, or lost race
        """
        if new_state == JobState.PROCESSING and not (backend_id and backend_prompt_id):
            raise StateError("A job can only enter processing with a backend assignment")

        async with self._lock_for(job_id):
            async with self._session() as db:
                row = await crud.get_job(db, job_id)
                if row is None:
                    raise NotFoundError(f"Job {job_id} not found")
                job = Job.from_model(row)
                validate_transition(job.state, new_state)

                now = utcnow()
                values: Dict[str, Any] = {"updated_at": now}
                changes: Dict[str, Any] = {}
                if new_state == JobState.PROCESSING:
                    values.update(
                        backend_id=backend_id,
                        backend_prompt_id=backend_prompt_id,
                        started_at=now,
                        error=None,
                        attempts=GenerationJob.attempts + 1,
                    )
                    changes.update(
                        backend_id=backend_id,
                        backend_prompt_id=backend_prompt_id,
                        started_at=now,
                        error=None,
                        attempts=job.attempts + 1,
                    )
                if new_state.is_terminal:
                    values["completed_at"] = now
                    changes["completed_at"] = now
                if error is not None:
                    values["error"] = error
                    changes["error"] = error

                if not await crud.update_job_state(db, job_id, job.state, new_state, **values):
                    raise StateError(f"Job {job_id} changed state concurrently")

        if new_state.is_terminal:
            self._release_lock(job_id)
            metrics.JOBS_FINISHED.labels(state=new_state.value).inc()

        logger.info(
            "job_state_changed",
            job_id=job_id,
            old_state=job.state.value,
            new_state=new_state.value,
            backend_id=backend_id or job.backend_id,
            error=error,
        )
        return replace(job, state=new_state, updated_at=now, **changes)

    async def record_attempt(self, job_id: str, error: Optional[str]) -> Job:
        """
        Count a failed dispatch attempt on a PENDING job.

        Args:
            job_id: Job ID
            error: Why the attempt failed (None clears the previous error)

        Raises:
            NotFoundError: unknown job
            StateError: the job is no longer PENDING
        """
        async with self._lock_for(job_id):
            async with self._session() as db:
                if not await crud.increment_job_attempts(db, job_id, error):
                    row = await crud.get_job(db, job_id)
                    if row is None:
                        raise NotFoundError(f"Job {job_id} not found")
                    raise StateError(
                        f"Cannot record an attempt on a {JobState(row.state).value} job"
                    )
                row = await crud.get_job(db, job_id)
                return Job.from_model(row)

    async def cancel(
        self,
        job_id: str,
        requester_id: Optional[str],
        is_admin: bool = False,
    ) -> Job:
        """
        Cancel a job on behalf of its owner or an admin.

        Raises:
            NotFoundError: unknown job
            AuthorizationError: requester is not the owner and not an admin
            StateError: job already finished
        """
        job = await self.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")

        if not is_admin and (job.user_id is None or job.user_id != requester_id):
            raise AuthorizationError("You can only cancel your own jobs")

        if job.is_terminal:
            raise StateError(f"Cannot cancel a {job.state.value} job")

        reason = "cancelled by admin" if is_admin else "cancelled by user"
        return await self.transition(job_id, JobState.CANCELLED, error=reason)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._session() as db:
            row = await crud.get_job(db, job_id)
            return Job.from_model(row) if row else None

    async def list_pending(self, limit: Optional[int] = None) -> List[Job]:
        """PENDING jobs in FIFO order."""
        async with self._session() as db:
            rows = await crud.get_jobs_by_state(db, JobState.PENDING, limit=limit)
            return [Job.from_model(r) for r in rows]

    async def list_processing(self) -> List[Job]:
        async with self._session() as db:
            rows = await crud.get_jobs_by_state(db, JobState.PROCESSING)
            return [Job.from_model(r) for r in rows]

    async def list_by_user(self, user_id: str, limit: int = 50) -> List[Job]:
        """A user's jobs, newest first."""
        async with self._session() as db:
            rows = await crud.get_user_jobs(db, user_id, limit=limit)
            return [Job.from_model(r) for r in rows]

    async def list_active(self) -> List[Job]:
        """Processing jobs first, then pending jobs in queue order."""
        async with self._session() as db:
            processing = await crud.get_jobs_by_state(db, JobState.PROCESSING)
            pending = await crud.get_jobs_by_state(db, JobState.PENDING)
            return [Job.from_model(r) for r in processing + pending]

    async def pending_position(self, job: Job) -> Optional[int]:
        """1-based queue position of a PENDING job, None otherwise."""
        if job.state != JobState.PENDING:
            return None
        async with self._session() as db:
            ahead = await crud.count_pending_ahead(db, job.created_at, job.id)
            return ahead + 1

    async def stats(self) -> Dict[str, int]:
        """Job counts by state, completions since midnight UTC, and total."""
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        async with self._session() as db:
            counts = await crud.count_jobs_by_state(db)
            completed_today = await crud.count_jobs_completed_since(db, today)

        result = {state.value: counts[state] for state in JobState}
        result["completed_today"] = completed_today
        result["total"] = sum(counts.values())

        metrics.PENDING_JOBS.set(counts[JobState.PENDING])
        metrics.PROCESSING_JOBS.set(counts[JobState.PROCESSING])
        return result
