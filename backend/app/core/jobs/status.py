############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# status.py: Client-visible projections of job records
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Status façade - turns job records into client payloads."""

from typing import Dict, List, Optional

from backend.app.core.jobs.states import JobState
from backend.app.core.jobs.store import Job, JobStore
from backend.app.core.schemas import JobStatus, QueueEntry, QueueStats, UserJob


def to_job_status(job: Job, position: Optional[int] = None) -> JobStatus:
    return JobStatus(
        job_id=job.id,
        state=job.state,
        created_at=job.created_at,
        updated_at=job.updated_at,
        error=job.error,
        backend_prompt_id=job.backend_prompt_id,
        attempts=job.attempts,
        position=position if job.state == JobState.PENDING else None,
    )


def to_user_job(job: Job) -> UserJob:
    return UserJob(
        job_id=job.id,
        state=job.state,
        prompt=job.prompt,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        error=job.error,
    )


def to_queue_stats(stats: Dict[str, int]) -> QueueStats:
    return QueueStats(
        pending=stats.get(JobState.PENDING.value, 0),
        processing=stats.get(JobState.PROCESSING.value, 0),
        completed_today=stats.get("completed_today", 0),
        total=stats.get("total", 0),
    )


def to_queue_entries(jobs: List[Job]) -> List[QueueEntry]:
    """Project an active listing (processing first, then pending in order)."""
    entries = []
    position = 0
    for job in jobs:
        if job.state == JobState.PENDING:
            position += 1
        entries.append(
            QueueEntry(
                job_id=job.id,
                user_id=job.user_id,
                state=job.state,
                position=position if job.state == JobState.PENDING else None,
                backend_id=job.backend_id,
                created_at=job.created_at,
                started_at=job.started_at,
            )
        )
    return entries


class StatusFacade:
    """Read-only views over the job store."""

    def __init__(self, store: JobStore):
        self._store = store

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = await self._store.get(job_id)
        if job is None:
            return None
        position = await self._store.pending_position(job)
        return to_job_status(job, position)

    async def list_stats(self) -> QueueStats:
        return to_queue_stats(await self._store.stats())

    async def list_user_jobs(self, user_id: str, limit: int = 50) -> List[UserJob]:
        return [to_user_job(j) for j in await self._store.list_by_user(user_id, limit=limit)]

    async def list_queue(self) -> List[QueueEntry]:
        return to_queue_entries(await self._store.list_active())
