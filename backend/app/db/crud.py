############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# crud.py: Database CRUD operations for generation jobs
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Database CRUD operations for GenRouter."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.jobs.states import ACTIVE_STATES, JobState
from backend.app.db.base import utcnow
from backend.app.db.models import GenerationJob


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware (SQLite returns naive datetimes)."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


_FIFO = (GenerationJob.created_at.asc(), GenerationJob.id.asc())


async def create_job(
    db: AsyncSession,
    user_id: Optional[str],
    prompt: Any,
    created_at: Optional[datetime] = None,
) -> GenerationJob:
    """Insert a new PENDING job."""
    now = created_at or utcnow()
    job = GenerationJob(
        user_id=user_id,
        prompt=prompt,
        state=JobState.PENDING,
        attempts=0,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    await db.flush()
    return job


async def get_job(db: AsyncSession, job_id: str) -> Optional[GenerationJob]:
    result = await db.execute(select(GenerationJob).where(GenerationJob.id == job_id))
    return result.scalar_one_or_none()


async def update_job_state(
    db: AsyncSession,
    job_id: str,
    expected_state: JobState,
    new_state: JobState,
    **values: Any,
) -> bool:
    """
    Compare-and-swap a job's state.

    The row only changes if it is still in expected_state.

    Returns:
        True if exactly one row was updated
    """
    fields = {"updated_at": utcnow(), **values}
    result = await db.execute(
        update(GenerationJob)
        .where(
            and_(
                GenerationJob.id == job_id,
                GenerationJob.state == expected_state,
            )
        )
        .values(state=new_state, **fields)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def increment_job_attempts(
    db: AsyncSession,
    job_id: str,
    error: Optional[str],
) -> bool:
    """Count a failed dispatch on a PENDING job and record its error."""
    result = await db.execute(
        update(GenerationJob)
        .where(
            and_(
                GenerationJob.id == job_id,
                GenerationJob.state == JobState.PENDING,
            )
        )
        .values(
            attempts=GenerationJob.attempts + 1,
            error=error,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def get_jobs_by_state(
    db: AsyncSession,
    state: JobState,
    limit: Optional[int] = None,
) -> List[GenerationJob]:
    """Jobs in a state, oldest first."""
    query = select(GenerationJob).where(GenerationJob.state == state).order_by(*_FIFO)
    if limit is not None:
        query = query.limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_user_jobs(
    db: AsyncSession,
    user_id: str,
    limit: int = 50,
) -> List[GenerationJob]:
    """A user's jobs, newest first."""
    result = await db.execute(
        select(GenerationJob)
        .where(GenerationJob.user_id == user_id)
        .order_by(GenerationJob.created_at.desc(), GenerationJob.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def count_user_active_jobs(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        select(func.count(GenerationJob.id)).where(
            and_(
                GenerationJob.user_id == user_id,
                GenerationJob.state.in_(list(ACTIVE_STATES)),
            )
        )
    )
    return int(result.scalar_one())


async def count_jobs_by_state(db: AsyncSession) -> Dict[JobState, int]:
    result = await db.execute(
        select(GenerationJob.state, func.count(GenerationJob.id)).group_by(GenerationJob.state)
    )
    counts = {state: 0 for state in JobState}
    for state, count in result.all():
        counts[JobState(state)] = int(count)
    return counts


async def count_jobs_completed_since(db: AsyncSession, since: datetime) -> int:
    result = await db.execute(
        select(func.count(GenerationJob.id)).where(
            and_(
                GenerationJob.state == JobState.COMPLETED,
                GenerationJob.completed_at >= since,
            )
        )
    )
    return int(result.scalar_one())


async def count_pending_ahead(
    db: AsyncSession,
    created_at: datetime,
    job_id: str,
) -> int:
    """Number of PENDING jobs ahead of the given one in FIFO order."""
    result = await db.execute(
        select(func.count(GenerationJob.id)).where(
            and_(
                GenerationJob.state == JobState.PENDING,
                or_(
                    GenerationJob.created_at < created_at,
                    and_(
                        GenerationJob.created_at == created_at,
                        GenerationJob.id < job_id,
                    ),
                ),
            )
        )
    )
    return int(result.scalar_one())
