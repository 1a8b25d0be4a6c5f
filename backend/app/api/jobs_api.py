############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# jobs_api.py: Job submission and status endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Generation job endpoints."""

from typing import List

from fastapi import APIRouter, Depends, Query, status

from backend.app.api.auth import Requester, get_orchestrator, require_user
from backend.app.core.orchestrator import Orchestrator
from backend.app.core.schemas import GenerateRequest, GenerateResponse, JobStatus, UserJob
from backend.app.logging_config import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["jobs"])


@router.post(
    "/api/generate",
    response_model=GenerateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def generate(
    body: GenerateRequest,
    requester: Requester = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Queue a generation job.

    Returns immediately with the job ID; poll the status endpoint for
    progress.
    """
    job = await orchestrator.enqueue(requester.user_id, body.prompt)
    position = await orchestrator.store.pending_position(job)
    return GenerateResponse(
        job_id=job.id,
        state=job.state,
        position=position,
        created_at=job.created_at,
    )


@router.get("/api/generate/status/{job_id}", response_model=JobStatus)
async def generation_status(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Get the status of a job."""
    return await orchestrator.get_status(job_id)


@router.get("/api/user/jobs", response_model=List[UserJob])
async def user_jobs(
    limit: int = Query(50, ge=1, le=500),
    requester: Requester = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """List the caller's jobs, newest first."""
    return await orchestrator.list_user_jobs(requester.user_id, limit=limit)
