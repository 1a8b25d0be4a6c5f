############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# queue_api.py: Queue listing, statistics, cancellation and monitor control
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Queue endpoints."""

from typing import List

from fastapi import APIRouter, Depends

from backend.app.api.auth import Requester, get_orchestrator, require_admin, require_user
from backend.app.core.orchestrator import Orchestrator
from backend.app.core.schemas import (
    CancelResponse,
    MonitorAction,
    MonitorStatus,
    QueueEntry,
    QueueStats,
)
from backend.app.logging_config import get_logger

logger = get_logger(__name__)
router = APIRouter(prefix="/api/queue", tags=["queue"])


@router.get("", response_model=List[QueueEntry])
async def list_queue(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Active jobs: processing first, then pending in dispatch order."""
    return await orchestrator.list_queue()


@router.get("/stats", response_model=QueueStats)
async def queue_stats(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.list_stats()


@router.get("/monitor", response_model=MonitorStatus)
async def monitor_status(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.monitor.status()


@router.post("/monitor", response_model=MonitorStatus)
async def control_monitor(
    body: MonitorAction,
    admin: Requester = Depends(require_admin()),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Start or stop the queue monitor.

    Requires admin role.
    """
    if body.action == "start":
        await orchestrator.monitor.start()
    else:
        await orchestrator.monitor.stop()

    logger.info("queue_monitor_controlled", admin_id=admin.user_id, action=body.action)
    return orchestrator.monitor.status()


@router.delete("/{job_id}", response_model=CancelResponse)
async def cancel_job(
    job_id: str,
    requester: Requester = Depends(require_user),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """Cancel a pending or processing job owned by the caller (or any job, for admins)."""
    job = await orchestrator.cancel(job_id, requester.user_id, is_admin=requester.is_admin)
    return CancelResponse(job_id=job.id, state=job.state, message="Job cancelled")
