############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# schemas.py: Request/response schemas for the orchestrator API
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Client-visible request and response schemas."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from backend.app.core.jobs.states import JobState


class GenerateRequest(BaseModel):
    """Request to queue a generation job."""
    prompt: Union[str, Dict[str, Any], List[Any]] = Field(
        ..., description="Workflow payload forwarded to the backend as-is"
    )


class GenerateResponse(BaseModel):
    job_id: str
    state: JobState
    position: Optional[int] = None
    created_at: datetime


class JobStatus(BaseModel):
    """Status of one job as seen by its submitter."""
    job_id: str
    state: JobState
    created_at: datetime
    updated_at: datetime
    error: Optional[str] = None
    backend_prompt_id: Optional[str] = None
    attempts: int = 0
    position: Optional[int] = None  # only while pending


class UserJob(BaseModel):
    job_id: str
    state: JobState
    prompt: Any
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class QueueEntry(BaseModel):
    """One row of the active queue listing."""
    job_id: str
    user_id: Optional[str]
    state: JobState
    position: Optional[int] = None
    backend_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None


class QueueStats(BaseModel):
    pending: int
    processing: int
    completed_today: int
    total: int


class CancelResponse(BaseModel):
    job_id: str
    state: JobState
    message: str


class MonitorStatus(BaseModel):
    running: bool
    active_loops: int
    interval: float
    ticks: int
    last_tick_at: Optional[datetime] = None
    polled: int = 0


class MonitorAction(BaseModel):
    action: Literal["start", "stop"]


class BackendStatus(BaseModel):
    id: str
    kind: str
    url: str
    priority: int
    health: str
    queue_depth: Optional[int] = None
    last_checked_at: Optional[str] = None
    last_error: Optional[str] = None


class ServerStatus(BaseModel):
    """Pool summary for the backend status endpoint."""
    total: int
    healthy: int
    local: Dict[str, int]
    remote: Dict[str, int]
    backends: List[BackendStatus]
