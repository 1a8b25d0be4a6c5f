############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# models.py: Backend descriptor, health state, and API data models
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Backend data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


class BackendKind(str, Enum):
    """Where a backend runs."""
    LOCAL = "local"
    REMOTE = "remote"


class BackendHealth(str, Enum):
    """Backend health as seen by the last probe."""
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class BackendDescriptor:
    """Static identity of one compute backend (never mutated)."""

    id: str
    kind: BackendKind
    base_url: str
    priority: int = 0


@dataclass(frozen=True)
class BackendState:
    """Point-in-time health of a backend.

    Replaced as a whole by the health check so readers never see a
    half-updated record.
    """

    health: BackendHealth = BackendHealth.UNKNOWN
    last_checked_at: Optional[datetime] = None
    queue_depth: Optional[int] = None
    last_error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.health == BackendHealth.HEALTHY


@dataclass
class QueueSnapshot:
    """Contents of a backend's execution queue."""

    running: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    queue_remaining: Optional[int] = None

    @property
    def depth(self) -> int:
        """Jobs the backend still has to finish."""
        if self.queue_remaining is not None:
            return self.queue_remaining
        return len(self.running) + len(self.pending)

    def contains(self, prompt_id: str) -> bool:
        """Check whether a prompt is still running or waiting."""
        return prompt_id in self.running or prompt_id in self.pending


@dataclass
class HistoryEntry:
    """Outcome of one prompt from the backend's history."""

    prompt_id: str
    has_outputs: bool = False
    status: Optional[str] = None
    completed: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.has_outputs and self.error is None and self.status != "error"


@dataclass
class BackendCapabilities:
    """Models and node options advertised by a backend."""

    diffusion_models: List[str] = field(default_factory=list)
    text_encoders: List[str] = field(default_factory=list)
    vaes: List[str] = field(default_factory=list)
    upscale_models: List[str] = field(default_factory=list)
    clip_visions: List[str] = field(default_factory=list)
    loras: List[str] = field(default_factory=list)
    samplers: List[str] = field(default_factory=list)

    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
