############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# states.py: Job lifecycle states and legal transitions
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Job lifecycle state machine."""

from enum import Enum
from typing import Dict, FrozenSet

from backend.app.core.errors import StateError


class JobState(str, Enum):
    """Lifecycle state of a generation job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[JobState] = frozenset(
    {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}
)

ACTIVE_STATES: FrozenSet[JobState] = frozenset({JobState.PENDING, JobState.PROCESSING})

LEGAL_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.PROCESSING, JobState.CANCELLED}),
    JobState.PROCESSING: frozenset(
        {JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED}
    ),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


def is_legal_transition(current: JobState, new: JobState) -> bool:
    return new in LEGAL_TRANSITIONS[current]


def validate_transition(current: JobState, new: JobState) -> None:
    """Raise StateError unless current -> new is a legal edge."""
    if not is_legal_transition(current, new):
        raise StateError(
            f"Illegal job transition {current.value} -> {new.value}"
        )
