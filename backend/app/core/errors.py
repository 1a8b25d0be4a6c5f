############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# errors.py: Exception hierarchy for the job orchestrator
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Exception hierarchy for the job orchestrator.

Caller-facing errors (validation, authorization, state, not found) are
surfaced to the API and never retried. Backend errors are transient from
the orchestrator's point of view: the queue monitor keeps the job pending
and tries again on a later tick.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class ValidationError(OrchestratorError):
    """Bad input to enqueue or cancel."""


class NotFoundError(OrchestratorError):
    """The referenced job does not exist."""


class AuthorizationError(OrchestratorError):
    """The requester is neither the job owner nor an admin."""


class StateError(OrchestratorError):
    """Illegal job state transition, including cancelling a terminal job."""


class BackendUnavailableError(OrchestratorError):
    """No healthy backend can take work right now."""


class BackendClientError(OrchestratorError):
    """A backend HTTP operation failed."""

    def __init__(self, message: str, base_url: Optional[str] = None):
        super().__init__(message)
        self.base_url = base_url


class BackendTimeoutError(BackendClientError):
    """A backend call exceeded its timeout or the caller's deadline."""


class BackendResponseError(BackendClientError):
    """The backend answered with an error status."""

    def __init__(self, message: str, status_code: int, base_url: Optional[str] = None):
        super().__init__(message, base_url=base_url)
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        """Server-side errors may clear up; client errors never will."""
        return self.status_code >= 500


class SubmissionError(BackendClientError):
    """The backend rejected a prompt or could not be reached after retries."""
