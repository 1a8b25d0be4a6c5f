############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# __init__.py: Backends package exports
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Generation backends: HTTP client, health tracking and selection."""

from backend.app.core.backends.client import ComfyUIClient
from backend.app.core.backends.models import (
    BackendCapabilities,
    BackendDescriptor,
    BackendHealth,
    BackendKind,
    BackendState,
    HistoryEntry,
    QueueSnapshot,
)
from backend.app.core.backends.pool import ServerPool, rank_backends, selection_key

__all__ = [
    "BackendCapabilities",
    "BackendDescriptor",
    "BackendHealth",
    "BackendKind",
    "BackendState",
    "ComfyUIClient",
    "HistoryEntry",
    "QueueSnapshot",
    "ServerPool",
    "rank_backends",
    "selection_key",
]
