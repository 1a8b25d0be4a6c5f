############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# conftest.py: Pytest configuration and shared test fixtures
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Pytest configuration and shared fixtures for GenRouter tests."""

from datetime import datetime, timezone
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from backend.app.core.backends.models import (
    BackendCapabilities,
    BackendDescriptor,
    BackendKind,
    QueueSnapshot,
)
from backend.app.core.backends.pool import ServerPool
from backend.app.core.jobs.store import JobStore
from backend.app.db.session import create_engine, create_session_factory, init_db

LOCAL = BackendDescriptor(
    id="local", kind=BackendKind.LOCAL, base_url="http://localhost:8188", priority=2
)
REMOTE = BackendDescriptor(
    id="remote-1", kind=BackendKind.REMOTE, base_url="http://remote:8188", priority=1
)


def make_backend_client(
    healthy: bool = True,
    depth: Optional[int] = 0,
    prompt_id: str = "prompt-1",
) -> MagicMock:
    """Mock backend client with every operation succeeding."""
    client = MagicMock()
    client.ping = AsyncMock(return_value=healthy)
    client.query_queue_depth = AsyncMock(return_value=depth)
    client.query_queue = AsyncMock(return_value=QueueSnapshot())
    client.submit_job = AsyncMock(return_value=prompt_id)
    client.get_history = AsyncMock(return_value=None)
    client.cancel_prompt = AsyncMock(return_value=True)
    client.list_capabilities = AsyncMock(return_value=BackendCapabilities())
    client.close = AsyncMock()
    return client


def make_pool(clients: dict, descriptors=None, **kwargs) -> ServerPool:
    """Pool over mock clients; descriptors default to LOCAL/REMOTE by id."""
    if descriptors is None:
        known = {LOCAL.id: LOCAL, REMOTE.id: REMOTE}
        descriptors = [known[backend_id] for backend_id in clients]
    return ServerPool(descriptors, clients=clients, **kwargs)


@pytest_asyncio.fixture
async def engine(tmp_path):
    """SQLite engine on a per-test file with the schema created.

    A file database gives every session its own connection, so tests that
    run the store and the monitor concurrently behave like production.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def mock_settings():
    """Create mock settings for testing."""
    settings = MagicMock()

    # Database settings
    settings.database_url = "sqlite+aiosqlite:///:memory:"
    settings.database_echo = False

    # Backends
    settings.comfyui_api_url = "http://localhost:8188"
    settings.comfyui_remote_urls = ["http://remote-a:8188", "http://remote-b:8188"]
    settings.local_backend_priority = 2
    settings.remote_backend_priority = 1
    settings.backend_request_timeout = 15.0
    settings.backend_retry_attempts = 2
    settings.backend_retry_backoff = 1.0
    settings.backend_ping_timeout = 2.0

    # Health and monitor
    settings.health_check_interval = 30.0
    settings.health_stale_after = 5.0
    settings.health_probe_timeout = 5.0
    settings.dispatch_interval = 5.0
    settings.dispatch_batch_size = 4
    settings.stuck_job_grace_seconds = 120.0
    settings.max_processing_seconds = 1800.0
    settings.max_active_jobs_per_user = 2

    return settings


@pytest.fixture
def local_backend() -> BackendDescriptor:
    return LOCAL


@pytest.fixture
def remote_backend() -> BackendDescriptor:
    return REMOTE


@pytest.fixture
def backend_client_factory():
    """Factory for mock backend clients."""
    return make_backend_client


@pytest.fixture
def pool_factory():
    """Factory for pools over mock clients."""
    return make_pool
