############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# orchestrator.py: Process-owned composition of pool, store and monitor
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Orchestrator - the one object the application holds at runtime.

Built once at startup, stored on the FastAPI application state and passed
by reference to whatever needs it. Owns the database engine, the backend
pool, the job store and the queue monitor.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.backends.models import BackendCapabilities
from backend.app.core.backends.pool import ServerPool
from backend.app.core.errors import BackendUnavailableError, NotFoundError
from backend.app.core.jobs.monitor import QueueMonitor
from backend.app.core.jobs.status import StatusFacade
from backend.app.core.jobs.store import Job, JobStore
from backend.app.core.schemas import JobStatus, QueueEntry, QueueStats, ServerStatus, UserJob
from backend.app.db.session import create_engine, create_session_factory, init_db
from backend.app.logging_config import get_logger
from backend.app.settings import Settings

logger = get_logger(__name__)


class Orchestrator:
    """Entry point for every inbound operation on the job queue."""

    def __init__(
        self,
        store: JobStore,
        pool: ServerPool,
        monitor: QueueMonitor,
        engine: Optional[AsyncEngine] = None,
    ):
        self.store = store
        self.pool = pool
        self.monitor = monitor
        self.status = StatusFacade(store)
        self._engine = engine
        self._running = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "Orchestrator":
        engine = create_engine(settings.database_url, echo=settings.database_echo)
        store = JobStore(
            create_session_factory(engine),
            max_active_jobs_per_user=settings.max_active_jobs_per_user,
        )
        pool = ServerPool.from_settings(settings)
        monitor = QueueMonitor(
            store,
            pool,
            interval=settings.dispatch_interval,
            batch_size=settings.dispatch_batch_size,
            stuck_grace_seconds=settings.stuck_job_grace_seconds,
            max_processing_seconds=settings.max_processing_seconds,
        )
        return cls(store, pool, monitor, engine=engine)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Create tables if needed, then start health checks and the monitor."""
        if self._running:
            return
        if self._engine is not None:
            await init_db(self._engine)
        await self.pool.start()
        await self.monitor.start()
        self._running = True
        logger.info(
            "orchestrator_started",
            backends=[d.id for d in self.pool.descriptors],
        )

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.pool.close()
        if self._engine is not None:
            await self._engine.dispose()
        self._running = False
        logger.info("orchestrator_stopped")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def enqueue(self, user_id: Optional[str], prompt: Any) -> Job:
        job = await self.store.enqueue(user_id, prompt)
        self.monitor.wake()
        return job

    async def cancel(
        self,
        job_id: str,
        requester_id: Optional[str],
        is_admin: bool = False,
    ) -> Job:
        """
        Cancel a job.

        A PENDING job never reached a backend, so nothing else happens. A
        PROCESSING job is also removed from its backend, best effort.
        """
        job = await self.store.cancel(job_id, requester_id, is_admin=is_admin)
        if job.backend_id and job.backend_prompt_id:
            await self.pool.cancel_prompt(job.backend_id, job.backend_prompt_id)
        return job

    async def get_status(self, job_id: str) -> JobStatus:
        status = await self.status.get_status(job_id)
        if status is None:
            raise NotFoundError(f"Job {job_id} not found")
        return status

    async def list_stats(self) -> QueueStats:
        return await self.status.list_stats()

    async def list_user_jobs(self, user_id: str, limit: int = 50) -> List[UserJob]:
        return await self.status.list_user_jobs(user_id, limit=limit)

    async def list_queue(self) -> List[QueueEntry]:
        return await self.status.list_queue()

    # ------------------------------------------------------------------
    # Backends
    # ------------------------------------------------------------------

    def server_status(self) -> ServerStatus:
        return ServerStatus(**self.pool.stats())

    async def capabilities(self) -> BackendCapabilities:
        """
        Models, LoRAs and samplers of the best available backend.

        Raises:
            BackendUnavailableError: no healthy backend
        """
        descriptor = await self.pool.select_best()
        if descriptor is None:
            raise BackendUnavailableError("No healthy backend available")
        client = self.pool.client_for(descriptor.id)
        return await client.list_capabilities()

    async def readiness(self) -> Dict[str, bool]:
        """Checks for the readiness probe."""
        checks = {"database": False, "backends": False}
        try:
            await self.store.stats()
            checks["database"] = True
        except Exception as e:
            logger.warning("readiness_database_error", error=str(e))
        checks["backends"] = any(s.is_healthy for _, s in self.pool.snapshot())
        return checks
