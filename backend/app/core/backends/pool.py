############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# pool.py: Backend pool with health tracking and selection
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Server pool - backend health tracking and best-backend selection."""

import asyncio
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from backend.app.core import metrics
from backend.app.core.backends.client import ComfyUIClient
from backend.app.core.backends.models import (
    BackendDescriptor,
    BackendHealth,
    BackendKind,
    BackendState,
)
from backend.app.core.errors import BackendClientError
from backend.app.logging_config import get_logger
from backend.app.settings import Settings

logger = get_logger(__name__)


def selection_key(descriptor: BackendDescriptor, state: BackendState) -> Tuple:
    """Sort key for backend selection; smaller is better.

    Unknown depth sorts after every known depth, then priority, then LOCAL
    before REMOTE, and the id makes the order total.
    """
    depth = state.queue_depth
    return (
        depth is None,
        depth if depth is not None else 0,
        descriptor.priority,
        descriptor.kind != BackendKind.LOCAL,
        descriptor.id,
    )


def rank_backends(
    entries: Iterable[Tuple[BackendDescriptor, BackendState]],
) -> List[BackendDescriptor]:
    """Order the healthy backends best first."""
    healthy = [(d, s) for d, s in entries if s.is_healthy]
    healthy.sort(key=lambda entry: selection_key(*entry))
    return [d for d, _ in healthy]


class ServerPool:
    """
    Fixed set of generation backends and their health.

    Descriptors never change after construction. Health lives in a separate
    table keyed by backend id; each probe replaces a backend's state as a
    whole, so readers see either the old or the new record.
    """

    def __init__(
        self,
        descriptors: Sequence[BackendDescriptor],
        clients: Optional[Dict[str, Any]] = None,
        health_check_interval: float = 30.0,
        stale_after: float = 5.0,
        probe_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        ids = [d.id for d in descriptors]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate backend ids: {ids}")
        if sum(1 for d in descriptors if d.kind == BackendKind.LOCAL) > 1:
            raise ValueError("At most one local backend may be configured")

        self._descriptors: Tuple[BackendDescriptor, ...] = tuple(descriptors)
        self._clients: Dict[str, Any] = dict(clients or {})
        for d in self._descriptors:
            if d.id not in self._clients:
                self._clients[d.id] = ComfyUIClient(d.base_url)

        self._states: Dict[str, BackendState] = {d.id: BackendState() for d in self._descriptors}
        self.health_check_interval = health_check_interval
        self.stale_after = stale_after
        self.probe_timeout = probe_timeout
        self._clock = clock
        self._last_check: Optional[float] = None
        self._lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServerPool":
        """Build the pool from the configured local and remote URLs."""
        descriptors: List[BackendDescriptor] = []
        if settings.comfyui_api_url:
            descriptors.append(
                BackendDescriptor(
                    id="local",
                    kind=BackendKind.LOCAL,
                    base_url=settings.comfyui_api_url.rstrip("/"),
                    priority=settings.local_backend_priority,
                )
            )
        for n, url in enumerate(settings.comfyui_remote_urls, start=1):
            descriptors.append(
                BackendDescriptor(
                    id=f"remote-{n}",
                    kind=BackendKind.REMOTE,
                    base_url=url.rstrip("/"),
                    priority=settings.remote_backend_priority,
                )
            )

        clients = {
            d.id: ComfyUIClient(
                d.base_url,
                timeout=settings.backend_request_timeout,
                max_retries=settings.backend_retry_attempts,
                backoff=settings.backend_retry_backoff,
                ping_timeout=settings.backend_ping_timeout,
            )
            for d in descriptors
        }

        return cls(
            descriptors,
            clients=clients,
            health_check_interval=settings.health_check_interval,
            stale_after=settings.health_stale_after,
            probe_timeout=settings.health_probe_timeout,
        )

    @property
    def descriptors(self) -> Tuple[BackendDescriptor, ...]:
        return self._descriptors

    def get_descriptor(self, backend_id: str) -> Optional[BackendDescriptor]:
        for d in self._descriptors:
            if d.id == backend_id:
                return d
        return None

    def client_for(self, backend_id: str) -> Optional[ComfyUIClient]:
        """Shared client for a backend, or None for an unknown id."""
        return self._clients.get(backend_id)

    def get_state(self, backend_id: str) -> Optional[BackendState]:
        return self._states.get(backend_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run an initial health check and start the background loop."""
        if self._poll_task and not self._poll_task.done():
            return
        await self.check_health()
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(
            "server_pool_started",
            backends=[d.id for d in self._descriptors],
            interval=self.health_check_interval,
        )

    async def stop(self) -> None:
        """Stop the health loop."""
        if self._poll_task:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None
        logger.info("server_pool_stopped")

    async def close(self) -> None:
        """Stop polling and close every backend client."""
        await self.stop()
        for client in self._clients.values():
            await client.close()

    async def _poll_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.health_check_interval)
                await self.check_health()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("health_loop_error", error=str(e))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def check_health(self) -> None:
        """Probe every backend concurrently and replace their states."""
        async with self._lock:
            results = await asyncio.gather(
                *(self._probe_with_timeout(d) for d in self._descriptors),
                return_exceptions=True,
            )
            now = datetime.now(timezone.utc)
            for descriptor, result in zip(self._descriptors, results):
                if isinstance(result, BaseException):
                    result = BackendState(
                        health=BackendHealth.UNHEALTHY,
                        last_checked_at=now,
                        last_error=str(result) or type(result).__name__,
                    )
                previous = self._states.get(descriptor.id)
                self._states[descriptor.id] = result
                if previous is None or previous.health != result.health:
                    logger.info(
                        "backend_health_changed",
                        backend_id=descriptor.id,
                        health=result.health.value,
                        error=result.last_error,
                    )
            self._last_check = self._clock()

        metrics.HEALTHY_BACKENDS.set(
            sum(1 for s in self._states.values() if s.is_healthy)
        )

    async def _probe_with_timeout(self, descriptor: BackendDescriptor) -> BackendState:
        try:
            return await asyncio.wait_for(self._probe(descriptor), self.probe_timeout)
        except asyncio.TimeoutError:
            return BackendState(
                health=BackendHealth.UNHEALTHY,
                last_checked_at=datetime.now(timezone.utc),
                last_error=f"health probe timed out after {self.probe_timeout}s",
            )

    async def _probe(self, descriptor: BackendDescriptor) -> BackendState:
        """Ping a backend, then fetch its queue depth best-effort."""
        client = self._clients[descriptor.id]
        started = time.monotonic()

        if not await client.ping():
            return BackendState(
                health=BackendHealth.UNHEALTHY,
                last_checked_at=datetime.now(timezone.utc),
                last_error="ping failed",
            )

        depth: Optional[int] = None
        try:
            depth = await client.query_queue_depth(deadline=started + self.probe_timeout)
        except Exception as e:
            logger.debug("queue_depth_unavailable", backend_id=descriptor.id, error=str(e))

        return BackendState(
            health=BackendHealth.HEALTHY,
            last_checked_at=datetime.now(timezone.utc),
            queue_depth=depth,
        )

    def is_stale(self) -> bool:
        if self._last_check is None:
            return True
        return self._clock() - self._last_check >= self.stale_after

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_best(self) -> Optional[BackendDescriptor]:
        """
        Pick the healthy backend with the shortest queue.

        Re-probes first when the cached health is stale. Never raises.

        Returns:
            The chosen descriptor, or None if no backend is healthy
        """
        try:
            if self.is_stale():
                await self.check_health()
            ranked = rank_backends(self.snapshot())
        except Exception as e:
            logger.error("backend_selection_error", error=str(e))
            return None

        return ranked[0] if ranked else None

    def reserve(self, backend_id: str) -> None:
        """Count a just-submitted prompt against a backend's cached depth."""
        state = self._states.get(backend_id)
        if state is None or state.queue_depth is None:
            return
        self._states[backend_id] = replace(state, queue_depth=state.queue_depth + 1)

    async def cancel_prompt(self, backend_id: str, prompt_id: str) -> bool:
        """Best-effort removal of a prompt from a backend; failures are logged."""
        client = self.client_for(backend_id)
        if client is None:
            return False
        try:
            return await client.cancel_prompt(prompt_id)
        except BackendClientError as e:
            logger.warning(
                "backend_cancel_failed",
                backend_id=backend_id,
                prompt_id=prompt_id,
                error=str(e),
            )
            return False

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def snapshot(self) -> List[Tuple[BackendDescriptor, BackendState]]:
        """Consistent copy of every descriptor with its current state."""
        states = dict(self._states)
        return [(d, states[d.id]) for d in self._descriptors]

    def stats(self) -> Dict[str, Any]:
        entries = self.snapshot()
        healthy = [d for d, s in entries if s.is_healthy]
        return {
            "total": len(entries),
            "healthy": len(healthy),
            "local": {
                "total": sum(1 for d, _ in entries if d.kind == BackendKind.LOCAL),
                "healthy": sum(1 for d in healthy if d.kind == BackendKind.LOCAL),
            },
            "remote": {
                "total": sum(1 for d, _ in entries if d.kind == BackendKind.REMOTE),
                "healthy": sum(1 for d in healthy if d.kind == BackendKind.REMOTE),
            },
            "backends": [
                {
                    "id": d.id,
                    "kind": d.kind.value,
                    "url": d.base_url,
                    "priority": d.priority,
                    "health": s.health.value,
                    "queue_depth": s.queue_depth,
                    "last_checked_at": s.last_checked_at.isoformat() if s.last_checked_at else None,
                    "last_error": s.last_error,
                }
                for d, s in entries
            ],
        }
