############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# health.py: Health check and Prometheus metrics endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Health check and metrics endpoints."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from backend.app.api.auth import get_orchestrator
from backend.app.core.orchestrator import Orchestrator
from backend.app.logging_config import get_logger
from backend.app.settings import get_settings

logger = get_logger(__name__)
router = APIRouter(tags=["health"])


@router.get("/healthz")
async def liveness_probe() -> Dict[str, str]:
    """
    Liveness probe - checks if the application is running.

    Returns 200 if the application is alive.
    """
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/readyz")
async def readiness_probe(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """
    Readiness probe - checks if the application is ready to serve traffic.

    Checks:
    - Database connectivity
    - At least one healthy backend available
    """
    checks = await orchestrator.readiness()
    all_ready = all(checks.values())

    body: Dict[str, Any] = {
        "status": "ready" if all_ready else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if all_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )


@router.get("/metrics")
async def prometheus_metrics(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")

    # Refresh the job gauges
    try:
        await orchestrator.store.stats()
    except Exception as e:
        logger.warning("metrics_refresh_error", error=str(e))

    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/status")
async def service_status(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    """High-level summary of the service, its backends and its queue."""
    settings = get_settings()
    pool = orchestrator.pool.stats()
    queue = await orchestrator.list_stats()

    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "backends": {"total": pool["total"], "healthy": pool["healthy"]},
        "queue": queue.model_dump(),
        "monitor": orchestrator.monitor.status().model_dump(mode="json"),
    }
