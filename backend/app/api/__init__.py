############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# __init__.py: API router aggregation
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""API endpoints for GenRouter."""

from fastapi import APIRouter

from backend.app.api.comfyui_api import router as comfyui_router
from backend.app.api.health import router as health_router
from backend.app.api.jobs_api import router as jobs_router
from backend.app.api.queue_api import router as queue_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(health_router)
api_router.include_router(jobs_router)
api_router.include_router(queue_router)
api_router.include_router(comfyui_router)

__all__ = ["api_router"]
