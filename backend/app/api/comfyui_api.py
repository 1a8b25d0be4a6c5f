############################################################
#
# genrouter - Generation Job Orchestrator and Backend Router
#
# comfyui_api.py: Backend status and capability discovery endpoints
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Backend endpoints."""

from typing import Dict, List

from fastapi import APIRouter, Depends

from backend.app.api.auth import get_orchestrator
from backend.app.core.orchestrator import Orchestrator
from backend.app.core.schemas import ServerStatus

router = APIRouter(prefix="/api/comfyui", tags=["backends"])


@router.get("/status", response_model=ServerStatus)
async def backend_status(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Health and queue depth of every configured backend."""
    return orchestrator.server_status()


@router.get("/models")
async def list_models(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Dict[str, List[str]]:
    caps = await orchestrator.capabilities()
    return {
        "diffusion_models": caps.diffusion_models,
        "text_encoders": caps.text_encoders,
        "vaes": caps.vaes,
        "upscale_models": caps.upscale_models,
        "clip_visions": caps.clip_visions,
    }


@router.get("/loras")
async def list_loras(orchestrator: Orchestrator = Depends(get_orchestrator)) -> Dict[str, List[str]]:
    caps = await orchestrator.capabilities()
    return {"loras": caps.loras}


@router.get("/samplers")
async def list_samplers(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Dict[str, List[str]]:
    caps = await orchestrator.capabilities()
    return {"samplers": caps.samplers}
