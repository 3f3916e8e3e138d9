"""
Health API routes
Reports service status and inference server reachability
"""

from fastapi import APIRouter, Depends

from .. import __version__
from ..config import SyncSettings
from ..core.dependencies import get_app_settings
from ..core.errors import NetworkError
from ..models.ollama_client import OllamaClient

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/")
async def health_check(settings: SyncSettings = Depends(get_app_settings)):
    """Basic health check including the inference server version"""
    server = {"url": settings.ollama_host, "reachable": False, "version": None}
    async with OllamaClient(settings.ollama_host, timeout=10) as client:
        try:
            server["version"] = await client.version()
            server["reachable"] = True
        except NetworkError as e:
            server["error"] = str(e)
    return {
        "status": "healthy" if server["reachable"] else "degraded",
        "service": "model-sync",
        "version": __version__,
        "inference_server": server,
    }


@router.get("/liveness")
async def liveness_check():
    """Liveness check endpoint"""
    return {"status": "alive", "service": "model-sync"}
