"""
Transfer Service Adapter
Exposes the transfer engine to the HTTP routes and the command line
"""

import logging
from typing import Optional

from ..config import SyncSettings, parse_size
from ..core.cancellation import CancellationToken
from ..models.local_store import LocalModelStore
from ..models.ollama_client import OllamaClient
from ..models.registry_client import RegistryClient
from ..models.transfer import TransferEngine
from ..schemas.transfer import RenameRequest, TransferRequest, TransferResult

logger = logging.getLogger(__name__)


def create_transfer_engine(settings: SyncSettings,
                           cancel_token: Optional[CancellationToken] = None) -> TransferEngine:
    """Engine wired to the configured local server, model store and registry"""
    local_client = OllamaClient(settings.ollama_host, timeout=settings.request_timeout, cancel_token=cancel_token)
    registry = RegistryClient(
        registry_url=settings.registry_url,
        hf_token=settings.huggingface_token,
        cancel_token=cancel_token,
    )
    return TransferEngine(
        local_client=local_client,
        store=LocalModelStore(settings.models_dir),
        registry=registry,
        buffer_size=settings.buffer_size,
        throttle=settings.throttle,
        cancel_token=cancel_token,
    )


class TransferService:
    """Adapter turning API requests into transfer engine calls"""

    def __init__(self, engine: TransferEngine):
        self.engine = engine
        logger.info("TransferService initialized")

    async def copy(self, request: TransferRequest, overwrite: bool = False) -> TransferResult:
        """Copy a model between the local store and inference servers"""
        throttle = parse_size(request.throttle) if request.throttle else None
        buffer_size = parse_size(request.buffer_size) if request.buffer_size else None
        logger.info(f"Copy requested: {request.source} -> {request.destination}")
        try:
            return await self.engine.copy(
                request.source,
                request.destination,
                throttle=throttle,
                buffer_size=buffer_size,
                overwrite=overwrite,
            )
        except Exception as e:
            logger.error(f"Copy {request.source} -> {request.destination} failed: {e}")
            raise

    async def rename(self, request: RenameRequest) -> None:
        logger.info(f"Rename requested: {request.source} -> {request.destination}")
        await self.engine.rename(request.source, request.destination)

    async def delete(self, model: str) -> bool:
        logger.info(f"Delete requested: {model}")
        return await self.engine.delete(model)

    async def close(self) -> None:
        """Close the engine's HTTP sessions"""
        await self.engine.local_client.close()
        await self.engine.registry.close()
