"""
Transfer API routes
Copies, renames and deletes models on the local store and inference servers
"""

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_transfer_service
from ..schemas.transfer import RenameRequest, TransferRequest, TransferResult
from ..services.transfer_service import TransferService

router = APIRouter(prefix="/transfers", tags=["transfers"])


@router.post("/", response_model=TransferResult)
async def copy_model(
    request: TransferRequest,
    overwrite: bool = Query(False, description="Replace an existing destination model"),
    transfer_service: TransferService = Depends(get_transfer_service)
):
    """Copy a model; layers already on the destination are skipped"""
    return await transfer_service.copy(request, overwrite=overwrite)


@router.post("/rename")
async def rename_model(
    request: RenameRequest,
    transfer_service: TransferService = Depends(get_transfer_service)
):
    """Rename a model on one server; the original is kept unless the copy verifies"""
    await transfer_service.rename(request)
    return {"success": True, "source": request.source, "destination": request.destination}


@router.delete("/models/{model:path}")
async def delete_model(
    model: str,
    transfer_service: TransferService = Depends(get_transfer_service)
):
    """Delete a model, local or http(s)://host:port/model[:tag]"""
    removed = await transfer_service.delete(model)
    return {"success": removed, "model": model}
