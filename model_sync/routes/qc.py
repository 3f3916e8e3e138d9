"""
Quality comparison API routes
Tag resolution, background QC runs and persisted result documents
"""

from typing import List

from fastapi import APIRouter, Depends, Query

from ..core.dependencies import get_qc_service
from ..schemas.qc import QcResolveRequest, QcResultsFile, QcRunRequest, QcRunStatus
from ..services.qc_service import QcService

router = APIRouter(prefix="/qc", tags=["qc"])


@router.post("/resolve")
async def resolve_tags(
    request: QcResolveRequest,
    qc_service: QcService = Depends(get_qc_service)
):
    """Expand wildcard tag patterns"""
    tags = await qc_service.resolve(request.model, request.patterns, local=request.local)
    return {"model": request.model, "tags": tags}


@router.post("/runs", response_model=QcRunStatus, status_code=202)
async def start_run(
    request: QcRunRequest,
    qc_service: QcService = Depends(get_qc_service)
):
    """Start a QC run in the background"""
    return await qc_service.start_run(request)


@router.get("/runs", response_model=List[QcRunStatus])
async def list_runs(qc_service: QcService = Depends(get_qc_service)):
    return qc_service.list_runs()


@router.get("/runs/{run_id}", response_model=QcRunStatus)
async def get_run(run_id: str, qc_service: QcService = Depends(get_qc_service)):
    """State, exit code and output path of a run"""
    return qc_service.get_run(run_id)


@router.delete("/runs/{run_id}", response_model=QcRunStatus)
async def cancel_run(run_id: str, qc_service: QcService = Depends(get_qc_service)):
    """Request cancellation; a second request forces it"""
    return qc_service.cancel_run(run_id)


@router.get("/results", response_model=QcResultsFile)
async def get_results(
    path: str = Query(..., description="Path of a .qc.json results file"),
    qc_service: QcService = Depends(get_qc_service)
):
    """Load a results file with freshly computed scores"""
    return qc_service.load_results(path)
