"""
FastAPI application entry point for Model Sync
Implements lifespan management, middleware and error mapping
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from . import __version__
from .config import get_settings
from .core.errors import (
    AbortRun, DestinationAlreadyExists, ModelSyncError, NotFoundError, ProviderConfigError
)
from .core.logging_config import setup_logging
from .routes import health_router, qc_router, transfers_router

logger = structlog.get_logger(__name__)


def error_status(exc: Exception) -> int:
    """HTTP status for an error of the taxonomy"""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, DestinationAlreadyExists):
        return 409
    if isinstance(exc, (AbortRun, ProviderConfigError, ValueError)):
        return 400
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Starting Model Sync application")
    from .services import QcService, TransferService
    from .services.transfer_service import create_transfer_engine

    settings = app.state.settings
    transfer_service = TransferService(create_transfer_engine(settings))
    qc_service = QcService(settings)
    app.state.transfer_service = transfer_service
    app.state.qc_service = qc_service

    logger.info("Model Sync startup completed",
                inference_server=settings.ollama_host,
                registry=settings.registry_url,
                qc_output_dir=str(settings.qc_output_dir))
    try:
        yield
    finally:
        logger.info("Shutting down Model Sync application")
        await qc_service.shutdown()
        await transfer_service.close()


def create_app(settings=None) -> FastAPI:
    """Create and configure FastAPI application"""
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Model Sync",
        description="Incremental model transfer and quantization quality comparison",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.include_router(health_router)
    app.include_router(transfers_router)
    app.include_router(qc_router)

    @app.exception_handler(ModelSyncError)
    async def model_sync_exception_handler(request: Request, exc: ModelSyncError):
        status = error_status(exc)
        log = logger.warning if status < 500 else logger.error
        log("Request failed", method=request.method, url=str(request.url),
            error_type=type(exc).__name__, error=str(exc))
        return JSONResponse(
            status_code=status,
            content={"success": False, "error": type(exc).__name__, "message": str(exc)}
        )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "ValueError", "message": str(exc)}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for unhandled errors"""
        logger.error("Unhandled exception",
                     method=request.method,
                     url=str(request.url),
                     error=str(exc),
                     exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "message": "Internal server error",
                "error": "An unexpected error occurred"
            }
        )

    @app.get("/")
    async def root():
        """Root endpoint with API information"""
        return {
            "service": "Model Sync",
            "version": __version__,
            "endpoints": {
                "health": "/health",
                "transfers": "/transfers",
                "qc": "/qc",
                "docs": "/docs"
            }
        }

    return app


def main():
    """Main entry point for running the application"""
    settings = get_settings()
    uvicorn.run(
        "model_sync.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
