"""
FastAPI routes for model sync
Separated by concern: health, transfers and quality comparison
"""

from .health import router as health_router
from .transfers import router as transfers_router
from .qc import router as qc_router

__all__ = ["health_router", "transfers_router", "qc_router"]
