"""
Dependency injection for Model Sync services
"""

from fastapi import Request
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..config import SyncSettings
    from ..services.qc_service import QcService
    from ..services.transfer_service import TransferService


def get_transfer_service(request: Request) -> "TransferService":
    """Dependency to get transfer service from app state"""
    return request.app.state.transfer_service


def get_qc_service(request: Request) -> "QcService":
    """Dependency to get QC service from app state"""
    return request.app.state.qc_service


def get_app_settings(request: Request) -> "SyncSettings":
    return request.app.state.settings
