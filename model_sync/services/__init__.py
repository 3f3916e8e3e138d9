"""
Service layer for model sync
Scoring, judging, the QC run state machine and the adapters used by routes and CLI
"""

from .scoring import ScoringEngine
from .judge import JudgeOrchestrator
from .qc_runner import QcRunner
from .transfer_service import TransferService
from .qc_service import QcService

__all__ = ["ScoringEngine", "JudgeOrchestrator", "QcRunner", "TransferService", "QcService"]
