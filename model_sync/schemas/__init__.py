"""
Pydantic schemas for model sync
Transfer data model and the persisted QC result document
"""

from .transfer import *
from .qc import *

__all__ = [
    "EndpointKind", "Layer", "Manifest", "ModelRef", "split_tag",
    "TransferProgress", "TransferResult", "TransferRequest", "RenameRequest",
    "FILE_LAYER_NAMES",
    "BestAnswer", "JudgeMode",
    "SuiteQuestion", "SuiteCategory", "QuestionSuite",
    "TokenLogprob", "JudgmentResult", "QuestionResult", "QcTestOptions",
    "QuestionScore", "QuantScore", "QuantResult", "QcResultsFile",
    "QcRunRequest", "QcResolveRequest", "QcRunStatus",
]
