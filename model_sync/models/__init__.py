"""
Domain engines and HTTP collaborators for model transfer and QC
"""

from .ollama_client import OllamaClient
from .registry_client import RegistryClient
from .local_store import LocalModelStore
from .relay_buffer import RelayBuffer
from .throttle import BandwidthLimiter
from .transfer import TransferEngine
from .tag_resolver import TagResolver
from .question_suites import load_suite

__all__ = [
    "OllamaClient",
    "RegistryClient",
    "LocalModelStore",
    "RelayBuffer",
    "BandwidthLimiter",
    "TransferEngine",
    "TagResolver",
    "load_suite",
]
