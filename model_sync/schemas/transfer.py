"""
Pydantic schemas for model transfer
Defines layers, manifests, model references and transfer requests/results
"""

import re
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, validator

from ..config import parse_size


DEFAULT_TAG = "latest"
REGISTRY_HOST = "registry.ollama.ai"

MEDIA_TYPE_MODEL = "application/vnd.ollama.image.model"
MEDIA_TYPE_PROJECTOR = "application/vnd.ollama.image.projector"
MEDIA_TYPE_ADAPTER = "application/vnd.ollama.image.adapter"
MEDIA_TYPE_TEMPLATE = "application/vnd.ollama.image.template"
MEDIA_TYPE_SYSTEM = "application/vnd.ollama.image.system"
MEDIA_TYPE_PARAMS = "application/vnd.ollama.image.params"
MEDIA_TYPE_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

# Layer media types that /api/create takes as files, keyed to their file name
FILE_LAYER_NAMES = {
    MEDIA_TYPE_MODEL: "model.gguf",
    MEDIA_TYPE_PROJECTOR: "projector.gguf",
    MEDIA_TYPE_ADAPTER: "adapter.gguf",
}

_DIGEST_PATTERN = re.compile(r'^sha256[:-][a-f0-9]{64}$')


class EndpointKind(str, Enum):
    """Where one side of a transfer lives"""
    LOCAL = "local"
    REMOTE = "remote"


class Layer(BaseModel):
    """Content-addressed blob referenced by a manifest"""
    digest: str = Field(..., description="sha256:<hex> content digest")
    size: int = Field(0, ge=0, description="Blob size in bytes")
    media_type: str = Field(MEDIA_TYPE_MODEL, alias="mediaType", description="Layer media type")

    @validator('digest')
    def validate_digest(cls, v):
        """Accept sha256:<hex> and the on-disk sha256-<hex> spelling"""
        v = v.strip().lower()
        if not _DIGEST_PATTERN.match(v):
            raise ValueError(f'Invalid layer digest: {v}')
        return v.replace('sha256-', 'sha256:', 1)

    @property
    def blob_name(self) -> str:
        """File name of the blob in a local store"""
        return self.digest.replace(':', '-', 1)

    class Config:
        populate_by_name = True
        frozen = True


class Manifest(BaseModel):
    """Ordered layer list plus metadata for one tagged model"""
    schema_version: int = Field(2, alias="schemaVersion")
    media_type: str = Field(MEDIA_TYPE_MANIFEST, alias="mediaType")
    config: Optional[Layer] = Field(None, description="Model config blob")
    layers: List[Layer] = Field(default_factory=list, description="Layers in manifest order")

    family: Optional[str] = Field(None, description="Model family")
    parameter_size: Optional[str] = Field(None, description="Parameter count label, e.g. 8B")
    quantization: Optional[str] = Field(None, description="Quantization label, e.g. Q4_K_M")

    @property
    def blobs(self) -> List[Layer]:
        """Config blob (if any) followed by the layers"""
        return ([self.config] if self.config else []) + list(self.layers)

    def layers_of(self, media_type: str) -> List[Layer]:
        return [layer for layer in self.layers if layer.media_type == media_type]

    class Config:
        populate_by_name = True


class ModelRef(BaseModel):
    """A model on the local server or on a remote server"""
    kind: EndpointKind = Field(EndpointKind.LOCAL)
    server: Optional[str] = Field(None, description="Remote server base URL")
    model: str = Field(..., description="Model name, possibly namespaced")
    tag: str = Field(DEFAULT_TAG)

    @classmethod
    def parse(cls, value: str) -> "ModelRef":
        """Parse 'model[:tag]' or 'http(s)://host[:port]/model[:tag]'"""
        value = value.strip()
        if not value:
            raise ValueError("Empty model reference")
        match = re.match(r'^(https?://[^/]+)/(.+)$', value, re.IGNORECASE)
        if match:
            server, name = match.groups()
            model, tag = split_tag(name)
            return cls(kind=EndpointKind.REMOTE, server=server.rstrip('/'), model=model, tag=tag)
        model, tag = split_tag(value)
        return cls(kind=EndpointKind.LOCAL, model=model, tag=tag)

    @property
    def name(self) -> str:
        return f"{self.model}:{self.tag}"

    @property
    def is_remote(self) -> bool:
        return self.kind == EndpointKind.REMOTE

    @property
    def registry_path(self) -> str:
        """Repository path on the registry: library/<model> or <namespace>/<model>"""
        model = self.model
        if model.startswith(f"{REGISTRY_HOST}/"):
            model = model[len(REGISTRY_HOST) + 1:]
        return model if '/' in model else f"library/{model}"

    @property
    def is_hub_model(self) -> bool:
        return self.model.lower().startswith(('hf.co/', 'huggingface.co/'))

    def __str__(self) -> str:
        if self.is_remote:
            return f"{self.server}/{self.name}"
        return self.name


def split_tag(name: str):
    """Split 'model:tag' into (model, tag), defaulting the tag to latest"""
    model, sep, tag = name.rpartition(':')
    if not sep or '/' in tag:
        return name, DEFAULT_TAG
    return model, tag or DEFAULT_TAG


class TransferProgress(BaseModel):
    """One progress event of a pull, push, upload or create stream"""
    status: str = Field(..., description="Human readable status")
    digest: Optional[str] = Field(None)
    total: Optional[int] = Field(None, ge=0)
    completed: Optional[int] = Field(None, ge=0)

    @property
    def progress_percent(self) -> float:
        if not self.total:
            return 0.0
        return (self.completed or 0) / self.total * 100


class TransferResult(BaseModel):
    """Outcome of one copy"""
    source: str
    destination: str
    bytes_transferred: int = Field(0, ge=0)
    layers_transferred: int = Field(0, ge=0)
    layers_skipped: int = Field(0, ge=0)
    duration_seconds: float = Field(0.0, ge=0)


# API Request Schemas
class TransferRequest(BaseModel):
    """Request to copy a model"""
    source: str = Field(..., description="Local model or http(s)://host:port/model[:tag]")
    destination: str = Field(..., description="Local model or http(s)://host:port/model[:tag]")
    throttle: Optional[str] = Field(None, description="Bandwidth limit, e.g. 50MB")
    buffer_size: Optional[str] = Field(None, description="Relay buffer size, e.g. 512MB")

    @validator('throttle', 'buffer_size')
    def validate_size(cls, v):
        if v:
            parse_size(v)
        return v


class RenameRequest(BaseModel):
    """Request to rename a model on one server"""
    source: str = Field(..., description="Existing model name")
    destination: str = Field(..., description="New model name")
