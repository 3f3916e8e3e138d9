"""
Read access to the on-disk model store (manifests and blobs)
"""

import asyncio
import json
from pathlib import Path
from typing import AsyncIterator, List, Optional

import structlog

from ..core.errors import SourceNotFound
from ..schemas.transfer import REGISTRY_HOST, Layer, Manifest, ModelRef

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 1024 * 1024


class LocalModelStore:
    """Manifests under manifests/<host>/<namespace>/<model>/<tag>, blobs under blobs/sha256-<hex>"""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    @property
    def manifests_dir(self) -> Path:
        return self.root / "manifests"

    @property
    def blobs_dir(self) -> Path:
        return self.root / "blobs"

    def manifest_path(self, ref: ModelRef) -> Path:
        model = ref.model
        if model.lower().startswith(('hf.co/', 'huggingface.co/')):
            return self.manifests_dir / Path(model) / ref.tag
        return self.manifests_dir / REGISTRY_HOST / ref.registry_path / ref.tag

    def blob_path(self, layer: Layer) -> Path:
        return self.blobs_dir / layer.blob_name

    def has_manifest(self, ref: ModelRef) -> bool:
        return self.manifest_path(ref).is_file()

    def read_manifest(self, ref: ModelRef) -> Manifest:
        path = self.manifest_path(ref)
        if not path.is_file():
            raise SourceNotFound(f"Model '{ref.name}' not found in {self.manifests_dir}")
        with path.open('r', encoding='utf-8') as f:
            return Manifest.model_validate(json.load(f))

    def read_text_layer(self, layer: Optional[Layer]) -> Optional[str]:
        """Contents of a small text layer such as a template or system prompt"""
        if layer is None:
            return None
        path = self.blob_path(layer)
        if not path.is_file():
            raise SourceNotFound(f"Blob {layer.digest} missing from {self.blobs_dir}")
        return path.read_text(encoding='utf-8')

    def missing_blobs(self, manifest: Manifest) -> List[Layer]:
        return [layer for layer in manifest.blobs if not self.blob_path(layer).is_file()]

    async def stream_blob(self, layer: Layer, chunk_size: int = READ_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield the blob file in chunks without loading it whole"""
        path = self.blob_path(layer)
        if not path.is_file():
            raise SourceNotFound(f"Blob {layer.digest} missing from {self.blobs_dir}")
        f = await asyncio.to_thread(path.open, 'rb')
        try:
            while True:
                chunk = await asyncio.to_thread(f.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            f.close()

