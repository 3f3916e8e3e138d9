"""
Registry and model hub access
Manifests and blobs from the model registry, tag listings from the library
site and from Hugging Face repositories
"""

import asyncio
import re
from typing import AsyncIterator, List, Optional

import aiohttp
import structlog
from huggingface_hub import HfApi
from huggingface_hub.errors import HfHubHTTPError, RepositoryNotFoundError

from ..core.cancellation import CancellationToken
from ..core.errors import NetworkError, RequestTimeout, SourceNotFound
from ..schemas.transfer import MEDIA_TYPE_MANIFEST, Manifest, ModelRef

logger = structlog.get_logger(__name__)

DEFAULT_REGISTRY = "https://registry.ollama.ai"
LIBRARY_SITE = "https://ollama.com"
BLOB_CHUNK_SIZE = 81920

HUB_QUANT_PATTERN = re.compile(
    r'(?:IQ[1-4]_(?:XXS|XS|S|M|NL)|Q[2-8]_(?:K_[SML]|K|[01])|[FB]F?(?:16|32))$',
    re.IGNORECASE,
)


class RegistryClient:
    """Reads manifests and blobs from the registry and lists available tags"""

    def __init__(self,
                 registry_url: str = DEFAULT_REGISTRY,
                 library_url: str = LIBRARY_SITE,
                 hf_token: Optional[str] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        self.registry_url = registry_url.rstrip('/')
        self.library_url = library_url.rstrip('/')
        self.cancel_token = cancel_token
        self.hf_api = HfApi(token=hf_token)
        self._session = session
        self._owns_session = session is None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _guard(self, awaitable):
        if self.cancel_token is None:
            return await awaitable
        return await self.cancel_token.run(awaitable)

    def manifest_url(self, ref: ModelRef) -> str:
        return f"{self.registry_url}/v2/{ref.registry_path}/manifests/{ref.tag}"

    def blob_url(self, ref: ModelRef, digest: str) -> str:
        return f"{self.registry_url}/v2/{ref.registry_path}/blobs/{digest}"

    async def get_manifest(self, ref: ModelRef) -> Manifest:
        """Fetch a model manifest; SourceNotFound when the registry does not know it"""
        url = self.manifest_url(ref)

        async def _call():
            async with self.session.get(
                url, headers={'Accept': MEDIA_TYPE_MANIFEST},
                timeout=aiohttp.ClientTimeout(total=60)
            ) as response:
                if response.status == 404:
                    raise SourceNotFound(f"{ref.name} not found in registry {self.registry_url}")
                if response.status >= 400:
                    raise NetworkError(f"GET {url} returned HTTP {response.status}", status=response.status)
                return await response.json(content_type=None)

        try:
            data = await self._guard(_call())
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"GET {url} timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"GET {url} failed: {e}") from e
        return Manifest.model_validate(data)

    async def manifest_exists(self, ref: ModelRef) -> bool:
        try:
            await self.get_manifest(ref)
        except SourceNotFound:
            return False
        return True

    async def stream_blob(self,
                          ref: ModelRef,
                          digest: str,
                          chunk_size: int = BLOB_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield the blob's bytes in chunks as they arrive"""
        url = self.blob_url(ref, digest)
        try:
            async with self.session.get(
                url, timeout=aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=300)
            ) as response:
                if response.status == 404:
                    raise SourceNotFound(f"Blob {digest} not found in registry for {ref.name}")
                if response.status >= 400:
                    raise NetworkError(f"GET {url} returned HTTP {response.status}", status=response.status)
                while True:
                    chunk = await self._guard(response.content.read(chunk_size))
                    if not chunk:
                        break
                    yield chunk
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"GET {url} stalled") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"GET {url} failed: {e}") from e

    async def list_library_tags(self, model: str) -> List[str]:
        """Tags published on the library site for model, in page order"""
        url = f"{self.library_url}/library/{model}/tags"

        async def _call():
            async with self.session.get(url, timeout=aiohttp.ClientTimeout(total=60)) as response:
                if response.status == 404:
                    raise SourceNotFound(f"Model '{model}' not found at {self.library_url}")
                if response.status >= 400:
                    raise NetworkError(f"GET {url} returned HTTP {response.status}", status=response.status)
                return await response.text()

        try:
            html = await self._guard(_call())
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"GET {url} timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"GET {url} failed: {e}") from e
        return parse_library_tags(html, model)

    async def list_hub_tags(self, repo_id: str) -> List[str]:
        """Quantization labels of the .gguf files in a Hugging Face repository"""
        def _list():
            return self.hf_api.list_repo_files(repo_id=repo_id, repo_type="model")

        try:
            files = await asyncio.to_thread(_list)
        except RepositoryNotFoundError as e:
            raise SourceNotFound(f"Hugging Face repository '{repo_id}' not found") from e
        except HfHubHTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 404:
                raise SourceNotFound(f"Hugging Face repository '{repo_id}' not found") from e
            raise NetworkError(f"Listing Hugging Face repository '{repo_id}' failed: {e}", status=status) from e
        return parse_hub_tags(files)


def parse_library_tags(html: str, model: str) -> List[str]:
    """Extract the tag names linked as /library/<model>:<tag> from a tags page"""
    pattern = re.compile(r'/library/' + re.escape(model) + r':([^"\'\s\]\)<>]+)', re.IGNORECASE)
    tags: List[str] = []
    for tag in pattern.findall(html):
        if tag not in tags:
            tags.append(tag)
    return tags


def parse_hub_tags(files: List[str]) -> List[str]:
    """Quantization labels from .gguf file names, first occurrence order"""
    tags: List[str] = []
    for name in files:
        if not name.lower().endswith('.gguf'):
            continue
        stem = name.rsplit('/', 1)[-1][:-len('.gguf')]
        # split GGUF shards look like model-Q4_K_M-00001-of-00002
        stem = re.sub(r'-\d{5}-of-\d{5}$', '', stem)
        match = HUB_QUANT_PATTERN.search(stem)
        if match:
            tag = match.group(0).upper()
            if tag not in tags:
                tags.append(tag)
    return tags


def hub_repo_id(model: str) -> str:
    """'hf.co/ns/repo' -> 'ns/repo'"""
    return re.sub(r'^(?:hf\.co|huggingface\.co)/', '', model, flags=re.IGNORECASE)
