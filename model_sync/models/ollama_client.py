"""
Async client for the inference server HTTP API
Covers the listing, metadata, pull/push/copy/delete, generation and blob endpoints
"""

import asyncio
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Union

import aiohttp
import structlog

from ..config import normalize_base_url
from ..core.cancellation import CancellationToken
from ..core.errors import (
    ModelSyncError, NetworkError, RequestTimeout, SourceNotFound, StreamError, VerificationFailed
)
from ..schemas.transfer import TransferProgress

logger = structlog.get_logger(__name__)

BlobBody = Union[bytes, AsyncIterable[bytes]]


class OllamaClient:
    """Thin async wrapper over one inference server"""

    def __init__(self,
                 base_url: str,
                 timeout: float = 600,
                 cancel_token: Optional[CancellationToken] = None,
                 session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize client

        Args:
            base_url: Server URL, e.g. http://localhost:11434
            timeout: Per request timeout in seconds for non-streaming calls
            cancel_token: Token aborting in-flight requests when fired
            session: Shared aiohttp session; one is created lazily otherwise
        """
        self.base_url = normalize_base_url(base_url)
        self.timeout = timeout
        self.cancel_token = cancel_token
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    def detached(self) -> "OllamaClient":
        """Client on the same session that ignores cancellation, for cleanup after a cancel"""
        return OllamaClient(self.base_url, timeout=self.timeout, session=self.session)

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _guard(self, awaitable):
        if self.cancel_token is None:
            return await awaitable
        return await self.cancel_token.run(awaitable)

    def _client_timeout(self, timeout: Optional[float], streaming: bool = False) -> aiohttp.ClientTimeout:
        seconds = self.timeout if timeout is None else timeout
        if streaming:
            return aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=seconds)
        return aiohttp.ClientTimeout(total=seconds)

    async def _request_json(self,
                            method: str,
                            path: str,
                            payload: Optional[Dict[str, Any]] = None,
                            timeout: Optional[float] = None,
                            not_found_ok: bool = False) -> Optional[Dict[str, Any]]:
        async def _call():
            async with self.session.request(
                method, self.url(path), json=payload, timeout=self._client_timeout(timeout)
            ) as response:
                body = await response.text()
                if response.status == 404 and not_found_ok:
                    return None
                _raise_for_status(response.status, body, f"{method} {path}")
                return json.loads(body) if body.strip() else {}

        try:
            return await self._guard(_call())
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"{method} {path} timed out after {timeout or self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

    async def _stream_ndjson(self,
                             path: str,
                             payload: Dict[str, Any],
                             timeout: Optional[float] = None) -> AsyncIterator[Dict[str, Any]]:
        """POST and yield each JSON line of the streamed response"""
        try:
            async with self.session.post(
                self.url(path), json=payload, timeout=self._client_timeout(timeout, streaming=True)
            ) as response:
                if response.status >= 400:
                    _raise_for_status(response.status, await response.text(), f"POST {path}")
                while True:
                    line = await self._guard(response.content.readline())
                    if not line:
                        break
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Skipping malformed progress line", path=path, line=line[:200])
                        continue
                    if event.get('error'):
                        raise _stream_error(path, event['error'])
                    yield event
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"POST {path} stalled for more than {timeout or self.timeout}s") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"POST {path} failed: {e}") from e

    # Listing and metadata
    async def version(self) -> str:
        data = await self._request_json('GET', '/api/version', timeout=10)
        return data.get('version', '')

    async def list_models(self) -> List[Dict[str, Any]]:
        data = await self._request_json('GET', '/api/tags')
        return data.get('models', []) or []

    async def find_model(self, name: str) -> Optional[Dict[str, Any]]:
        """Entry from /api/tags whose name matches case-insensitively"""
        wanted = name.lower()
        if ':' not in wanted:
            wanted = f"{wanted}:latest"
        for entry in await self.list_models():
            if entry.get('name', '').lower() == wanted or entry.get('model', '').lower() == wanted:
                return entry
        return None

    async def show(self, model: str, verbose: bool = False) -> Dict[str, Any]:
        payload = {'model': model}
        if verbose:
            payload['verbose'] = True
        data = await self._request_json('POST', '/api/show', payload, not_found_ok=True)
        if data is None:
            raise SourceNotFound(f"Model '{model}' not found on {self.base_url}")
        return data

    # Model lifecycle
    async def pull(self, model: str, insecure: bool = False) -> AsyncIterator[TransferProgress]:
        payload = {'model': model, 'stream': True}
        if insecure:
            payload['insecure'] = True
        async for event in self._stream_ndjson('/api/pull', payload):
            yield _progress(event)

    async def copy(self, source: str, destination: str) -> None:
        result = await self._request_json(
            'POST', '/api/copy', {'source': source, 'destination': destination}, not_found_ok=True
        )
        if result is None:
            raise SourceNotFound(f"Model '{source}' not found on {self.base_url}")

    async def delete(self, model: str) -> bool:
        """Delete a model; False when it was already gone"""
        result = await self._request_json('DELETE', '/api/delete', {'model': model}, not_found_ok=True)
        return result is not None

    async def create(self,
                     model: str,
                     files: Dict[str, str],
                     template: Optional[str] = None,
                     system: Optional[str] = None,
                     parameters: Optional[Dict[str, Any]] = None,
                     adapters: Optional[Dict[str, str]] = None) -> AsyncIterator[TransferProgress]:
        payload: Dict[str, Any] = {'model': model, 'files': files, 'stream': True}
        if adapters:
            payload['adapters'] = adapters
        if template:
            payload['template'] = template
        if system:
            payload['system'] = system
        if parameters:
            payload['parameters'] = parameters
        async for event in self._stream_ndjson('/api/create', payload):
            yield _progress(event)

    # Generation
    async def generate(self,
                       model: str,
                       prompt: str,
                       options: Optional[Dict[str, Any]] = None,
                       logprobs: bool = True,
                       keep_alive: Optional[Union[int, str]] = None,
                       timeout: Optional[float] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'model': model, 'prompt': prompt, 'stream': False}
        if logprobs:
            payload['logprobs'] = True
        if options:
            payload['options'] = options
        if keep_alive is not None:
            payload['keep_alive'] = keep_alive
        return await self._request_json('POST', '/api/generate', payload, timeout=timeout)

    async def chat(self,
                   model: str,
                   messages: List[Dict[str, str]],
                   format: Optional[Any] = None,
                   options: Optional[Dict[str, Any]] = None,
                   keep_alive: Optional[Union[int, str]] = None,
                   timeout: Optional[float] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'model': model, 'messages': messages, 'stream': False}
        if format is not None:
            payload['format'] = format
        if options:
            payload['options'] = options
        if keep_alive is not None:
            payload['keep_alive'] = keep_alive
        return await self._request_json('POST', '/api/chat', payload, timeout=timeout)

    async def unload(self, model: str) -> None:
        await self._request_json('POST', '/api/generate', {'model': model, 'keep_alive': 0})

    # Blobs
    async def blob_exists(self, digest: str) -> bool:
        path = f"/api/blobs/{digest}"

        async def _call():
            async with self.session.head(self.url(path), timeout=self._client_timeout(30)) as response:
                if response.status == 200:
                    return True
                if response.status == 404:
                    return False
                if response.status == 400:
                    raise VerificationFailed(f"Server rejected digest {digest}")
                _raise_for_status(response.status, "", f"HEAD {path}")
                return False

        try:
            return await self._guard(_call())
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"HEAD {path} timed out") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"HEAD {path} failed: {e}") from e

    async def upload_blob(self, digest: str, body: BlobBody, size: Optional[int] = None) -> None:
        """Stream a blob to the server; the server verifies the digest"""
        path = f"/api/blobs/{digest}"
        headers = {'Content-Type': 'application/octet-stream'}
        if size is not None:
            headers['Content-Length'] = str(size)

        async def _call():
            async with self.session.post(
                self.url(path), data=body, headers=headers,
                timeout=self._client_timeout(None, streaming=True)
            ) as response:
                text = await response.text()
                if response.status == 400:
                    raise VerificationFailed(f"Upload of {digest} rejected: {text.strip()}")
                _raise_for_status(response.status, text, f"POST {path}")

        try:
            await self._guard(_call())
        except asyncio.TimeoutError as e:
            raise RequestTimeout(f"POST {path} stalled") from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"POST {path} failed: {e}") from e


def _progress(event: Dict[str, Any]) -> TransferProgress:
    return TransferProgress(
        status=event.get('status', ''),
        digest=event.get('digest'),
        total=event.get('total'),
        completed=event.get('completed'),
    )


def _raise_for_status(status: int, body: str, what: str) -> None:
    if status < 400:
        return
    detail = body.strip()
    try:
        detail = json.loads(body).get('error', detail)
    except (ValueError, AttributeError):
        pass
    if status == 404:
        raise SourceNotFound(f"{what}: {detail or 'not found'}")
    raise NetworkError(f"{what} returned HTTP {status}: {detail}", status=status)


def _stream_error(path: str, message: str) -> ModelSyncError:
    """Error events are final: a missing model maps to SourceNotFound, anything else to StreamError"""
    lowered = message.lower()
    if 'not found' in lowered or 'does not exist' in lowered:
        return SourceNotFound(f"POST {path}: {message}")
    return StreamError(f"POST {path}: {message}")
