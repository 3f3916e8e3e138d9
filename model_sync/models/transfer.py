"""
Transfer engine
Moves a model's manifest and layers between the local store, the local server
and remote servers, skipping layers the destination already holds
"""

import asyncio
import json
import re
import time
from typing import AsyncIterable, AsyncIterator, Callable, Dict, List, Optional, Union

import structlog

from ..core.cancellation import CancellationToken
from ..core.errors import (
    DestinationAlreadyExists, NetworkError, SourceNotEligibleForRemoteTransfer,
    SourceNotFound, VerificationFailed
)
from ..schemas.transfer import (
    FILE_LAYER_NAMES, MEDIA_TYPE_PARAMS, MEDIA_TYPE_SYSTEM, MEDIA_TYPE_TEMPLATE,
    Layer, Manifest, ModelRef, TransferProgress, TransferResult
)
from .local_store import LocalModelStore
from .ollama_client import OllamaClient
from .registry_client import RegistryClient
from .relay_buffer import BufferClosed, RelayBuffer
from .throttle import BandwidthLimiter, format_rate

logger = structlog.get_logger(__name__)

DEFAULT_BUFFER_SIZE = 512 * 1024 * 1024
MAX_LAYER_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 2.0
SMALL_LAYER_LIMIT = 1024 * 1024

ProgressCallback = Callable[[TransferProgress], None]
ClientFactory = Callable[[str], OllamaClient]

_MODELFILE_DIGEST = re.compile(r'sha256[-:]([a-f0-9]{64})')


class _LayerStats:
    def __init__(self):
        self.bytes_transferred = 0
        self.layers_transferred = 0
        self.layers_skipped = 0


class TransferEngine:
    """Copy, rename and delete models across the local store and inference servers"""

    def __init__(self,
                 local_client: OllamaClient,
                 store: LocalModelStore,
                 registry: RegistryClient,
                 client_factory: Optional[ClientFactory] = None,
                 buffer_size: int = DEFAULT_BUFFER_SIZE,
                 throttle: Optional[int] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 retry_delay: float = RETRY_DELAY_SECONDS):
        """
        Initialize engine

        Args:
            local_client: Client for the local inference server
            store: On-disk model store backing the local server
            registry: Registry used as the byte source for remote models
            client_factory: Builds a client for a remote server base URL
            buffer_size: Default relay buffer capacity in bytes
            throttle: Default bandwidth limit in bytes/second (None = unlimited)
            cancel_token: Token observed by every network call and buffer wait
            retry_delay: Base delay between attempts of a failed layer
        """
        self.local_client = local_client
        self.store = store
        self.registry = registry
        self.client_factory = client_factory or (
            lambda url: OllamaClient(url, timeout=local_client.timeout, cancel_token=cancel_token)
        )
        self.buffer_size = buffer_size
        self.throttle = throttle
        self.cancel_token = cancel_token
        self.retry_delay = retry_delay
        self._progress_callbacks: List[ProgressCallback] = []

    def add_progress_callback(self, callback: ProgressCallback) -> None:
        self._progress_callbacks.append(callback)

    def _notify_progress(self, event: TransferProgress) -> None:
        for callback in self._progress_callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.warning("Progress callback failed", error=str(e))

    async def _sleep(self, seconds: float) -> None:
        if self.cancel_token is not None:
            await self.cancel_token.sleep(seconds)
        else:
            await asyncio.sleep(seconds)

    def _limiter(self, throttle: Optional[int]) -> BandwidthLimiter:
        return BandwidthLimiter(rate=throttle, cancel_token=self.cancel_token)

    # Public operations
    async def copy(self,
                   source: Union[str, ModelRef],
                   destination: Union[str, ModelRef],
                   throttle: Optional[int] = None,
                   buffer_size: Optional[int] = None,
                   overwrite: bool = False) -> TransferResult:
        """
        Copy a model from source to destination

        Args:
            source: Local model name or remote reference
            destination: Local model name or remote reference
            throttle: Bandwidth limit in bytes/second, falls back to the engine default
            buffer_size: Relay buffer capacity, falls back to the engine default
            overwrite: Replace an existing destination model instead of refusing

        Returns:
            TransferResult with transferred and skipped layer counts
        """
        src = source if isinstance(source, ModelRef) else ModelRef.parse(source)
        dst = destination if isinstance(destination, ModelRef) else ModelRef.parse(destination)
        throttle = throttle if throttle is not None else self.throttle
        buffer_size = buffer_size or self.buffer_size
        started = time.monotonic()

        logger.info("Starting transfer",
                    source=str(src), destination=str(dst),
                    throttle=format_rate(throttle), buffer_size=buffer_size)

        dst_client = self._client_for(dst)
        try:
            if not overwrite and await dst_client.find_model(dst.name) is not None:
                raise DestinationAlreadyExists(f"Destination model '{dst}' already exists")

            if not src.is_remote and not dst.is_remote:
                stats = await self._copy_local(src, dst)
            elif not src.is_remote:
                stats = await self._copy_local_to_server(src, dst, dst_client, throttle)
            else:
                stats = await self._copy_remote_to_server(src, dst, dst_client, throttle, buffer_size)
        finally:
            if dst_client is not self.local_client:
                await dst_client.close()

        result = TransferResult(
            source=str(src),
            destination=str(dst),
            bytes_transferred=stats.bytes_transferred,
            layers_transferred=stats.layers_transferred,
            layers_skipped=stats.layers_skipped,
            duration_seconds=time.monotonic() - started,
        )
        logger.info("Transfer completed", **result.model_dump())
        return result

    async def rename(self, source: Union[str, ModelRef], new_name: str) -> None:
        """Copy, verify the copy, then delete the original; the original survives any failure"""
        src = source if isinstance(source, ModelRef) else ModelRef.parse(source)
        dst = ModelRef.parse(new_name).model_copy(update={'kind': src.kind, 'server': src.server})
        client = self._client_for(src)
        try:
            original = await client.find_model(src.name)
            if original is None:
                raise SourceNotFound(f"Model '{src}' not found")
            if await client.find_model(dst.name) is not None:
                raise DestinationAlreadyExists(f"Model '{dst.name}' already exists")

            logger.info("Renaming model", source=src.name, destination=dst.name)
            await client.copy(src.name, dst.name)

            copied = await client.find_model(dst.name)
            if copied is None:
                raise VerificationFailed(f"Copy '{dst.name}' not listed after copying")
            if original.get('digest') and copied.get('digest') != original.get('digest'):
                raise VerificationFailed(
                    f"Copy '{dst.name}' has digest {copied.get('digest')}, expected {original.get('digest')}"
                )

            await client.delete(src.name)
            logger.info("Model renamed", source=src.name, destination=dst.name)
        finally:
            if client is not self.local_client:
                await client.close()

    async def delete(self, model: Union[str, ModelRef]) -> bool:
        """Remove a model; False when it did not exist"""
        ref = model if isinstance(model, ModelRef) else ModelRef.parse(model)
        client = self._client_for(ref)
        try:
            removed = await client.delete(ref.name)
        finally:
            if client is not self.local_client:
                await client.close()
        logger.info("Model deleted" if removed else "Model already absent", model=str(ref))
        return removed

    # Copy paths
    def _client_for(self, ref: ModelRef) -> OllamaClient:
        if ref.is_remote and ref.server.rstrip('/') != self.local_client.base_url:
            return self.client_factory(ref.server)
        return self.local_client

    async def _copy_local(self, src: ModelRef, dst: ModelRef) -> _LayerStats:
        if await self.local_client.find_model(src.name) is None:
            raise SourceNotFound(f"Model '{src.name}' not found")
        await self.local_client.copy(src.name, dst.name)
        stats = _LayerStats()
        manifest = self.store.read_manifest(src) if self.store.has_manifest(src) else Manifest()
        stats.layers_skipped = len(manifest.layers)
        return stats

    async def _copy_local_to_server(self,
                                    src: ModelRef,
                                    dst: ModelRef,
                                    dst_client: OllamaClient,
                                    throttle: Optional[int]) -> _LayerStats:
        manifest = self.store.read_manifest(src)
        missing = self.store.missing_blobs(manifest)
        if missing:
            raise SourceNotFound(f"Model '{src.name}' is missing blobs: {', '.join(l.digest for l in missing)}")

        stats = _LayerStats()
        limiter = self._limiter(throttle)
        for layer in self._file_layers(manifest):
            await self._transfer_layer(
                layer, dst_client, stats,
                lambda layer=layer: self.store.stream_blob(layer),
                limiter,
            )

        await self._create(
            dst_client, dst.name, manifest,
            template=self.store.read_text_layer(_first(manifest.layers_of(MEDIA_TYPE_TEMPLATE))),
            system=self.store.read_text_layer(_first(manifest.layers_of(MEDIA_TYPE_SYSTEM))),
            parameters=_parse_params(self.store.read_text_layer(_first(manifest.layers_of(MEDIA_TYPE_PARAMS)))),
        )
        return stats

    async def _copy_remote_to_server(self,
                                     src: ModelRef,
                                     dst: ModelRef,
                                     dst_client: OllamaClient,
                                     throttle: Optional[int],
                                     buffer_size: int) -> _LayerStats:
        src_client = self._client_for(src)
        try:
            show = await src_client.show(src.name)
        finally:
            if src_client is not self.local_client:
                await src_client.close()

        manifest = await self._registry_manifest(src, show)
        stats = _LayerStats()
        limiter = self._limiter(throttle)
        for layer in self._file_layers(manifest):
            await self._transfer_layer(
                layer, dst_client, stats,
                lambda layer=layer: self.registry.stream_blob(src, layer.digest),
                limiter,
                buffer_size=buffer_size,
            )

        template = await self._registry_text(src, _first(manifest.layers_of(MEDIA_TYPE_TEMPLATE)))
        system = await self._registry_text(src, _first(manifest.layers_of(MEDIA_TYPE_SYSTEM)))
        params = await self._registry_text(src, _first(manifest.layers_of(MEDIA_TYPE_PARAMS)))
        await self._create(
            dst_client, dst.name, manifest,
            template=template if template is not None else show.get('template'),
            system=system if system is not None else show.get('system'),
            parameters=_parse_params(params),
        )
        return stats

    async def _registry_manifest(self, src: ModelRef, show: Dict) -> Manifest:
        """Registry manifest for src, checked against the digests the source server reports"""
        not_eligible = SourceNotEligibleForRemoteTransfer(
            f"Remote-to-remote copy only works for models originally from the registry: "
            f"'{src.name}' is not available from {self.registry.registry_url}"
        )
        try:
            manifest = await self.registry.get_manifest(src)
        except SourceNotFound:
            raise not_eligible
        known = {layer.digest for layer in manifest.blobs}
        reported = {f"sha256:{d}" for d in _MODELFILE_DIGEST.findall(show.get('modelfile', '') or '')}
        if reported - known:
            logger.warning("Source model differs from registry copy",
                           model=src.name, unknown_digests=sorted(reported - known))
            raise not_eligible
        return manifest

    async def _registry_text(self, src: ModelRef, layer: Optional[Layer]) -> Optional[str]:
        if layer is None or layer.size > SMALL_LAYER_LIMIT:
            return None
        data = bytearray()
        async for chunk in self.registry.stream_blob(src, layer.digest):
            data += chunk
        return data.decode('utf-8')

    @staticmethod
    def _file_layers(manifest: Manifest) -> List[Layer]:
        return [layer for layer in manifest.layers if layer.media_type in FILE_LAYER_NAMES]

    async def _transfer_layer(self,
                              layer: Layer,
                              dst_client: OllamaClient,
                              stats: _LayerStats,
                              open_source: Callable[[], AsyncIterable[bytes]],
                              limiter: BandwidthLimiter,
                              buffer_size: Optional[int] = None) -> None:
        """Send one layer unless the destination already has it, retrying transient failures"""
        for attempt in range(1, MAX_LAYER_ATTEMPTS + 1):
            if await dst_client.blob_exists(layer.digest):
                stats.layers_skipped += 1
                logger.info("Layer skipped, already present", digest=layer.digest, size=layer.size)
                self._notify_progress(TransferProgress(
                    status="skipped", digest=layer.digest, total=layer.size, completed=layer.size
                ))
                return
            try:
                if buffer_size is None:
                    sent = await self._stream_direct(layer, dst_client, open_source(), limiter)
                else:
                    sent = await self._stream_relayed(layer, dst_client, open_source(), limiter, buffer_size)
            except NetworkError as e:
                if not e.retryable or attempt == MAX_LAYER_ATTEMPTS:
                    raise
                logger.warning("Layer transfer failed, retrying",
                               digest=layer.digest, attempt=attempt, error=str(e))
                await self._sleep(self.retry_delay * attempt)
                continue
            if sent != layer.size:
                raise VerificationFailed(f"Layer {layer.digest}: sent {sent} bytes, expected {layer.size}")
            stats.layers_transferred += 1
            stats.bytes_transferred += sent
            return

    def _counted(self, layer: Layer, chunks: AsyncIterable[bytes], counter: List[int]) -> AsyncIterator[bytes]:
        async def _gen():
            async for chunk in chunks:
                counter[0] += len(chunk)
                self._notify_progress(TransferProgress(
                    status="uploading", digest=layer.digest, total=layer.size, completed=counter[0]
                ))
                yield chunk
        return _gen()

    async def _stream_direct(self,
                             layer: Layer,
                             dst_client: OllamaClient,
                             chunks: AsyncIterable[bytes],
                             limiter: BandwidthLimiter) -> int:
        counter = [0]
        body = self._counted(layer, limiter.throttle(chunks), counter)
        await dst_client.upload_blob(layer.digest, body, layer.size)
        return counter[0]

    async def _stream_relayed(self,
                              layer: Layer,
                              dst_client: OllamaClient,
                              chunks: AsyncIterable[bytes],
                              limiter: BandwidthLimiter,
                              buffer_size: int) -> int:
        """Download into the relay buffer while the upload drains it"""
        buffer = RelayBuffer(buffer_size, cancel_token=self.cancel_token)
        counter = [0]

        async def download():
            try:
                async for chunk in limiter.throttle(chunks):
                    await buffer.write(chunk)
                await buffer.close()
            except BaseException as e:
                await buffer.close_with_error(e)
                raise

        async def upload():
            try:
                body = self._counted(layer, buffer.iter_chunks(), counter)
                await dst_client.upload_blob(layer.digest, body, layer.size)
            except BaseException as e:
                await buffer.close_with_error(e)
                raise
            if not buffer.closed:
                await buffer.close_with_error(BufferClosed("Upload finished before the download"))

        logger.info("Relaying layer", digest=layer.digest, size=layer.size, buffer_size=buffer_size)
        results = await asyncio.gather(download(), upload(), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            # the side that failed first is the cause; BufferClosed is only the echo
            primary = [e for e in errors if not isinstance(e, BufferClosed)]
            raise (primary or errors)[0]
        logger.debug("Layer relayed", digest=layer.digest, high_water_mark=buffer.high_water_mark)
        return counter[0]

    async def _create(self,
                      client: OllamaClient,
                      name: str,
                      manifest: Manifest,
                      template: Optional[str],
                      system: Optional[str],
                      parameters: Optional[Dict]) -> None:
        files = {}
        adapters = {}
        for layer in self._file_layers(manifest):
            file_name = FILE_LAYER_NAMES[layer.media_type]
            if file_name == "adapter.gguf":
                adapters[file_name] = layer.digest
            else:
                files[file_name] = layer.digest
        if not files:
            raise SourceNotFound(f"Manifest for '{name}' has no model layer")

        last_status = None
        async for event in client.create(name, files, template=template, system=system,
                                         parameters=parameters, adapters=adapters or None):
            last_status = event.status
            self._notify_progress(event)
        if last_status != "success":
            raise VerificationFailed(f"Creating '{name}' ended with status '{last_status}'")
        logger.info("Model created on destination", model=name, server=client.base_url)


def _first(layers: List[Layer]) -> Optional[Layer]:
    return layers[0] if layers else None


def _parse_params(text: Optional[str]) -> Optional[Dict]:
    if not text:
        return None
    try:
        params = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Ignoring unparseable params layer")
        return None
    return params or None
