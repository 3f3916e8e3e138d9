"""
QC Service Adapter
Builds QC runners from settings and manages background runs for the HTTP API
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional

from ..config import SyncSettings
from ..core.cancellation import CancellationToken
from ..core.errors import NotFoundError
from ..models.ollama_client import OllamaClient
from ..models.registry_client import RegistryClient
from ..models.results_file import default_output_path, load_results
from ..models.tag_resolver import TagResolver
from ..schemas.qc import QcResultsFile, QcRunRequest, QcRunStatus, utcnow
from .judge import JudgeOrchestrator, create_judge
from .qc_runner import EXIT_CANCELLED, QcRunner, TimeoutPrompt, compute_scores
from .scoring import ScoringEngine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_runner(request: QcRunRequest,
                      settings: SyncSettings,
                      cancel_token: Optional[CancellationToken] = None,
                      timeout_prompt: Optional[TimeoutPrompt] = None) -> AsyncIterator[QcRunner]:
    """QcRunner with its clients and judge, all closed on exit"""
    cancel_token = cancel_token or CancellationToken()
    client = OllamaClient(settings.ollama_host, timeout=request.timeout, cancel_token=cancel_token)
    registry = RegistryClient(
        registry_url=settings.registry_url,
        hf_token=settings.huggingface_token,
        cancel_token=cancel_token,
    )
    judge: Optional[JudgeOrchestrator] = None
    try:
        if request.judge:
            provider, policy = create_judge(
                request.judge,
                client,
                context_length=request.judge_context_length,
                timeout=request.timeout,
                cancel_token=cancel_token,
            )
            judge = JudgeOrchestrator(provider, request.judge, retry_policy=policy, cancel_token=cancel_token)
        yield QcRunner(
            request,
            client,
            TagResolver(registry, client),
            judge=judge,
            cancel_token=cancel_token,
            output_dir=settings.qc_output_dir,
            timeout_prompt=timeout_prompt,
        )
    finally:
        if judge is not None:
            await judge.close()
        await registry.close()
        await client.close()


class _BackgroundRun:
    def __init__(self, status: QcRunStatus, token: CancellationToken):
        self.status = status
        self.token = token
        self.task: Optional[asyncio.Task] = None


class QcService:
    """Starts, tracks and cancels QC runs; reads persisted result documents"""

    def __init__(self, settings: SyncSettings):
        self.settings = settings
        self._runs: Dict[str, _BackgroundRun] = {}
        logger.info("QcService initialized")

    async def resolve(self, model: str, patterns: List[str], local: bool = False) -> List[str]:
        """Expand tag patterns for a model"""
        async with RegistryClient(registry_url=self.settings.registry_url,
                                  hf_token=self.settings.huggingface_token) as registry:
            client = OllamaClient(self.settings.ollama_host, timeout=self.settings.request_timeout)
            try:
                return await TagResolver(registry, client).resolve_many(model, patterns, local=local)
            finally:
                await client.close()

    def output_path(self, request: QcRunRequest) -> Path:
        if request.output:
            return Path(request.output)
        return default_output_path(request.model, self.settings.qc_output_dir)

    async def start_run(self, request: QcRunRequest) -> QcRunStatus:
        """Start a run in the background; its progress is in the result document"""
        run_id = uuid.uuid4().hex[:12]
        status = QcRunStatus(
            run_id=run_id,
            model=request.model,
            state="running",
            output=str(self.output_path(request)),
        )
        run = _BackgroundRun(status, CancellationToken())
        run.task = asyncio.create_task(self._execute(run, request))
        self._runs[run_id] = run
        logger.info(f"QC run {run_id} started for {request.model}")
        return status

    async def _execute(self, run: _BackgroundRun, request: QcRunRequest) -> None:
        status = run.status
        try:
            async with open_runner(request, self.settings, run.token) as runner:
                status.exit_code = await runner.run()
            status.state = "cancelled" if status.exit_code == EXIT_CANCELLED else "completed"
        except asyncio.CancelledError:
            status.state = "cancelled"
            status.exit_code = EXIT_CANCELLED
            raise
        except Exception as e:
            logger.error(f"QC run {status.run_id} failed: {e}")
            status.state = "failed"
            status.exit_code = 1
            status.error = str(e)
        finally:
            status.finished_at = utcnow()
            logger.info(f"QC run {status.run_id} finished: {status.state}")

    def get_run(self, run_id: str) -> QcRunStatus:
        run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError(f"QC run '{run_id}' not found")
        return run.status

    def list_runs(self) -> List[QcRunStatus]:
        return [run.status for run in self._runs.values()]

    def cancel_run(self, run_id: str) -> QcRunStatus:
        """Request cancellation; a second request forces it"""
        run = self._runs.get(run_id)
        if run is None:
            raise NotFoundError(f"QC run '{run_id}' not found")
        if run.status.finished_at is None:
            run.token.request()
            run.status.state = "cancelling"
            logger.info(f"QC run {run_id} cancellation requested (forced={run.token.forced})")
        return run.status

    def load_results(self, path: str) -> QcResultsFile:
        """Read a result document and recompute its scores"""
        document = load_results(Path(path))
        if document is None:
            raise NotFoundError(f"Results file '{path}' not found")
        compute_scores(document, ScoringEngine())
        return document

    async def shutdown(self) -> None:
        """Cancel every running run and wait for them to checkpoint"""
        tasks = []
        for run in self._runs.values():
            if run.task is not None and not run.task.done():
                run.token.request()
                tasks.append(run.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
