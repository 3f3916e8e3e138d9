"""
QC run state machine
Tests each requested quantization with the same question suite, scores it
against the base quantization, optionally has a judge compare the answers and
checkpoints the result document after every quantization.
"""

from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from ..core.cancellation import CancellationToken
from ..core.errors import (
    AbortRun, ModelSyncError, NetworkError, NotFoundError, ProviderConfigError,
    RequestTimeout, RunCancelled, SourceNotFound, TimeoutDeclined
)
from ..models.ollama_client import OllamaClient
from ..models.question_suites import load_suite
from ..models.registry_client import HUB_QUANT_PATTERN
from ..models.results_file import (
    check_compatible, default_output_path, load_results, restore_results, save_results
)
from ..models.tag_resolver import TagResolver
from ..schemas.qc import (
    DEFAULT_NUM_PREDICT, JudgeMode, QcResultsFile, QcRunRequest, QcTestOptions,
    QuantResult, QuestionResult, QuestionSuite, SuiteCategory, SuiteQuestion, TokenLogprob
)
from ..schemas.transfer import ModelRef
from .judge import BackgroundJudgments, JudgeOrchestrator, needs_judgment
from .scoring import ScoringEngine

logger = structlog.get_logger(__name__)

DEFAULT_BASE_TAG = "fp16"
BASE_TAG_HINTS = ("fp16", "f16", "bf16", "fp32", "f32", "q8_0")

QUESTION_ATTEMPTS = 5
QUESTION_RETRY_DELAY = 1.0
PRELOAD_ATTEMPTS = 3
PRELOAD_RETRY_DELAY = 2.0
PRELOAD_PROMPT = "Hi"
PULL_ATTEMPTS = 50
PULL_RETRY_DELAY = 2.0

EXIT_OK = 0
EXIT_NO_RESULTS = 1
EXIT_CANCELLED = 2

TimeoutPrompt = Callable[[float], Awaitable[bool]]


def looks_like_base(tag: str, hints: Sequence[str] = BASE_TAG_HINTS) -> bool:
    """True when the last '-' or ':' separated part of tag is one of hints"""
    last = tag.replace(':', '-').rsplit('-', 1)[-1].lower()
    return last in {h.lower() for h in hints}


def choose_base_tag(tags: Sequence[str], hints: Sequence[str] = BASE_TAG_HINTS) -> str:
    """First tag that looks like a base, by hint priority; the default otherwise"""
    for hint in hints:
        for tag in tags:
            if looks_like_base(tag, [hint]):
                return tag
    return DEFAULT_BASE_TAG


def quantization_from_tag(tag: str) -> Optional[str]:
    match = HUB_QUANT_PATTERN.search(tag.rsplit(':', 1)[-1])
    return match.group(0).upper() if match else None


class RunContext:
    """
    Everything one run knows about itself.

    Passed to every step; the cleanup routine consults it on every exit path,
    whether the run finished, was cancelled or failed.
    """

    def __init__(self, document: QcResultsFile, suite: QuestionSuite, output_path: Path, timeout: float):
        self.document = document
        self.suite = suite
        self.output_path = output_path
        self.timeout = timeout
        self.tags: List[str] = []
        self.forced: set = set()
        # tag -> model name, for models this run pulled
        self.pulled: Dict[str, str] = {}
        self.failed: Dict[str, str] = {}
        self.tested: List[str] = []
        self.judged: set = set()
        # results file bytes before the run, None when it did not exist
        self.snapshot: Optional[bytes] = None
        self.aborted = False
        self.finished = False

    @property
    def base_tag(self) -> str:
        return self.document.base_tag

    def is_base(self, tag: str) -> bool:
        return tag.lower() == self.document.base_tag.lower()


class QcRunner:
    """Drives one QC run from request to persisted result document"""

    def __init__(self,
                 request: QcRunRequest,
                 client: OllamaClient,
                 resolver: TagResolver,
                 judge: Optional[JudgeOrchestrator] = None,
                 cancel_token: Optional[CancellationToken] = None,
                 output_dir: Path = Path('.'),
                 scoring: Optional[ScoringEngine] = None,
                 base_tag_hints: Sequence[str] = BASE_TAG_HINTS,
                 timeout_prompt: Optional[TimeoutPrompt] = None,
                 retry_delay_scale: float = 1.0):
        """
        Initialize runner

        Args:
            request: What to test and how
            client: Inference server the quantizations run on
            resolver: Expands tag patterns; its registry is used for existence checks
            judge: Judge orchestrator, None to skip judging
            cancel_token: Token shared with the client and the judge
            output_dir: Directory of the result document when the request names none
            scoring: Scoring engine with the weight table to use
            base_tag_hints: Tags considered a base when none is given or stored
            timeout_prompt: Asked whether to double the timeout after repeated timeouts
            retry_delay_scale: Multiplier for every retry delay
        """
        self.request = request
        self.client = client
        self.resolver = resolver
        self.judge = judge
        self.cancel_token = cancel_token or CancellationToken()
        self.output_dir = Path(output_dir)
        self.scoring = scoring or ScoringEngine()
        self.base_tag_hints = tuple(base_tag_hints)
        self.timeout_prompt = timeout_prompt
        self.retry_delay_scale = retry_delay_scale
        self.background = BackgroundJudgments(judge) if judge is not None else None
        self.context: Optional[RunContext] = None

    @property
    def parallel(self) -> bool:
        return self.background is not None and self.request.judge_mode == JudgeMode.PARALLEL

    async def run(self) -> int:
        """
        Execute the run.

        Returns:
            0 when the document holds at least one quantization result, 1 when it
            holds none, 2 when the user cancelled

        Raises:
            AbortRun: the document cannot take the requested quantizations
            NotFoundError: a pattern or quantization is not available
        """
        ctx: Optional[RunContext] = None
        cancelled = False
        try:
            ctx = self.context = await self._initialize()
            await self._test_quantizations(ctx)
            await self._finalize(ctx)
        except RunCancelled:
            cancelled = True
            logger.warning("QC run cancelled", forced=self.cancel_token.forced)
        except TimeoutDeclined as e:
            logger.error("QC run stopped after repeated timeouts", error=str(e))
        except AbortRun:
            if ctx is not None:
                ctx.aborted = True
            raise
        finally:
            if ctx is not None and not ctx.finished:
                await self._shutdown(ctx, cancelled)

        if cancelled:
            return EXIT_CANCELLED
        return EXIT_OK if ctx.document.results else EXIT_NO_RESULTS

    # Initializing
    async def _initialize(self) -> RunContext:
        request = self.request
        suite = load_suite(request.suite)
        output_path = Path(request.output) if request.output else default_output_path(request.model, self.output_dir)

        candidates = await self.resolver.resolve_many(request.model, request.quants, local=not request.on_demand)

        document = load_results(output_path)
        if document is not None:
            check_compatible(document, request.model, suite.name)
            if request.base_tag and request.base_tag.lower() != document.base_tag.lower():
                raise AbortRun(
                    f"Results file uses base '{document.base_tag}', not '{request.base_tag}'; "
                    f"scores against different bases cannot be mixed"
                )
            if document.repair_base_flag():
                logger.info("Repaired base flag in results file", base_tag=document.base_tag)
            self._merge_options(document)
            logger.info("Reusing results file", path=str(output_path), base_tag=document.base_tag,
                        quantizations=[r.tag for r in document.results])
        else:
            base_tag = request.base_tag or choose_base_tag(candidates, self.base_tag_hints)
            document = QcResultsFile(
                test_suite_name=suite.name,
                model_name=request.model,
                base_tag=base_tag,
                options=self._options(),
            )
            logger.info("Starting new results file", path=str(output_path), base_tag=base_tag)

        ctx = RunContext(document, suite, output_path, float(request.timeout))
        ctx.snapshot = output_path.read_bytes() if output_path.is_file() else None
        if request.force:
            ctx.forced = {tag.lower() for tag in candidates}
        ctx.tags = [document.base_tag] + [tag for tag in candidates if not ctx.is_base(tag)]

        await self._check_available(ctx)
        await self._check_fingerprints(ctx)
        if self.judge is not None:
            ok, error = await self.cancel_token.run(self.judge.provider.validate_connection())
            if not ok:
                raise ProviderConfigError(error or f"Judge '{self.judge.judge_model}' is not usable")

        logger.info("QC run initialized",
                    model=request.model, suite=suite.name, questions=suite.total_questions,
                    base_tag=document.base_tag, candidates=ctx.tags[1:],
                    judge=self.judge.judge_model if self.judge else None,
                    judge_mode=request.judge_mode.value)
        return ctx

    def _options(self) -> QcTestOptions:
        request = self.request
        return QcTestOptions(
            temperature=request.temperature,
            seed=request.seed,
            top_p=request.top_p,
            top_k=request.top_k,
            repeat_penalty=request.repeat_penalty,
            frequency_penalty=request.frequency_penalty,
            judge_context_length=request.judge_context_length,
        )

    def _merge_options(self, document: QcResultsFile) -> None:
        """Sampling stays as stored so every quantization sees the same options"""
        requested = self._options()
        sampling = {'temperature', 'seed', 'top_p', 'top_k', 'repeat_penalty', 'frequency_penalty'}
        if requested.model_dump(include=sampling) != document.options.model_dump(include=sampling):
            logger.warning("Sampling options differ from the results file, keeping the stored ones",
                           stored=document.options.model_dump(include=sampling))
        document.options.judge_context_length = requested.judge_context_length

    def model_name(self, tag: str) -> str:
        """'source:tag' identifiers are used as is, bare tags belong to the requested model"""
        if ':' in tag:
            return tag
        return f"{self.request.model}:{tag}"

    async def _check_available(self, ctx: RunContext) -> None:
        """Every quantization that still needs testing must be local or pullable"""
        missing = []
        for tag in ctx.tags:
            result = ctx.document.get_result(tag)
            if result is not None and result.is_complete(ctx.suite) and tag.lower() not in ctx.forced:
                continue
            name = self.model_name(tag)
            if await self.client.find_model(name) is not None:
                continue
            pullable = self.request.on_demand or (result is not None and result.pulled_on_demand)
            if pullable and await self._exists_remotely(name):
                continue
            missing.append(name)
        if missing:
            hint = "" if self.request.on_demand else " (enable on-demand pulls to fetch them)"
            raise NotFoundError(f"Not available on {self.client.base_url}: {', '.join(missing)}{hint}")

    async def _exists_remotely(self, name: str) -> bool:
        ref = ModelRef.parse(name)
        if ref.is_hub_model:
            try:
                tags = await self.resolver.list_tags(ref.model)
            except SourceNotFound:
                return False
            return ref.tag.lower() in {t.lower() for t in tags}
        return await self.resolver.registry.manifest_exists(ref)

    # PerQuantization
    async def _test_quantizations(self, ctx: RunContext) -> None:
        for tag in ctx.tags:
            self.cancel_token.raise_if_cancelled()
            try:
                await self._process_quantization(ctx, tag)
            except (RunCancelled, AbortRun, TimeoutDeclined):
                raise
            except ModelSyncError as e:
                ctx.failed[tag] = str(e)
                logger.error("Quantization failed, continuing with the next one", tag=tag, error=str(e))
                self._checkpoint(ctx)
                base = ctx.document.base_result
                if ctx.is_base(tag) and (base is None or not base.is_complete(ctx.suite)):
                    logger.error("Base quantization incomplete, candidates cannot be scored",
                                 base_tag=ctx.base_tag)
                    break

    async def _process_quantization(self, ctx: RunContext, tag: str) -> None:
        document, suite = ctx.document, ctx.suite
        is_base = ctx.is_base(tag)
        result = document.get_result(tag)

        if result is not None and tag.lower() in ctx.forced:
            logger.info("Re-running quantization", tag=tag)
            document.results.remove(result)
            result = None

        if result is not None and result.is_complete(suite):
            logger.info("Quantization already tested, skipping", tag=tag)
            return

        entry = await self._ensure_present(ctx, tag, result)
        model_name = entry.get('name') or self.model_name(tag)
        info = await self._model_info(model_name, tag, entry)
        _check_fingerprint(_fingerprint(document), tag, info)

        if result is None:
            result = QuantResult(tag=tag, model_name=model_name, is_base=is_base)
            if is_base:
                document.results.insert(0, result)
            else:
                document.results.append(result)
        elif result.digest and info['digest'] and result.digest != info['digest']:
            logger.warning("Model changed since its partial results were recorded",
                           tag=tag, recorded=result.digest, current=info['digest'])
        result.model_name = model_name
        for key, value in info.items():
            if value is not None:
                setattr(result, key, value)
        if is_base:
            document.family = document.family or info['family']
            document.parameter_size = document.parameter_size or info['parameter_size']
        if tag.lower() in ctx.pulled:
            result.pulled_on_demand = True
            self._checkpoint(ctx)

        missing = set(result.missing_ids(suite))
        if result.question_results:
            logger.info("Resuming quantization", tag=tag,
                        answered=len(result.question_results), remaining=len(missing))

        await self._preload(ctx, model_name)
        base = document.base_result
        order = {qid: index for index, qid in enumerate(suite.question_ids())}
        for category, question in suite.iter_questions():
            if question.qualified_id not in missing:
                continue
            self.cancel_token.raise_if_cancelled()
            answer = await self._ask(ctx, model_name, category, question)
            result.question_results.append(answer)
            result.question_results.sort(key=lambda q: order.get(q.question_id, len(order)))
            logger.info("Question answered", tag=tag, question_id=answer.question_id,
                        tokens=answer.total_tokens, eval_tps=answer.eval_tokens_per_second)
            if self.parallel and not is_base and base is not None:
                base_question = base.question(answer.question_id)
                if base_question is not None:
                    self.background.submit(tag, base_question, answer)
                self._collect_judgments(ctx)

        await self._unload(model_name)
        ctx.tested.append(tag)
        self._checkpoint(ctx)
        logger.info("Quantization tested", tag=tag, questions=len(result.question_results))

        if self.judge is not None and not is_base:
            if self.parallel:
                if result.pulled_on_demand:
                    self._apply_judgments(ctx, await self.background.drain(tag))
            else:
                await self._judge_quantization(ctx, result)
            self._checkpoint(ctx)

        if result.pulled_on_demand and await self._cleanup_result(ctx, result, self.client):
            self._checkpoint(ctx)

    # EnsurePresent
    async def _ensure_present(self, ctx: RunContext, tag: str, result: Optional[QuantResult]) -> Dict[str, Any]:
        name = self.model_name(tag)
        entry = await self.client.find_model(name)
        if entry is not None:
            return entry
        if not self.request.on_demand and not (result is not None and result.pulled_on_demand):
            raise SourceNotFound(f"Model '{name}' is not on {self.client.base_url}")

        await self._pull(name)
        entry = await self.client.find_model(name)
        if entry is None:
            raise SourceNotFound(f"Model '{name}' was pulled but is not listed by {self.client.base_url}")
        ctx.pulled[tag.lower()] = entry.get('name') or name
        return entry

    async def _pull(self, name: str) -> None:
        logger.info("Pulling model on demand", model=name)
        last_error: Optional[Exception] = None
        for attempt in range(1, PULL_ATTEMPTS + 1):
            status = None
            try:
                async for event in self.client.pull(name):
                    if event.status != status:
                        status = event.status
                        logger.info("Pull progress", model=name, status=status)
                logger.info("Model pulled", model=name)
                return
            except NetworkError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning("Pull failed, retrying", model=name, attempt=attempt,
                               max_attempts=PULL_ATTEMPTS, error=str(e))
            if attempt < PULL_ATTEMPTS:
                await self.cancel_token.sleep(PULL_RETRY_DELAY * self.retry_delay_scale)
        raise last_error

    async def _model_info(self, model_name: str, tag: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        show = await self.client.show(model_name)
        details = show.get('details') or {}
        return {
            'family': details.get('family'),
            'parameter_size': details.get('parameter_size'),
            'quantization_type': details.get('quantization_level') or quantization_from_tag(tag),
            'digest': entry.get('digest'),
            'disk_size_bytes': entry.get('size'),
        }

    async def _check_fingerprints(self, ctx: RunContext) -> None:
        """Quantizations already on the server must match the base before anything is tested or saved"""
        reference = _fingerprint(ctx.document)
        for tag in ctx.tags:
            result = ctx.document.get_result(tag)
            if result is not None and result.is_complete(ctx.suite) and tag.lower() not in ctx.forced:
                continue
            name = self.model_name(tag)
            entry = await self.client.find_model(name)
            if entry is None:
                continue
            try:
                info = await self._model_info(entry.get('name') or name, tag, entry)
            except NetworkError as e:
                logger.warning("Model info unavailable, checking it when tested", tag=tag, error=str(e))
                continue
            _check_fingerprint(reference, tag, info)
            for field, value in reference.items():
                reference[field] = value or info.get(field)

    # Preload / PerQuestion
    async def _preload(self, ctx: RunContext, model_name: str) -> None:
        messages = [{'role': 'user', 'content': PRELOAD_PROMPT}]
        for attempt in range(1, PRELOAD_ATTEMPTS + 1):
            try:
                await self.client.chat(model_name, messages, options={'num_predict': 1}, timeout=ctx.timeout)
                return
            except NetworkError as e:
                if not (isinstance(e, RequestTimeout) or e.status in (500, 503)):
                    raise
                logger.warning("Preload failed", model=model_name, attempt=attempt,
                               max_attempts=PRELOAD_ATTEMPTS, error=str(e))
            if attempt < PRELOAD_ATTEMPTS:
                await self.cancel_token.sleep(PRELOAD_RETRY_DELAY * attempt * self.retry_delay_scale)
        logger.warning("Model did not preload, testing anyway", model=model_name)

    async def _unload(self, model_name: str) -> None:
        try:
            await self.client.unload(model_name)
        except NetworkError as e:
            logger.warning("Unload failed", model=model_name, error=str(e))

    async def _ask(self,
                   ctx: RunContext,
                   model_name: str,
                   category: SuiteCategory,
                   question: SuiteQuestion) -> QuestionResult:
        options = ctx.document.options
        request_options = options.generate_options(
            num_ctx=ctx.suite.context_length_for(category, question),
            num_predict=options.num_predict or ctx.suite.num_predict or DEFAULT_NUM_PREDICT,
        )
        response = await self._with_retries(
            ctx,
            lambda: self.client.generate(model_name, question.text, request_options,
                                         logprobs=True, timeout=ctx.timeout),
            f"{model_name} question {question.qualified_id}",
        )
        if 'logprobs' not in response:
            raise ModelSyncError(
                f"{self.client.base_url} returned no logprobs; a server version with logprobs support is required"
            )
        tokens = [
            TokenLogprob(token=item.get('token', ''), logprob=item.get('logprob', 0.0), bytes=item.get('bytes'))
            for item in response.get('logprobs') or []
        ]
        eval_count = response.get('eval_count') or len(tokens)
        return QuestionResult(
            question_id=question.qualified_id,
            category=category.name,
            question=question.text,
            answer=response.get('response', ''),
            tokens=tokens,
            eval_tokens_per_second=_tokens_per_second(eval_count, response.get('eval_duration')),
            prompt_tokens_per_second=_tokens_per_second(
                response.get('prompt_eval_count'), response.get('prompt_eval_duration')
            ),
            total_tokens=eval_count,
        )

    async def _with_retries(self, ctx: RunContext, call: Callable[[], Awaitable[Dict]], what: str) -> Dict:
        """Retry transient failures; after repeated timeouts ask whether to double the timeout"""
        while True:
            last_error: Optional[NetworkError] = None
            for attempt in range(1, QUESTION_ATTEMPTS + 1):
                try:
                    return await call()
                except NetworkError as e:
                    if not e.retryable:
                        raise
                    last_error = e
                    logger.warning("Request failed, retrying", what=what, attempt=attempt,
                                   max_attempts=QUESTION_ATTEMPTS, timeout=isinstance(e, RequestTimeout),
                                   error=str(e))
                if attempt < QUESTION_ATTEMPTS:
                    await self.cancel_token.sleep(QUESTION_RETRY_DELAY * attempt * self.retry_delay_scale)
            if not isinstance(last_error, RequestTimeout):
                raise last_error
            if not await self._extend_timeout(ctx):
                raise TimeoutDeclined(f"{what} timed out {QUESTION_ATTEMPTS} times at {ctx.timeout:g}s")

    async def _extend_timeout(self, ctx: RunContext) -> bool:
        if self.timeout_prompt is None:
            return False
        if not await self.timeout_prompt(ctx.timeout):
            return False
        ctx.timeout *= 2
        logger.info("Timeout doubled", timeout=ctx.timeout)
        return True

    # Judge
    async def _judge_quantization(self, ctx: RunContext, result: QuantResult) -> None:
        base = ctx.document.base_result
        if base is None:
            return
        judged = 0
        for question in result.question_results:
            base_question = base.question(question.question_id)
            if base_question is None or not self._needs_judgment(ctx, result.tag, question):
                continue
            judgment = await self.judge.judge_question(base_question, question)
            ctx.judged.add((result.tag.lower(), question.question_id))
            if judgment is not None:
                question.judgment = judgment
                judged += 1
        if judged:
            logger.info("Quantization judged", tag=result.tag, judged=judged)

    def _needs_judgment(self, ctx: RunContext, tag: str, question: QuestionResult) -> bool:
        rejudge = self.request.rejudge and (tag.lower(), question.question_id) not in ctx.judged
        return needs_judgment(question, self.judge.judge_model, rejudge)

    def _apply_judgments(self, ctx: RunContext, outcomes) -> None:
        for tag, question_id, judgment in outcomes:
            ctx.judged.add((tag.lower(), question_id))
            result = ctx.document.get_result(tag)
            question = result.question(question_id) if result is not None else None
            if question is not None and judgment is not None:
                question.judgment = judgment

    async def _judge_pending(self, ctx: RunContext) -> None:
        """Judge every complete candidate still missing verdicts, including ones tested earlier"""
        if self.judge is None:
            return
        base = ctx.document.base_result
        if base is None:
            return
        for result in ctx.document.results:
            if result.is_base or not result.is_complete(ctx.suite):
                continue
            if self.parallel:
                for question in result.question_results:
                    base_question = base.question(question.question_id)
                    if base_question is not None and self._needs_judgment(ctx, result.tag, question):
                        self.background.submit(result.tag, base_question, question)
            else:
                await self._judge_quantization(ctx, result)
                self._checkpoint(ctx)
        if self.parallel:
            pending = self.background.pending
            if pending:
                logger.info("Waiting for background judgments", pending=pending)
            while self.background.pending:
                await self.cancel_token.run(self.background.wait_next())
                self._collect_judgments(ctx)
            self._apply_judgments(ctx, await self.background.drain())

    def _collect_judgments(self, ctx: RunContext) -> None:
        """Fold in finished background verdicts and persist them right away"""
        outcomes = self.background.collect_done()
        if outcomes:
            self._apply_judgments(ctx, outcomes)
            self._checkpoint(ctx)

    # Persist / Cleanup
    def _checkpoint(self, ctx: RunContext) -> None:
        """Fold in finished background judgments, recompute scores and write the document"""
        if self.background is not None:
            self._apply_judgments(ctx, self.background.collect_done())
        if not ctx.document.results:
            return
        compute_scores(ctx.document, self.scoring)
        save_results(ctx.document, ctx.output_path)

    def _finished(self, ctx: RunContext, result: QuantResult) -> bool:
        """Complete, and judged when a judge is in use"""
        if not result.is_complete(ctx.suite):
            return False
        if self.judge is None or result.is_base:
            return True
        base = ctx.document.base_result
        return not any(
            base is not None and base.question(q.question_id) is not None
            and needs_judgment(q, self.judge.judge_model)
            for q in result.question_results
        )

    async def _cleanup_result(self, ctx: RunContext, result: QuantResult, client: OllamaClient) -> bool:
        """Remove an on-demand model once finished; partial results keep their model"""
        if not self._finished(ctx, result):
            logger.info("Keeping on-demand model until its results are complete",
                        tag=result.tag, model=result.model_name)
            return False
        try:
            await client.delete(result.model_name)
        except NetworkError as e:
            logger.warning("Could not remove on-demand model", model=result.model_name, error=str(e))
            return False
        result.pulled_on_demand = False
        ctx.pulled.pop(result.tag.lower(), None)
        logger.info("Removed on-demand model", tag=result.tag, model=result.model_name)
        return True

    async def _cleanup_on_demand(self, ctx: RunContext, client: OllamaClient) -> bool:
        changed = False
        for result in ctx.document.results:
            if result.pulled_on_demand and await self._cleanup_result(ctx, result, client):
                changed = True
        await self._remove_pulled(ctx, client)
        return changed

    async def _remove_pulled(self, ctx: RunContext, client: OllamaClient, unrecorded_only: bool = True) -> None:
        """Delete models this run pulled; by default only those without a result, e.g. after a failed test"""
        for tag, name in list(ctx.pulled.items()):
            if unrecorded_only and ctx.document.get_result(tag) is not None:
                continue
            try:
                await client.delete(name)
                logger.info("Removed on-demand model", model=name)
            except NetworkError as e:
                logger.warning("Could not remove on-demand model", model=name, error=str(e))
            ctx.pulled.pop(tag, None)

    async def _finalize(self, ctx: RunContext) -> None:
        await self._judge_pending(ctx)
        self._checkpoint(ctx)
        if await self._cleanup_on_demand(ctx, self.client):
            self._checkpoint(ctx)
        ctx.finished = True

        for result in ctx.document.results:
            scores = result.scores
            logger.info("Quantization summary",
                        tag=result.tag,
                        base=result.is_base,
                        questions=len(result.question_results),
                        score=scores.average_score if scores else None,
                        judge_score=scores.average_judge_score if scores else None,
                        eval_tps_percent=scores.eval_tps_percent if scores else None)
        if ctx.failed:
            logger.warning("Some quantizations failed", failed=ctx.failed)
        logger.info("QC run complete", path=str(ctx.output_path), tested=ctx.tested)

    async def _shutdown(self, ctx: RunContext, cancelled: bool) -> None:
        """Single cleanup path for cancelled, stopped and failed runs"""
        if self.background is not None:
            try:
                self._apply_judgments(ctx, self.background.collect_done())
            except RunCancelled:
                logger.debug("Background judgments cancelled")
            self.background.cancel_all()
        if ctx.aborted:
            restore_results(ctx.output_path, ctx.snapshot)
        else:
            self._checkpoint(ctx)
        if cancelled and self.cancel_token.forced:
            logger.warning("Forced cancellation, skipping on-demand cleanup")
            return
        if ctx.aborted:
            # the restored file does not know about this run's pulls
            await self._remove_pulled(ctx, self.client.detached(), unrecorded_only=False)
            return
        if await self._cleanup_on_demand(ctx, self.client.detached()) and not ctx.aborted:
            self._checkpoint(ctx)


def compute_scores(document: QcResultsFile, scoring: ScoringEngine) -> None:
    """Scores of every quantization against the document's base"""
    base = document.base_result
    if base is None:
        return
    base.scores = scoring.base_score(base)
    for result in document.results:
        if result is not base:
            result.scores = scoring.score_quant(base, result)


def _tokens_per_second(count: Optional[int], duration_ns: Optional[int]) -> float:
    if not count or not duration_ns:
        return 0.0
    return count / (duration_ns / 1e9)


def _fingerprint(document: QcResultsFile) -> Dict[str, Optional[str]]:
    return {'family': document.family, 'parameter_size': document.parameter_size}


def _check_fingerprint(expected: Dict[str, Optional[str]], tag: str, info: Dict[str, Any]) -> None:
    for field, wanted in expected.items():
        actual = info.get(field)
        if wanted and actual and wanted.lower() != actual.lower():
            raise AbortRun(
                f"'{tag}' has {field} '{actual}' but the base has '{wanted}'; "
                f"quantizations of different models cannot be compared"
            )
