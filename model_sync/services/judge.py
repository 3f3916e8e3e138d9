"""
Judge orchestration
Builds judge prompts, drives the judge with retry/backoff and tracks background
judgments for the parallel execution mode
"""

import asyncio
import re
from typing import Dict, List, Optional, Tuple

import structlog

from ..config import normalize_base_url
from ..core.cancellation import CancellationToken
from ..core.errors import (
    JudgeResponseError, NetworkError, ProviderConfigError, RequestTimeout, RunCancelled
)
from ..models.ollama_client import OllamaClient
from ..schemas.qc import DEFAULT_JUDGE_CONTEXT_LENGTH, JudgmentResult, QuestionResult
from .cloud_providers import DEFAULT_TIMEOUT, JudgeProvider, create_provider
from .judge_parsing import ParsedVerdict, parse_judge_response

logger = structlog.get_logger(__name__)

JUDGE_MAX_TOKENS = 800
JUDGE_SEED = 42
REASON_RETRIES = 5
REASON_RETRY_DELAY = 0.5

JUDGE_SYSTEM_PROMPT = """You are a SIMILARITY JUDGE. You compare two AI-generated responses (A and B) to the same question and measure how SIMILAR they are to each other.

SCORING SCALE (integer 1-100):
100 = identical content and approach, or RESPONSE B is clearly better
90-99 = nearly identical content and approach
80-89 = very similar, minor to noticeable differences
70-79 = very or moderately similar, significant differences
60-69 = moderately similar, noticeable differences
41-59 = some overlap
21-40 = little overlap
1-20 = completely different responses or gibberish

RULES:
- Measure SIMILARITY between A and B, not quality or correctness.
- Same code or content in both = HIGH score. Different code or content = LOW score.
- Do not mention JSON, language proficiency or format compliance.
- Output the score as an INTEGER 1-100, not a 0.0-1.0 fraction: 85% similar is 85.

REASON FORMAT: start with 'A and B match:' or 'A and B differ:' and explain what each contains.

BEST ANSWER: 'A' if RESPONSE A is better, 'B' if RESPONSE B is better, 'AB' if they are equally good."""

JUDGE_USER_INSTRUCTIONS = """Compare RESPONSE A and RESPONSE B below and score their SIMILARITY (1-100).
Answer with a JSON object only: {"score": <integer 1-100>, "reason": "<explanation>", "bestanswer": "A" | "B" | "AB"}"""

JUDGE_RESPONSE_FORMAT = {
    'type': 'object',
    'properties': {
        'score': {
            'type': 'number',
            'description': 'Similarity score on a 1-100 scale (85 for 85% similar)',
        },
        'reason': {
            'type': 'string',
            'description': "Explanation starting with 'A and B match:' or 'A and B differ:'",
        },
        'bestanswer': {
            'type': 'string',
            'enum': ['A', 'B', 'AB'],
        },
    },
    'required': ['score', 'reason'],
}


def build_user_prompt(question: str, base_answer: str, candidate_answer: str) -> str:
    return (
        f"{JUDGE_USER_INSTRUCTIONS}\n\n"
        f"--- QUESTION (for context only) ---\n{question}\n--- END QUESTION ---\n\n"
        f"--- RESPONSE A ---\n{base_answer}\n--- END RESPONSE A ---\n\n"
        f"--- RESPONSE B ---\n{candidate_answer}\n--- END RESPONSE B ---\n\n"
        "How similar are RESPONSE A and RESPONSE B? Provide score, reason and bestanswer."
    )


def needs_judgment(question: QuestionResult, judge_model: str, rejudge: bool = False) -> bool:
    """Absent, recorded by another judge, or re-judging forced"""
    return rejudge or question.judgment is None or question.judgment.judge_model != judge_model


class RetryPolicy:
    """Bounded attempts with a doubling delay capped at max_delay"""

    def __init__(self, max_attempts: int, initial_delay: float, max_delay: float):
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.initial_delay * (2 ** (attempt - 1)))


LOCAL_RETRY_POLICY = RetryPolicy(max_attempts=25, initial_delay=5.0, max_delay=30.0)
CLOUD_RETRY_POLICY = RetryPolicy(max_attempts=5, initial_delay=2.0, max_delay=16.0)


class OllamaJudge:
    """A judge model served by an inference server, local or remote"""
    provider_name = 'ollama'

    def __init__(self, client: OllamaClient, model: str,
                 context_length: int = DEFAULT_JUDGE_CONTEXT_LENGTH, owns_client: bool = False):
        self.client = client
        self.model = model
        self.context_length = context_length
        self._owns_client = owns_client

    async def validate_connection(self) -> Tuple[bool, Optional[str]]:
        if await self.client.find_model(self.model) is None:
            return False, f"Judge model '{self.model}' not found on {self.client.base_url}"
        return True, None

    async def list_models(self) -> Optional[List[str]]:
        return [entry.get('name', '') for entry in await self.client.list_models()]

    async def judge(self, system_prompt: str, user_prompt: str, max_tokens: int) -> ParsedVerdict:
        response = await self.client.chat(
            self.model,
            [
                {'role': 'system', 'content': system_prompt},
                {'role': 'user', 'content': user_prompt},
            ],
            format=JUDGE_RESPONSE_FORMAT,
            options={
                'temperature': 0.0,
                'seed': JUDGE_SEED,
                'num_predict': max_tokens,
                'num_ctx': self.context_length,
            },
        )
        content = (response.get('message') or {}).get('content', '')
        return parse_judge_response(content)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.close()


def create_judge(reference: str,
                 local_client: OllamaClient,
                 context_length: int = DEFAULT_JUDGE_CONTEXT_LENGTH,
                 timeout: float = DEFAULT_TIMEOUT,
                 cancel_token: Optional[CancellationToken] = None) -> Tuple[JudgeProvider, RetryPolicy]:
    """
    Build a judge from a reference:
    'model' (local server), 'http(s)://host:port/model' (other server) or '@provider[:token]/model'
    """
    reference = reference.strip()
    if reference.startswith('@'):
        return create_provider(reference, timeout=timeout, cancel_token=cancel_token), CLOUD_RETRY_POLICY
    match = re.match(r'^(https?://[^/]+)/(.+)$', reference, re.IGNORECASE)
    if match:
        server, model = match.groups()
        client = OllamaClient(normalize_base_url(server), timeout=timeout, cancel_token=cancel_token)
        return OllamaJudge(client, model, context_length, owns_client=True), LOCAL_RETRY_POLICY
    return OllamaJudge(local_client, reference, context_length), LOCAL_RETRY_POLICY


class JudgeOrchestrator:
    """Obtains one verdict per question with retry, backoff and cancellation"""

    def __init__(self,
                 provider: JudgeProvider,
                 judge_model: str,
                 retry_policy: RetryPolicy = LOCAL_RETRY_POLICY,
                 cancel_token: Optional[CancellationToken] = None,
                 reason_retries: int = REASON_RETRIES,
                 reason_retry_delay: float = REASON_RETRY_DELAY,
                 max_tokens: int = JUDGE_MAX_TOKENS):
        self.provider = provider
        self.judge_model = judge_model
        self.retry_policy = retry_policy
        self.cancel_token = cancel_token or CancellationToken()
        self.reason_retries = reason_retries
        self.reason_retry_delay = reason_retry_delay
        self.max_tokens = max_tokens

    async def _attempt(self, user_prompt: str) -> ParsedVerdict:
        """One verdict, retrying transport failures and malformed output with backoff"""
        policy = self.retry_policy
        last_error: Optional[Exception] = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return await self.cancel_token.run(
                    self.provider.judge(JUDGE_SYSTEM_PROMPT, user_prompt, self.max_tokens)
                )
            except (RunCancelled, ProviderConfigError):
                raise
            except JudgeResponseError as e:
                last_error = e
                logger.warning("Judge response unparseable",
                               attempt=attempt, max_attempts=policy.max_attempts,
                               raw_response=(e.raw_response or '')[:2000])
            except NetworkError as e:
                if not e.retryable:
                    raise
                last_error = e
                logger.warning("Judge request failed",
                               attempt=attempt, max_attempts=policy.max_attempts,
                               timeout=isinstance(e, RequestTimeout), error=str(e))
            if attempt < policy.max_attempts:
                await self.cancel_token.sleep(policy.delay(attempt))
        raise last_error

    async def judge_question(self, base: QuestionResult, candidate: QuestionResult) -> Optional[JudgmentResult]:
        """
        Judge candidate against base.

        Returns:
            The judgment, or None when no usable score could be obtained. A verdict
            without a reason after all reason retries is returned with an empty reason
            and the raw response attached.
        """
        user_prompt = build_user_prompt(base.question, base.answer, candidate.answer)
        verdict: Optional[ParsedVerdict] = None
        for attempt in range(1, self.reason_retries + 1):
            try:
                verdict = await self._attempt(user_prompt)
            except JudgeResponseError as e:
                logger.error("Judgment skipped, response never parsed",
                             question_id=candidate.question_id, raw_response=e.raw_response)
                return None
            except NetworkError as e:
                logger.error("Judgment skipped after retries", question_id=candidate.question_id, error=str(e))
                return None
            if verdict.reason:
                break
            if attempt < self.reason_retries:
                await self.cancel_token.sleep(self.reason_retry_delay)

        if not verdict.reason:
            logger.warning("Judge returned a score without a reason",
                           question_id=candidate.question_id,
                           attempts=self.reason_retries,
                           raw_response=verdict.raw_response)

        return JudgmentResult(
            judge_model=self.judge_model,
            score=verdict.score,
            reason=verdict.reason,
            best_answer=verdict.best_answer,
            raw_response=verdict.raw_response if not verdict.reason else None,
        )

    async def close(self) -> None:
        await self.provider.close()


class BackgroundJudgments:
    """
    Tracks judgment tasks started while testing continues.

    Results are handed back through ``drain`` so that only the caller mutates the
    result document.
    """

    def __init__(self, orchestrator: JudgeOrchestrator):
        self.orchestrator = orchestrator
        self._tasks: Dict[Tuple[str, str], asyncio.Task] = {}

    @property
    def pending(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, tag: str, base: QuestionResult, candidate: QuestionResult) -> None:
        key = (tag, candidate.question_id)
        if key in self._tasks:
            return
        self._tasks[key] = asyncio.ensure_future(self.orchestrator.judge_question(base, candidate))

    async def drain(self, tag: Optional[str] = None) -> List[Tuple[str, str, Optional[JudgmentResult]]]:
        """Await outstanding tasks (all, or those of one tag) and return their results"""
        keys = [key for key in self._tasks if tag is None or key[0] == tag]
        if not keys:
            return []
        outcomes = await asyncio.gather(*(self._tasks[key] for key in keys), return_exceptions=True)
        results = []
        for key, outcome in zip(keys, outcomes):
            del self._tasks[key]
            if isinstance(outcome, RunCancelled):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Background judgment failed", tag=key[0], question_id=key[1], error=str(outcome))
                outcome = None
            results.append((key[0], key[1], outcome))
        return results

    async def wait_next(self) -> None:
        """Wait until at least one outstanding task finishes"""
        running = [task for task in self._tasks.values() if not task.done()]
        if running:
            await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)

    def collect_done(self) -> List[Tuple[str, str, Optional[JudgmentResult]]]:
        """Results of finished tasks, without waiting for the rest"""
        results = []
        for key in [key for key, task in self._tasks.items() if task.done()]:
            task = self._tasks.pop(key)
            if task.cancelled():
                results.append((key[0], key[1], None))
                continue
            error = task.exception()
            if isinstance(error, RunCancelled):
                raise error
            if error is not None:
                logger.error("Background judgment failed", tag=key[0], question_id=key[1], error=str(error))
            results.append((key[0], key[1], None if error is not None else task.result()))
        return results

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
