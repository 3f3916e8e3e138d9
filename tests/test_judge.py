import pytest

from fakes import FakeJudgeProvider, FakeServer
from model_sync.core.errors import JudgeResponseError, NetworkError, ProviderConfigError
from model_sync.schemas.qc import BestAnswer, JudgmentResult, QuestionResult
from model_sync.services.cloud_providers import OpenAICompatibleProvider
from model_sync.services.judge import (
    CLOUD_RETRY_POLICY, LOCAL_RETRY_POLICY, BackgroundJudgments, JudgeOrchestrator, OllamaJudge,
    RetryPolicy, build_user_prompt, create_judge, needs_judgment
)
from model_sync.services.judge_parsing import (
    ParsedVerdict, normalize_best_answer, normalize_score, parse_judge_response, repair_truncated_json
)

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0)


def question(answer, question_id="1-1", judgment=None):
    return QuestionResult(question_id=question_id, question="Why is the sky blue?",
                          answer=answer, judgment=judgment)


class ScriptedProvider(FakeJudgeProvider):
    """Plays back verdicts and errors in order"""

    def __init__(self, script):
        super().__init__()
        self.script = list(script)

    async def judge(self, system_prompt, user_prompt, max_tokens):
        self.prompts.append(user_prompt)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(step, Exception):
            raise step
        return step


# Parsing
def test_parse_well_formed_response():
    verdict = parse_judge_response('{"score": 85, "reason": "A and B match: same facts", "bestanswer": "B"}')

    assert verdict.score == 85
    assert verdict.reason == "A and B match: same facts"
    assert verdict.best_answer == BestAnswer.CANDIDATE
    assert verdict.raw_response is None


def test_parse_response_wrapped_in_prose():
    verdict = parse_judge_response('Here you go:\n```json\n{"Similarity": 0.7, "explanation": "close"}\n```')

    assert verdict.score == 70
    assert verdict.reason == "close"


def test_parse_truncated_response():
    verdict = parse_judge_response('{"score": 60, "reason": "A and B differ: the first one')

    assert verdict.score == 60
    assert verdict.reason == "A and B differ: the first one"


def test_parse_key_value_text():
    verdict = parse_judge_response('score = 42, reason: "partly overlapping", best_answer: tie')

    assert verdict.score == 42
    assert verdict.reason == "partly overlapping"
    assert verdict.best_answer == BestAnswer.TIE


def test_score_without_reason_keeps_raw_text():
    verdict = parse_judge_response('{"score": 90}')

    assert verdict.reason == ""
    assert verdict.raw_response == '{"score": 90}'


def test_missing_score_raises():
    with pytest.raises(JudgeResponseError) as exc_info:
        parse_judge_response("I cannot compare these.")
    assert exc_info.value.raw_response == "I cannot compare these."


@pytest.mark.parametrize("value,expected", [
    (85, 85), ("72", 72), (0.5, 50), (1, 100), (0, 1), (-5, 1), (250, 100), ("n/a", None),
])
def test_normalize_score(value, expected):
    assert normalize_score(value) == expected


def test_normalize_best_answer():
    assert normalize_best_answer("a") == BestAnswer.BASE
    assert normalize_best_answer("Response B") is None
    assert normalize_best_answer("equal") == BestAnswer.TIE
    assert normalize_best_answer(None) is None


def test_repair_truncated_json():
    assert repair_truncated_json('{"a": [1, 2') == '{"a": [1, 2]}'
    assert repair_truncated_json('{"a": "x') == '{"a": "x"}'


# Orchestration
def test_user_prompt_contains_both_answers():
    prompt = build_user_prompt("Q?", "first answer", "second answer")

    assert "--- RESPONSE A ---\nfirst answer" in prompt
    assert "--- RESPONSE B ---\nsecond answer" in prompt


def test_needs_judgment():
    judged = JudgmentResult(judge_model="judge-a", score=80)

    assert needs_judgment(question("x"), "judge-a")
    assert not needs_judgment(question("x", judgment=judged), "judge-a")
    assert needs_judgment(question("x", judgment=judged), "judge-b")
    assert needs_judgment(question("x", judgment=judged), "judge-a", rejudge=True)


def test_retry_policy_delays():
    assert [CLOUD_RETRY_POLICY.delay(n) for n in range(1, 6)] == [2, 4, 8, 16, 16]
    assert LOCAL_RETRY_POLICY.max_attempts == 25


@pytest.mark.asyncio
async def test_orchestrator_retries_transient_failures():
    provider = ScriptedProvider([
        NetworkError("overloaded", status=503),
        JudgeResponseError("garbled", raw_response="???"),
        ParsedVerdict(score=77, reason="A and B match: yes", best_answer=BestAnswer.TIE),
    ])
    orchestrator = JudgeOrchestrator(provider, "judge", retry_policy=NO_WAIT)

    judgment = await orchestrator.judge_question(question("base"), question("candidate"))

    assert judgment.score == 77
    assert judgment.best_answer == BestAnswer.TIE
    assert judgment.judge_model == "judge"
    assert len(provider.prompts) == 3


@pytest.mark.asyncio
async def test_orchestrator_gives_up_after_attempts():
    provider = ScriptedProvider([NetworkError("down", status=502)])
    orchestrator = JudgeOrchestrator(provider, "judge", retry_policy=NO_WAIT)

    assert await orchestrator.judge_question(question("base"), question("candidate")) is None
    assert len(provider.prompts) == 3


@pytest.mark.asyncio
async def test_orchestrator_does_not_retry_bad_credentials():
    provider = ScriptedProvider([ProviderConfigError("bad key")])
    orchestrator = JudgeOrchestrator(provider, "judge", retry_policy=NO_WAIT)

    with pytest.raises(ProviderConfigError):
        await orchestrator.judge_question(question("base"), question("candidate"))
    assert len(provider.prompts) == 1


@pytest.mark.asyncio
async def test_orchestrator_asks_again_for_missing_reason():
    provider = ScriptedProvider([ParsedVerdict(score=50, raw_response='{"score": 50}')])
    orchestrator = JudgeOrchestrator(provider, "judge", retry_policy=NO_WAIT,
                                     reason_retries=3, reason_retry_delay=0)

    judgment = await orchestrator.judge_question(question("base"), question("candidate"))

    assert len(provider.prompts) == 3
    assert judgment.score == 50
    assert judgment.reason == ""
    assert judgment.raw_response == '{"score": 50}'


@pytest.mark.asyncio
async def test_background_judgments_drain_by_tag():
    background = BackgroundJudgments(
        JudgeOrchestrator(FakeJudgeProvider(score=66), "judge", retry_policy=NO_WAIT)
    )
    base = question("base")

    background.submit("q4_0", base, question("one"))
    background.submit("q4_0", base, question("one"))
    background.submit("q8_0", base, question("two", question_id="1-2"))
    assert len(background) == 2

    drained = await background.drain("q4_0")
    assert [(tag, qid, j.score) for tag, qid, j in drained] == [("q4_0", "1-1", 66)]
    assert len(background) == 1

    rest = await background.drain()
    assert [(tag, qid) for tag, qid, _ in rest] == [("q8_0", "1-2")]
    assert background.pending == 0


@pytest.mark.asyncio
async def test_create_judge_references():
    local = FakeServer()

    provider, policy = create_judge("qwen3:32b", local)
    assert isinstance(provider, OllamaJudge)
    assert provider.client is local
    assert policy is LOCAL_RETRY_POLICY

    provider, policy = create_judge("http://judge-box:11434/qwen3:32b", local)
    assert isinstance(provider, OllamaJudge)
    assert provider.client.base_url == "http://judge-box:11434"
    assert provider.model == "qwen3:32b"
    await provider.close()

    provider, policy = create_judge("@openai:sk-test/gpt-4o", local)
    assert isinstance(provider, OpenAICompatibleProvider)
    assert policy is CLOUD_RETRY_POLICY


@pytest.mark.asyncio
async def test_ollama_judge_validation():
    server = FakeServer()
    server.add_model("qwen3:32b")

    assert await OllamaJudge(server, "qwen3:32b").validate_connection() == (True, None)
    ok, error = await OllamaJudge(server, "missing:1b").validate_connection()
    assert not ok
    assert "missing:1b" in error
