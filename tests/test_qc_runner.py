import asyncio
import json

import pytest

from fakes import FakeJudgeProvider, FakeRegistry, FakeServer
from model_sync.core.cancellation import CancellationToken
from model_sync.core.errors import AbortRun, NetworkError, NotFoundError, RequestTimeout, StreamError
from model_sync.models.question_suites import load_suite
from model_sync.models.results_file import load_results
from model_sync.models.tag_resolver import TagResolver
from model_sync.schemas.qc import JudgeMode, QcRunRequest
from model_sync.schemas.transfer import MEDIA_TYPE_MODEL
from model_sync.services.judge import JudgeOrchestrator, RetryPolicy
from model_sync.services.qc_runner import (
    EXIT_CANCELLED, EXIT_NO_RESULTS, EXIT_OK, QcRunner, choose_base_tag, looks_like_base
)

MODEL = "llama3.2"


@pytest.fixture
def suite_path(tmp_path):
    path = tmp_path / "mini.json"
    path.write_text(json.dumps({
        "name": "mini",
        "categories": [
            {"id": 1, "name": "Reasoning", "questions": [
                {"questionId": 1, "text": "What is six times seven"},
                {"questionId": 2, "text": "What is the capital of France"},
            ]},
            {"id": 2, "name": "Coding", "questions": [
                {"questionId": 1, "text": "Write hello world"},
            ]},
        ],
    }))
    return path


@pytest.fixture
def server():
    server = FakeServer()
    server.add_model(f"{MODEL}:fp16", quantization="F16")
    server.add_model(f"{MODEL}:q4_k_m", quantization="Q4_K_M")
    return server


@pytest.fixture
def output(tmp_path):
    return tmp_path / "results" / "llama3.2.qc.json"


def make_request(suite_path, output, **kwargs):
    kwargs.setdefault('quants', 'fp16,q4_k_m')
    return QcRunRequest(model=MODEL, suite=str(suite_path), output=str(output), **kwargs)


def make_runner(request, server, registry=None, judge=None, token=None, **kwargs):
    return QcRunner(
        request,
        server,
        TagResolver(registry or FakeRegistry(), server),
        judge=judge,
        cancel_token=token,
        retry_delay_scale=0,
        **kwargs,
    )


def make_judge(provider=None):
    return JudgeOrchestrator(
        provider or FakeJudgeProvider(),
        "fake-judge",
        retry_policy=RetryPolicy(max_attempts=2, initial_delay=0, max_delay=0),
        reason_retry_delay=0,
    )


def test_base_tag_detection():
    assert looks_like_base("8b-instruct-fp16")
    assert looks_like_base("hf.co/ns/repo:F16")
    assert not looks_like_base("fp16x")
    assert choose_base_tag(["q4_k_m", "q8_0", "bf16"]) == "bf16"
    assert choose_base_tag(["q4_k_m", "q8_0"]) == "q8_0"
    assert choose_base_tag(["q4_0"]) == "fp16"


@pytest.mark.asyncio
async def test_run_scores_candidate_against_base(suite_path, server, output):
    runner = make_runner(make_request(suite_path, output), server)

    assert await runner.run() == EXIT_OK

    document = load_results(output)
    assert document.base_tag == "fp16"
    assert document.family == "llama"
    assert [r.tag for r in document.results] == ["fp16", "q4_k_m"]
    base, candidate = document.results
    assert base.is_base and not candidate.is_base
    assert candidate.quantization_type == "Q4_K_M"
    assert [q.question_id for q in candidate.question_results] == ["1-1", "1-2", "2-1"]
    assert candidate.question("1-1").category == "Reasoning"
    assert base.scores.average_score == 100
    assert 0 < candidate.scores.average_score < 100
    assert set(candidate.scores.category_scores) == {"Reasoning", "Coding"}
    assert candidate.scores.eval_tps_percent == 100


@pytest.mark.asyncio
async def test_base_is_tested_first(suite_path, server, output):
    request = make_request(suite_path, output, quants="q4_k_m,fp16")

    await make_runner(request, server).run()

    tested = [model for model, _ in server.generated]
    assert tested[:3] == [f"{MODEL}:fp16"] * 3
    assert tested[3:] == [f"{MODEL}:q4_k_m"] * 3


@pytest.mark.asyncio
async def test_cancelled_run_resumes_missing_questions(suite_path, server, output):
    token = CancellationToken()

    async def cancel_during_candidate(model, prompt):
        if model.endswith("q4_k_m") and prompt == "What is the capital of France":
            token.cancel()

    server.generate_hook = cancel_during_candidate
    request = make_request(suite_path, output)

    assert await make_runner(request, server, token=token).run() == EXIT_CANCELLED
    partial = load_results(output).get_result("q4_k_m")
    assert [q.question_id for q in partial.question_results] == ["1-1", "1-2"]

    server.generate_hook = None
    server.generated.clear()
    assert await make_runner(request, server).run() == EXIT_OK

    assert server.generated == [(f"{MODEL}:q4_k_m", "Write hello world")]
    complete = load_results(output).get_result("q4_k_m")
    assert [q.question_id for q in complete.question_results] == ["1-1", "1-2", "2-1"]


@pytest.mark.asyncio
async def test_complete_results_are_not_retested(suite_path, server, output):
    request = make_request(suite_path, output)
    await make_runner(request, server).run()
    server.generated.clear()

    assert await make_runner(request, server).run() == EXIT_OK
    assert server.generated == []

    await make_runner(make_request(suite_path, output, force=True), server).run()
    assert len(server.generated) == 6


@pytest.mark.asyncio
async def test_on_demand_model_survives_crash_until_complete(suite_path, output):
    server = FakeServer()
    server.add_model(f"{MODEL}:fp16")
    server.add_pullable(f"{MODEL}:q4_k_m")
    registry = FakeRegistry()
    registry.publish(f"{MODEL}:q4_k_m", {MEDIA_TYPE_MODEL: b"weights"})

    async def crash(model, prompt):
        if model.endswith("q4_k_m") and prompt == "What is the capital of France":
            raise RuntimeError("power cut")

    server.generate_hook = crash
    with pytest.raises(RuntimeError):
        await make_runner(make_request(suite_path, output, on_demand=True), server, registry).run()

    assert server.pulled == [f"{MODEL}:q4_k_m"]
    assert f"{MODEL}:q4_k_m" not in server.deleted
    partial = load_results(output).get_result("q4_k_m")
    assert partial.pulled_on_demand

    # the flag in the file is enough to get the model cleaned up later
    server.generate_hook = None
    assert await make_runner(make_request(suite_path, output), server, registry).run() == EXIT_OK

    assert server.deleted == [f"{MODEL}:q4_k_m"]
    assert await server.find_model(f"{MODEL}:q4_k_m") is None
    assert not load_results(output).get_result("q4_k_m").pulled_on_demand


@pytest.mark.asyncio
async def test_on_demand_requires_registry_copy(suite_path, output):
    server = FakeServer()
    server.add_model(f"{MODEL}:fp16")

    with pytest.raises(NotFoundError):
        await make_runner(make_request(suite_path, output, on_demand=True), server, FakeRegistry()).run()
    assert server.generated == []


def on_demand_setup():
    server = FakeServer()
    server.add_model(f"{MODEL}:fp16")
    server.add_pullable(f"{MODEL}:q4_k_m")
    registry = FakeRegistry()
    registry.publish(f"{MODEL}:q4_k_m", {MEDIA_TYPE_MODEL: b"weights"})
    return server, registry


@pytest.mark.asyncio
async def test_pull_error_event_is_not_retried(suite_path, output):
    server, registry = on_demand_setup()
    attempts = []

    async def failing_pull(model, insecure=False):
        attempts.append(model)
        raise StreamError("POST /api/pull: pull model manifest: invalid tag")
        yield

    server.pull = failing_pull
    request = make_request(suite_path, output, on_demand=True)

    assert await make_runner(request, server, registry).run() == EXIT_OK

    assert attempts == [f"{MODEL}:q4_k_m"]
    assert load_results(output).get_result("q4_k_m") is None


@pytest.mark.asyncio
async def test_pull_network_error_is_retried(suite_path, output):
    server, registry = on_demand_setup()
    pull = server.pull
    attempts = []

    async def flaky_pull(model, insecure=False):
        attempts.append(model)
        if len(attempts) == 1:
            raise NetworkError("connection reset")
        async for event in pull(model, insecure):
            yield event

    server.pull = flaky_pull
    request = make_request(suite_path, output, on_demand=True)

    assert await make_runner(request, server, registry).run() == EXIT_OK

    assert len(attempts) == 2
    assert load_results(output).get_result("q4_k_m").is_complete(load_suite(str(suite_path)))


@pytest.mark.asyncio
async def test_missing_quantization_fails_before_any_work(suite_path, server, output):
    request = make_request(suite_path, output, quants="fp16,q8_0")

    with pytest.raises(NotFoundError, match="q8_0"):
        await make_runner(request, server).run()

    assert server.generated == []
    assert not output.exists()


@pytest.mark.asyncio
async def test_fingerprint_mismatch_leaves_file_untouched(suite_path, server, output):
    await make_runner(make_request(suite_path, output, quants="fp16"), server).run()
    before = output.read_bytes()
    server.add_model(f"{MODEL}:q8_0", parameter_size="70B")
    server.generated.clear()

    with pytest.raises(AbortRun, match="parameter_size"):
        await make_runner(make_request(suite_path, output, quants="q4_k_m,q8_0"), server).run()

    assert server.generated == []
    assert output.read_bytes() == before


@pytest.mark.asyncio
async def test_family_mismatch_is_rejected(suite_path, server, output):
    await make_runner(make_request(suite_path, output), server).run()
    before = output.read_bytes()
    server.add_model(f"{MODEL}:q8_0", family="qwen2")

    with pytest.raises(AbortRun, match="family"):
        await make_runner(make_request(suite_path, output, quants="q8_0"), server).run()

    assert output.read_bytes() == before


@pytest.mark.asyncio
async def test_mismatch_without_results_file_creates_nothing(suite_path, server, output):
    server.add_model(f"{MODEL}:q8_0", parameter_size="70B")

    with pytest.raises(AbortRun):
        await make_runner(make_request(suite_path, output, quants="fp16,q8_0"), server).run()

    assert server.generated == []
    assert not output.exists()


@pytest.mark.asyncio
async def test_mismatch_found_after_pull_restores_file(suite_path, server, output):
    await make_runner(make_request(suite_path, output, quants="fp16"), server).run()
    before = output.read_bytes()
    server.add_pullable(f"{MODEL}:q8_0", parameter_size="70B")
    registry = FakeRegistry()
    registry.publish(f"{MODEL}:q8_0", {MEDIA_TYPE_MODEL: b"weights"})
    request = make_request(suite_path, output, quants="q4_k_m,q8_0", on_demand=True)

    with pytest.raises(AbortRun, match="parameter_size"):
        await make_runner(request, server, registry).run()

    # q4_k_m was tested and checkpointed before the pull revealed the mismatch
    assert f"{MODEL}:q4_k_m" in [model for model, _ in server.generated]
    assert output.read_bytes() == before
    assert server.deleted == [f"{MODEL}:q8_0"]


@pytest.mark.asyncio
async def test_conflicting_base_is_rejected(suite_path, server, output):
    await make_runner(make_request(suite_path, output), server).run()

    with pytest.raises(AbortRun):
        await make_runner(make_request(suite_path, output, base_tag="q4_k_m"), server).run()


@pytest.mark.asyncio
async def test_results_of_another_model_are_rejected(suite_path, server, output):
    await make_runner(make_request(suite_path, output), server).run()
    request = QcRunRequest(model="qwen2", quants="fp16", suite=str(suite_path), output=str(output))

    with pytest.raises(AbortRun):
        await make_runner(request, server).run()


@pytest.mark.asyncio
async def test_no_results_exit_code(suite_path, server, output):
    async def broken_show(model, verbose=False):
        raise NetworkError("show failed", status=400)

    server.show = broken_show

    assert await make_runner(make_request(suite_path, output), server).run() == EXIT_NO_RESULTS
    assert not output.exists()


@pytest.mark.asyncio
async def test_serial_judge_records_verdicts_once(suite_path, server, output):
    provider = FakeJudgeProvider(score=90)
    request = make_request(suite_path, output)

    assert await make_runner(request, server, judge=make_judge(provider)).run() == EXIT_OK

    document = load_results(output)
    candidate = document.get_result("q4_k_m")
    assert all(q.judgment.score == 90 for q in candidate.question_results)
    assert all(q.judgment is None for q in document.base_result.question_results)
    assert candidate.scores.average_judge_score == 90
    composite = candidate.scores.average_composite
    assert candidate.scores.average_score == pytest.approx((composite + 90) / 2, abs=1e-3)
    assert len(provider.prompts) == 3

    await make_runner(request, server, judge=make_judge(provider)).run()
    assert len(provider.prompts) == 3

    await make_runner(make_request(suite_path, output, rejudge=True), server, judge=make_judge(provider)).run()
    assert len(provider.prompts) == 6


@pytest.mark.asyncio
async def test_parallel_judge_records_verdicts(suite_path, server, output):
    provider = FakeJudgeProvider(score=75)
    request = make_request(suite_path, output, judge_mode=JudgeMode.PARALLEL)

    assert await make_runner(request, server, judge=make_judge(provider)).run() == EXIT_OK

    candidate = load_results(output).get_result("q4_k_m")
    assert [q.judgment.score for q in candidate.question_results] == [75, 75, 75]
    assert len(provider.prompts) == 3


@pytest.mark.asyncio
async def test_parallel_verdicts_are_saved_as_they_arrive(suite_path, server, output):
    provider = FakeJudgeProvider(score=75)
    saved = {}

    async def slow_last_question(model, prompt):
        if model.endswith("q4_k_m") and prompt == "Write hello world":
            for _ in range(100):
                await asyncio.sleep(0)

    async def unload(model):
        # runs before the checkpoint that closes the quantization
        if model.endswith("q4_k_m"):
            candidate = load_results(output).get_result("q4_k_m")
            saved.update({q.question_id: q.judgment.score for q in candidate.question_results if q.judgment})

    server.generate_hook = slow_last_question
    server.unload = unload
    request = make_request(suite_path, output, judge_mode=JudgeMode.PARALLEL)

    assert await make_runner(request, server, judge=make_judge(provider)).run() == EXIT_OK

    assert saved == {"1-1": 75, "1-2": 75}


@pytest.mark.asyncio
async def test_timeout_is_doubled_when_accepted(suite_path, server, output):
    calls = []
    prompts = []

    async def slow_candidate(model, prompt):
        if model.endswith("q4_k_m"):
            calls.append(prompt)
            if len(calls) <= 5:
                raise RequestTimeout("timed out")

    async def accept(timeout):
        prompts.append(timeout)
        return True

    server.generate_hook = slow_candidate
    runner = make_runner(make_request(suite_path, output, timeout=30), server, timeout_prompt=accept)

    assert await runner.run() == EXIT_OK
    assert prompts == [30.0]
    assert runner.context.timeout == 60.0
    assert load_results(output).get_result("q4_k_m").is_complete(runner.context.suite)


@pytest.mark.asyncio
async def test_declined_timeout_stops_run_and_keeps_results(suite_path, server, output):
    async def always_slow(model, prompt):
        if model.endswith("q4_k_m"):
            raise RequestTimeout("timed out")

    async def decline(timeout):
        return False

    server.generate_hook = always_slow
    runner = make_runner(make_request(suite_path, output), server, timeout_prompt=decline)

    assert await runner.run() == EXIT_OK
    document = load_results(output)
    assert document.base_result.is_complete(runner.context.suite)
    assert document.get_result("q4_k_m").question_results == []
