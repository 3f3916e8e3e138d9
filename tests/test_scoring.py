import math

import pytest

from model_sync.schemas.qc import JudgmentResult, QuantResult, QuestionResult, TokenLogprob
from model_sync.services.scoring import (
    ScoringEngine, ScoringWeights, lcs_length, length_consistency, logprobs_divergence,
    perplexity_preservation
)


def answer(question_id, words, logprob=-0.2, category="General", tps=20.0, judge=None):
    return QuestionResult(
        question_id=question_id,
        category=category,
        answer=' '.join(words),
        tokens=[TokenLogprob(token=w, logprob=logprob) for w in words],
        eval_tokens_per_second=tps,
        prompt_tokens_per_second=tps * 10,
        total_tokens=len(words),
        judgment=JudgmentResult(judge_model="judge", score=judge) if judge is not None else None,
    )


BASE_WORDS = "the quick brown fox jumps over the lazy dog".split()


def test_identical_answers_score_100():
    engine = ScoringEngine()
    base = answer("1-1", BASE_WORDS)

    score = engine.score_question(base, answer("1-1", BASE_WORDS))

    assert score.token_similarity == 100
    assert score.logprobs_divergence == 100
    assert score.length_consistency == 100
    assert score.perplexity == 100
    assert score.composite == 100
    assert score.final_score == 100


def test_empty_candidate_scores_low():
    score = ScoringEngine().score_question(answer("1-1", BASE_WORDS), answer("1-1", []))

    assert score.composite < 50


def test_less_confident_candidate_loses_points():
    engine = ScoringEngine()
    base = answer("1-1", BASE_WORDS, logprob=-0.1)

    close = engine.score_question(base, answer("1-1", BASE_WORDS, logprob=-0.2))
    far = engine.score_question(base, answer("1-1", BASE_WORDS, logprob=-2.0))

    assert 0 < far.composite < close.composite < 100


def test_scores_are_deterministic():
    engine = ScoringEngine()
    base = answer("1-1", BASE_WORDS)
    candidate = answer("1-1", "the quick red fox sleeps".split(), logprob=-0.7)

    assert engine.score_question(base, candidate) == engine.score_question(base, candidate)


def test_judge_score_is_averaged_in():
    engine = ScoringEngine()
    base = answer("1-1", BASE_WORDS)

    score = engine.score_question(base, answer("1-1", BASE_WORDS, judge=60))

    assert score.judge_score == 60
    assert score.final_score == 80


def test_component_formulas():
    assert lcs_length("abcde", "ace") == 3
    assert lcs_length([], ["a"]) == 0
    assert length_consistency(10, 5) == pytest.approx(100 * math.exp(-1))
    assert length_consistency(0, 0) == 100
    assert length_consistency(0, 3) == 0

    base = [TokenLogprob(token="a", logprob=0.0)]
    candidate = [TokenLogprob(token="a", logprob=math.log(0.5))]
    assert logprobs_divergence(base, candidate) == pytest.approx(100 * math.exp(-1))
    assert perplexity_preservation(base, candidate) == pytest.approx(100 * math.exp(-0.5))
    assert logprobs_divergence([], []) == 100
    assert logprobs_divergence(base, []) == 0


def test_weights_are_normalised():
    weights = ScoringWeights({'token_similarity': 1, 'logprobs_divergence': 1,
                              'length_consistency': 1, 'perplexity': 1})

    assert sum(weights.weights.values()) == pytest.approx(1)
    assert weights.weights['perplexity'] == pytest.approx(0.25)
    assert ScoringWeights().weights['logprobs_divergence'] == pytest.approx(0.70)


@pytest.mark.parametrize("weights", [
    {'novelty': 1},
    {'perplexity': -1, 'token_similarity': 2},
    {'perplexity': 0},
])
def test_invalid_weights(weights):
    with pytest.raises(ValueError):
        ScoringWeights(weights)


def test_quantization_aggregate():
    engine = ScoringEngine()
    base = QuantResult(tag="fp16", is_base=True, question_results=[
        answer("1-1", BASE_WORDS, category="Reasoning"),
        answer("2-1", BASE_WORDS, category="Coding"),
    ])
    candidate = QuantResult(tag="q4_0", question_results=[
        answer("1-1", BASE_WORDS, category="Reasoning", tps=40.0),
        answer("2-1", [], category="Coding", tps=40.0),
        answer("3-1", BASE_WORDS, category="Extra", tps=40.0),
    ])

    score = engine.score_quant(base, candidate)

    assert [q.question_id for q in score.questions] == ["1-1", "2-1"]
    assert score.category_scores["Reasoning"] == 100
    assert score.category_scores["Coding"] < 50
    assert score.average_score == pytest.approx((100 + score.category_scores["Coding"]) / 2, abs=1e-3)
    assert score.average_judge_score is None
    assert score.eval_tps_percent == 200
    assert engine.base_score(base).average_score == 100
