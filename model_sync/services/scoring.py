"""
Scoring engine
Compares a candidate answer with the base answer using only generated tokens
and their log-probabilities. All scores are on a 0-100 scale.
"""

import math
from statistics import mean
from typing import Dict, List, Mapping, Optional, Sequence

from ..schemas.qc import QuantResult, QuantScore, QuestionResult, QuestionScore, TokenLogprob


DEFAULT_WEIGHTS: Mapping[str, float] = {
    'token_similarity': 0.05,
    'logprobs_divergence': 0.70,
    'length_consistency': 0.05,
    'perplexity': 0.20,
}

JUDGE_WEIGHT = 0.5


class ScoringWeights:
    """Weight table for the four components; normalised so the weights sum to one"""

    def __init__(self, weights: Optional[Mapping[str, float]] = None):
        weights = dict(DEFAULT_WEIGHTS if weights is None else weights)
        unknown = set(weights) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise ValueError(f"Unknown scoring components: {', '.join(sorted(unknown))}")
        if any(w < 0 for w in weights.values()):
            raise ValueError("Scoring weights must not be negative")
        total = sum(weights.values())
        if total <= 0:
            raise ValueError("Scoring weights must sum to a positive value")
        self.weights = {name: weights.get(name, 0.0) / total for name in DEFAULT_WEIGHTS}

    def combine(self, components: Mapping[str, float]) -> float:
        score = sum(self.weights[name] * components[name] for name in self.weights)
        return _clamp(round(score, 6))


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def lcs_length(a: Sequence, b: Sequence) -> int:
    """Longest common subsequence length, O(len(a) * len(b)) time, O(len(b)) memory"""
    if not a or not b:
        return 0
    if len(b) > len(a):
        a, b = b, a
    previous = [0] * (len(b) + 1)
    for x in a:
        current = [0]
        for j, y in enumerate(b, 1):
            if x == y:
                current.append(previous[j - 1] + 1)
            else:
                current.append(max(previous[j], current[j - 1]))
        previous = current
    return previous[-1]


def mean_logprob(tokens: Sequence[TokenLogprob]) -> Optional[float]:
    if not tokens:
        return None
    return mean(t.logprob for t in tokens)


def token_similarity(base: Sequence[str], candidate: Sequence[str]) -> float:
    if not base and not candidate:
        return 100.0
    longest = max(len(base), len(candidate))
    return _clamp(lcs_length(base, candidate) / longest * 100)


def logprobs_divergence(base: Sequence[TokenLogprob], candidate: Sequence[TokenLogprob]) -> float:
    """Confidence is exp(mean logprob); the score decays with the confidence gap"""
    base_mean, candidate_mean = mean_logprob(base), mean_logprob(candidate)
    if base_mean is None and candidate_mean is None:
        return 100.0
    if base_mean is None or candidate_mean is None:
        return 0.0
    diff = abs(math.exp(base_mean) - math.exp(candidate_mean))
    return _clamp(100 * math.exp(-2 * diff))


def length_consistency(base_count: int, candidate_count: int) -> float:
    if base_count == 0 and candidate_count == 0:
        return 100.0
    if base_count == 0 or candidate_count == 0:
        return 0.0
    ratio = candidate_count / base_count
    return _clamp(100 * math.exp(-2 * abs(1 - ratio)))


def perplexity_preservation(base: Sequence[TokenLogprob], candidate: Sequence[TokenLogprob]) -> float:
    base_mean, candidate_mean = mean_logprob(base), mean_logprob(candidate)
    if base_mean is None and candidate_mean is None:
        return 100.0
    if base_mean is None or candidate_mean is None:
        return 0.0
    ratio = math.exp(-candidate_mean) / math.exp(-base_mean)
    return _clamp(100 * math.exp(-0.5 * abs(1 - ratio)))


def score_components(base: Sequence[TokenLogprob], candidate: Sequence[TokenLogprob]) -> Dict[str, float]:
    return {
        'token_similarity': token_similarity([t.token for t in base], [t.token for t in candidate]),
        'logprobs_divergence': logprobs_divergence(base, candidate),
        'length_consistency': length_consistency(len(base), len(candidate)),
        'perplexity': perplexity_preservation(base, candidate),
    }


def final_score(composite: float, judge_score: Optional[float]) -> float:
    if judge_score is None:
        return composite
    return _clamp(round((1 - JUDGE_WEIGHT) * composite + JUDGE_WEIGHT * judge_score, 6))


class ScoringEngine:
    """Per-question and per-quantization scores against the base quantization"""

    def __init__(self, weights: Optional[ScoringWeights] = None):
        self.weights = weights or ScoringWeights()

    def score_question(self, base: QuestionResult, candidate: QuestionResult) -> QuestionScore:
        components = score_components(base.tokens, candidate.tokens)
        composite = self.weights.combine(components)
        judge = candidate.judgment.score if candidate.judgment else None
        return QuestionScore(
            question_id=candidate.question_id,
            category=candidate.category,
            composite=composite,
            judge_score=judge,
            final_score=final_score(composite, judge),
            **components,
        )

    def score_quant(self, base: QuantResult, candidate: QuantResult) -> QuantScore:
        """Aggregate scores over the questions both quantizations answered"""
        questions: List[QuestionScore] = []
        for result in candidate.question_results:
            base_question = base.question(result.question_id)
            if base_question is not None:
                questions.append(self.score_question(base_question, result))

        score = QuantScore(tag=candidate.tag, questions=questions)
        if not questions:
            return score

        score.average_score = round(mean(q.final_score for q in questions), 4)
        score.average_composite = round(mean(q.composite for q in questions), 4)
        judged = [q.judge_score for q in questions if q.judge_score is not None]
        if judged:
            score.average_judge_score = round(mean(judged), 4)

        by_category: Dict[str, List[float]] = {}
        for q in questions:
            by_category.setdefault(q.category, []).append(q.final_score)
        score.category_scores = {name: round(mean(values), 4) for name, values in by_category.items()}

        score.eval_tps_percent = _relative_speed(base, candidate, 'eval_tokens_per_second')
        score.prompt_tps_percent = _relative_speed(base, candidate, 'prompt_tokens_per_second')
        return score

    def base_score(self, base: QuantResult) -> QuantScore:
        """The base compared with itself: every component is 100"""
        return self.score_quant(base, base)


def _relative_speed(base: QuantResult, candidate: QuantResult, field: str) -> Optional[float]:
    base_values = [getattr(q, field) for q in base.question_results if getattr(q, field) > 0]
    candidate_values = [getattr(q, field) for q in candidate.question_results if getattr(q, field) > 0]
    if not base_values or not candidate_values:
        return None
    return round(mean(candidate_values) / mean(base_values) * 100, 2)
