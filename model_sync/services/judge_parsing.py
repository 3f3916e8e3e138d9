"""
Tolerant parsing of judge model output
"""

import json
import re
from typing import Any, Dict, Optional

from pydantic import BaseModel

from ..core.errors import JudgeResponseError
from ..schemas.qc import BestAnswer

MIN_SCORE = 1.0
MAX_SCORE = 100.0

SCORE_KEYS = ('score', 'similarity')
REASON_KEYS = ('reason', 'response', 'explanation')
BEST_ANSWER_KEYS = ('bestanswer', 'best_answer')

_SCORE_FALLBACK = re.compile(r'"?(?:score|similarity)"?\s*[:=]\s*"?(-?\d+(?:\.\d+)?)', re.IGNORECASE)
_REASON_FALLBACK = re.compile(r'"?(?:reason|response|explanation)"?\s*[:=]\s*"((?:[^"\\]|\\.)*)', re.IGNORECASE | re.DOTALL)
_BEST_FALLBACK = re.compile(r'"?best_?answer"?\s*[:=]\s*"?([A-Za-z]+)', re.IGNORECASE)
_MATCH_SENTENCE = re.compile(r'(A and B (?:match|differ):.*)', re.IGNORECASE | re.DOTALL)

_BEST_ANSWERS = {
    'A': BestAnswer.BASE,
    'B': BestAnswer.CANDIDATE,
    'AB': BestAnswer.TIE,
    'TIE': BestAnswer.TIE,
    'EQUAL': BestAnswer.TIE,
    'BOTH': BestAnswer.TIE,
    'DRAW': BestAnswer.TIE,
}


class ParsedVerdict(BaseModel):
    """What could be recovered from one judge response"""
    score: float
    reason: str = ""
    best_answer: Optional[BestAnswer] = None
    raw_response: Optional[str] = None


def extract_json_span(text: str) -> Optional[str]:
    """The outermost {...} span, or an unterminated one starting at the first brace"""
    start = text.find('{')
    if start < 0:
        return None
    end = text.rfind('}')
    if end > start:
        return text[start:end + 1]
    return text[start:]


def repair_truncated_json(text: str) -> str:
    """Close an open string and any unbalanced brackets or braces"""
    stack = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in '{[':
            stack.append('}' if ch == '{' else ']')
        elif ch in '}]' and stack:
            stack.pop()
    repaired = text
    if escaped:
        repaired = repaired[:-1]
    if in_string:
        repaired += '"'
    repaired = re.sub(r',\s*$', '', repaired)
    return repaired + ''.join(reversed(stack))


def normalize_score(value: Any) -> Optional[float]:
    """1-100 scale; fractions in (0, 1] are scaled, non-positive becomes the minimum"""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score != score:
        return None
    if 0 < score <= 1.0:
        score *= 100
    if score <= 0:
        score = MIN_SCORE
    return max(MIN_SCORE, min(MAX_SCORE, round(score, 2)))


def normalize_best_answer(value: Any) -> Optional[BestAnswer]:
    if value is None:
        return None
    key = re.sub(r'[^A-Z]', '', str(value).upper())
    return _BEST_ANSWERS.get(key)


def _lookup(data: Dict[str, Any], keys) -> Any:
    lowered = {str(k).lower(): v for k, v in data.items()}
    for key in keys:
        if key in lowered and lowered[key] not in (None, ""):
            return lowered[key]
    return None


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    span = extract_json_span(text)
    if span is None:
        return None
    for candidate in (span, repair_truncated_json(span)):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def extract_reason(raw: str) -> str:
    """Regex recovery of a reason from malformed output"""
    match = _REASON_FALLBACK.search(raw)
    if match:
        try:
            return json.loads(f'"{match.group(1)}"').strip()
        except json.JSONDecodeError:
            return match.group(1).replace('\\"', '"').strip()
    match = _MATCH_SENTENCE.search(raw)
    if match:
        return match.group(1).strip().rstrip('"}').strip()
    return ""


def parse_judge_response(text: str) -> ParsedVerdict:
    """
    Parse a judge response into a verdict.

    Raises:
        JudgeResponseError: no usable score could be found
    """
    raw = text or ""
    data = _load_object(raw)

    score = reason = best = None
    if data is not None:
        score = normalize_score(_lookup(data, SCORE_KEYS))
        reason_value = _lookup(data, REASON_KEYS)
        reason = str(reason_value).strip() if reason_value is not None else None
        best = normalize_best_answer(_lookup(data, BEST_ANSWER_KEYS))

    if score is None:
        match = _SCORE_FALLBACK.search(raw)
        if match:
            score = normalize_score(match.group(1))
    if score is None:
        raise JudgeResponseError("Judge response has no score", raw_response=raw)

    if not reason:
        reason = extract_reason(raw)
    if best is None:
        match = _BEST_FALLBACK.search(raw)
        if match:
            best = normalize_best_answer(match.group(1))

    return ParsedVerdict(
        score=score,
        reason=reason or "",
        best_answer=best,
        raw_response=None if reason else raw,
    )
