"""
Pydantic schemas for quantization quality comparison
Defines test suites, the persisted result document and computed scores
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional
from pydantic import BaseModel, Field, validator


DEFAULT_CONTEXT_LENGTH = 4096
DEFAULT_NUM_PREDICT = 4096
DEFAULT_JUDGE_CONTEXT_LENGTH = 12288


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BestAnswer(str, Enum):
    """Which response the judge preferred"""
    BASE = "A"
    CANDIDATE = "B"
    TIE = "AB"


class JudgeMode(str, Enum):
    """When judgments run relative to testing"""
    SERIAL = "serial"
    PARALLEL = "parallel"


# Test suites
class SuiteQuestion(BaseModel):
    """One question of a test suite"""
    category_id: int = Field(0, alias="categoryId")
    question_id: int = Field(..., alias="questionId")
    text: str = Field(..., min_length=1)
    context_length: Optional[int] = Field(None, alias="contextLength", gt=0)

    @property
    def qualified_id(self) -> str:
        return f"{self.category_id}-{self.question_id}"

    class Config:
        populate_by_name = True


class SuiteCategory(BaseModel):
    """Ordered group of questions"""
    id: int
    name: str
    context_length: Optional[int] = Field(None, alias="contextLength", gt=0)
    questions: List[SuiteQuestion] = Field(default_factory=list)

    @validator('questions')
    def assign_category(cls, v, values):
        """Questions inherit the category id when they do not carry one"""
        category_id = values.get('id')
        return [
            q if q.category_id else q.model_copy(update={'category_id': category_id})
            for q in v
        ]

    class Config:
        populate_by_name = True


class QuestionSuite(BaseModel):
    """Named, immutable, ordered collection of categories"""
    name: str = Field(..., min_length=1)
    num_predict: Optional[int] = Field(None, alias="numPredict", gt=0)
    context_length: Optional[int] = Field(None, alias="contextLength", gt=0)
    categories: List[SuiteCategory] = Field(default_factory=list)

    @property
    def total_questions(self) -> int:
        return sum(len(c.questions) for c in self.categories)

    def iter_questions(self) -> Iterator[tuple]:
        """(category, question) pairs in suite order"""
        for category in self.categories:
            for question in category.questions:
                yield category, question

    def question_ids(self) -> List[str]:
        return [q.qualified_id for _, q in self.iter_questions()]

    def context_length_for(self, category: SuiteCategory, question: SuiteQuestion) -> int:
        """Question override, then category, then suite, then the default"""
        return (question.context_length or category.context_length
                or self.context_length or DEFAULT_CONTEXT_LENGTH)

    class Config:
        populate_by_name = True
        frozen = True


# Result document
class TokenLogprob(BaseModel):
    """A generated token and the log-probability the model assigned to it"""
    token: str
    logprob: float
    bytes: Optional[List[int]] = None


class JudgmentResult(BaseModel):
    """Verdict of the judge model for one question"""
    judge_model: str = Field(..., description="Judge that produced this verdict")
    score: float = Field(..., ge=1, le=100, description="Similarity score 1-100")
    reason: str = Field("", description="Judge explanation")
    best_answer: Optional[BestAnswer] = Field(None, description="Preferred response, if reported")
    judged_at: datetime = Field(default_factory=utcnow)
    raw_response: Optional[str] = Field(None, description="Raw judge output when no reason was parsed")


class QuestionResult(BaseModel):
    """Answer of one quantization to one question"""
    question_id: str = Field(..., description="<category>-<question>")
    category: str = Field("")
    question: str = Field("")
    answer: str = Field("")
    tokens: List[TokenLogprob] = Field(default_factory=list)
    eval_tokens_per_second: float = Field(0.0, ge=0)
    prompt_tokens_per_second: float = Field(0.0, ge=0)
    total_tokens: int = Field(0, ge=0)
    judgment: Optional[JudgmentResult] = None


class QcTestOptions(BaseModel):
    """Sampling options shared by every quantization in a document"""
    temperature: float = 0.0
    seed: int = 365
    top_p: float = 0.001
    top_k: int = -1
    repeat_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    num_predict: Optional[int] = None
    judge_context_length: int = DEFAULT_JUDGE_CONTEXT_LENGTH

    def generate_options(self, num_ctx: int, num_predict: int) -> Dict[str, float]:
        """Options block for a generate request; unset values are left to the server"""
        options = {
            'temperature': self.temperature,
            'seed': self.seed,
            'top_p': self.top_p,
            'num_ctx': num_ctx,
            'num_predict': num_predict,
        }
        if self.top_k > 0:
            options['top_k'] = self.top_k
        if self.repeat_penalty is not None:
            options['repeat_penalty'] = self.repeat_penalty
        if self.frequency_penalty is not None:
            options['frequency_penalty'] = self.frequency_penalty
        return options


class QuestionScore(BaseModel):
    """Component and composite scores for one question, all 0-100"""
    question_id: str
    category: str = ""
    token_similarity: float
    logprobs_divergence: float
    length_consistency: float
    perplexity: float
    composite: float
    judge_score: Optional[float] = None
    final_score: float


class QuantScore(BaseModel):
    """Aggregate scores for one quantization"""
    tag: str
    average_score: float = 0.0
    average_composite: float = 0.0
    average_judge_score: Optional[float] = None
    category_scores: Dict[str, float] = Field(default_factory=dict)
    eval_tps_percent: Optional[float] = None
    prompt_tps_percent: Optional[float] = None
    questions: List[QuestionScore] = Field(default_factory=list)


class QuantResult(BaseModel):
    """Everything recorded for one quantization"""
    tag: str
    model_name: str = ""
    digest: Optional[str] = None
    disk_size_bytes: int = Field(0, ge=0)
    family: Optional[str] = None
    parameter_size: Optional[str] = None
    quantization_type: Optional[str] = None
    is_base: bool = False
    pulled_on_demand: bool = False
    question_results: List[QuestionResult] = Field(default_factory=list)
    scores: Optional[QuantScore] = None

    def question(self, question_id: str) -> Optional[QuestionResult]:
        for result in self.question_results:
            if result.question_id == question_id:
                return result
        return None

    def answered_ids(self) -> set:
        return {q.question_id for q in self.question_results}

    def is_complete(self, suite: QuestionSuite) -> bool:
        return set(suite.question_ids()) <= self.answered_ids()

    def missing_ids(self, suite: QuestionSuite) -> List[str]:
        """Unanswered question ids in suite order"""
        answered = self.answered_ids()
        return [qid for qid in suite.question_ids() if qid not in answered]


class QcResultsFile(BaseModel):
    """Persisted state of one comparison run"""
    test_suite_name: str
    model_name: str
    base_tag: str
    family: Optional[str] = None
    parameter_size: Optional[str] = None
    options: QcTestOptions = Field(default_factory=QcTestOptions)
    results: List[QuantResult] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_result(self, tag: str) -> Optional[QuantResult]:
        for result in self.results:
            if result.tag.lower() == tag.lower():
                return result
        return None

    @property
    def base_result(self) -> Optional[QuantResult]:
        for result in self.results:
            if result.is_base:
                return result
        return None

    def repair_base_flag(self) -> bool:
        """Ensure exactly the base tag carries is_base; returns True if anything changed"""
        changed = False
        for result in self.results:
            should_be_base = result.tag.lower() == self.base_tag.lower()
            if result.is_base != should_be_base:
                result.is_base = should_be_base
                changed = True
        base = self.base_result
        if base is not None and self.results[0] is not base:
            self.results.remove(base)
            self.results.insert(0, base)
            changed = True
        return changed


# API Request/Response Schemas
class QcRunRequest(BaseModel):
    """Request to start a QC run"""
    model: str = Field(..., description="Model name, e.g. llama3.2 or hf.co/ns/repo")
    quants: List[str] = Field(..., min_length=1, description="Tags or wildcard patterns")
    base_tag: Optional[str] = Field(None, description="Base quantization tag")
    output: Optional[str] = Field(None, description="Result document path")
    suite: str = Field("v1base", description="Built-in suite name or JSON file path")
    judge: Optional[str] = Field(None, description="Judge model reference")
    judge_mode: JudgeMode = Field(JudgeMode.SERIAL)
    judge_context_length: int = Field(DEFAULT_JUDGE_CONTEXT_LENGTH, gt=0)
    timeout: int = Field(600, gt=0, description="Per request timeout in seconds")
    temperature: float = Field(0.0, ge=0)
    seed: int = 365
    top_p: float = Field(0.001, ge=0, le=1)
    top_k: int = -1
    repeat_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    force: bool = False
    rejudge: bool = False
    on_demand: bool = False

    @validator('quants', pre=True)
    def split_quants(cls, v):
        """Accept a comma separated string as well as a list"""
        if isinstance(v, str):
            v = v.split(',')
        return [q.strip() for q in v if q and q.strip()]


class QcResolveRequest(BaseModel):
    """Request to expand tag patterns"""
    model: str
    patterns: List[str] = Field(..., min_length=1)
    local: bool = Field(False, description="Match against the local server instead of the registry")

    @validator('patterns', pre=True)
    def split_patterns(cls, v):
        if isinstance(v, str):
            v = v.split(',')
        return [p.strip() for p in v if p and p.strip()]


class QcRunStatus(BaseModel):
    """State of a background QC run"""
    run_id: str
    model: str
    state: str
    output: str
    exit_code: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
