"""
Built-in and external question suites
"""

import json
from pathlib import Path
from typing import List, Union

import structlog
from pydantic import ValidationError

from ..core.errors import NotFoundError
from ..schemas.qc import QuestionSuite

logger = structlog.get_logger(__name__)

BUILTIN_DIR = Path(__file__).resolve().parent.parent / "suites"
DEFAULT_SUITE = "v1base"


def builtin_suite_names() -> List[str]:
    return sorted(path.stem for path in BUILTIN_DIR.glob("*.json"))


def parse_suite(data: Union[str, bytes, dict]) -> QuestionSuite:
    """Validate a suite document; ValueError when it is malformed or empty"""
    if not isinstance(data, dict):
        data = json.loads(data)
    try:
        suite = QuestionSuite.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid question suite: {e}") from e
    if suite.total_questions == 0:
        raise ValueError(f"Question suite '{suite.name}' has no questions")
    ids = suite.question_ids()
    if len(ids) != len(set(ids)):
        raise ValueError(f"Question suite '{suite.name}' has duplicate question ids")
    return suite


def load_suite(name_or_path: str = DEFAULT_SUITE) -> QuestionSuite:
    """Load a built-in suite by name or an external suite from a JSON file"""
    builtin = BUILTIN_DIR / f"{name_or_path.lower()}.json"
    path = builtin if builtin.is_file() else Path(name_or_path).expanduser()
    if not path.is_file():
        raise NotFoundError(
            f"Unknown question suite '{name_or_path}'; built-in suites: {', '.join(builtin_suite_names())}"
        )
    suite = parse_suite(path.read_text(encoding='utf-8'))
    logger.info("Question suite loaded", suite=suite.name, questions=suite.total_questions, path=str(path))
    return suite
