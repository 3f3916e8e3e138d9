import json

import pytest

from model_sync.core.errors import NotFoundError
from model_sync.models.question_suites import builtin_suite_names, load_suite, parse_suite
from model_sync.schemas.qc import DEFAULT_CONTEXT_LENGTH


def test_builtin_suites_load():
    assert {"v1base", "v1quick", "v1code"} <= set(builtin_suite_names())
    for name in builtin_suite_names():
        suite = load_suite(name)
        assert suite.total_questions > 0
        assert len(set(suite.question_ids())) == suite.total_questions


def test_builtin_lookup_is_case_insensitive():
    assert load_suite("V1Quick").name == load_suite("v1quick").name


def test_external_suite(tmp_path):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({
        "name": "custom",
        "contextLength": 8192,
        "categories": [{
            "id": 3,
            "name": "Long context",
            "contextLength": 16384,
            "questions": [
                {"questionId": 1, "text": "Summarise this"},
                {"questionId": 2, "text": "And this", "contextLength": 32768},
            ],
        }],
    }))

    suite = load_suite(str(path))
    category = suite.categories[0]

    assert suite.question_ids() == ["3-1", "3-2"]
    assert suite.context_length_for(category, category.questions[0]) == 16384
    assert suite.context_length_for(category, category.questions[1]) == 32768


def test_context_length_default():
    suite = parse_suite({"name": "s", "categories": [{"id": 1, "name": "c", "questions": [
        {"questionId": 1, "text": "q"},
    ]}]})
    category = suite.categories[0]

    assert suite.context_length_for(category, category.questions[0]) == DEFAULT_CONTEXT_LENGTH


def test_unknown_suite():
    with pytest.raises(NotFoundError, match="v1base"):
        load_suite("no-such-suite")


@pytest.mark.parametrize("document", [
    {"name": "empty", "categories": []},
    {"name": "dupes", "categories": [{"id": 1, "name": "c", "questions": [
        {"questionId": 1, "text": "a"}, {"questionId": 1, "text": "b"},
    ]}]},
    {"categories": [{"id": 1, "name": "c", "questions": [{"questionId": 1, "text": "a"}]}]},
])
def test_invalid_suites(document):
    with pytest.raises(ValueError):
        parse_suite(document)
