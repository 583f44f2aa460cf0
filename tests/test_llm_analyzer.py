import json
from types import SimpleNamespace

import pytest
from google.genai import errors as genai_errors

from reflib.errors import AnalysisFailure, InvalidCredential, ParseFailure
from reflib.llm_analyzer import GeminiAnalyzer, extract_first_json_object, format_novelty_input, parse_analysis
from reflib.models import MetadataSource

GOOD_RESPONSE = json.dumps({
    "summary": "A {braced} summary",
    "researchQuestion": "Why?",
    "methodology": "Experiments",
    "keyFindings": "It works",
    "strengths": "Clear",
    "weaknesses": "Small",
    "contributions": "New method",
    "futureWork": "More data",
    "rating": 4,
})


class FakeModels:
    """Returns or raises per model name, recording the order of calls."""

    def __init__(self, behaviours):
        self.behaviours = behaviours
        self.calls = []

    def generate_content(self, model, contents, config):
        self.calls.append((model, contents))
        outcome = self.behaviours[model]
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(text=outcome)


def _api_error(code, message="error"):
    return genai_errors.ClientError(code, {"error": {"code": code, "message": message, "status": "ERR"}})


def _analyzer(config, mocker, behaviours, **overrides):
    models = FakeModels(behaviours)
    factory = mocker.Mock(return_value=SimpleNamespace(models=models))
    analyzer = GeminiAnalyzer(config.with_overrides(**overrides), rate_limiter=mocker.Mock(),
                              client_factory=factory)
    return analyzer, models, factory


def test_first_model_success(config, mocker):
    analyzer, models, factory = _analyzer(config, mocker, {"model-a": GOOD_RESPONSE})
    partial = analyzer.fetch("paper text")

    assert partial.source is MetadataSource.LLM
    review = partial.technical_review
    assert review.summary == "A {braced} summary"
    assert review.research_question == "Why?"
    assert review.future_work == "More data"
    assert review.rating == 4
    assert partial.title is None
    assert [m for m, _ in models.calls] == ["model-a"]
    assert factory.call_args.kwargs["api_key"] == "test-key"


def test_not_found_falls_through_to_next_model(config, mocker):
    analyzer, models, _ = _analyzer(config, mocker, {
        "model-a": _api_error(404, "model not found"),
        "model-b": GOOD_RESPONSE,
        "model-c": GOOD_RESPONSE,
    })
    analyzer.fetch("paper text")
    assert [m for m, _ in models.calls] == ["model-a", "model-b"]


@pytest.mark.parametrize("code", [400, 401, 403])
def test_credential_failure_halts_immediately(config, mocker, code):
    analyzer, models, _ = _analyzer(config, mocker, {
        "model-a": _api_error(code, "API key not valid"),
        "model-b": GOOD_RESPONSE,
    })
    with pytest.raises(InvalidCredential) as excinfo:
        analyzer.fetch("paper text")
    assert excinfo.value.user_message == "API key was rejected"
    assert [m for m, _ in models.calls] == ["model-a"]


def test_missing_key_is_invalid_credential(config, mocker):
    analyzer, models, factory = _analyzer(config, mocker, {})
    analyzer.api_key = None
    with pytest.raises(InvalidCredential):
        analyzer.fetch("paper text")
    factory.assert_not_called()


def test_all_models_failing_is_analysis_failure(config, mocker):
    analyzer, models, _ = _analyzer(config, mocker, {
        "model-a": _api_error(404),
        "model-b": _api_error(429, "quota"),
        "model-c": "",
    })
    with pytest.raises(AnalysisFailure):
        analyzer.fetch("paper text")
    assert len(models.calls) == 3


def test_unparseable_response_is_parse_failure(config, mocker):
    analyzer, models, _ = _analyzer(config, mocker, {"model-a": "I cannot help with that.",
                                                     "model-b": GOOD_RESPONSE})
    with pytest.raises(ParseFailure):
        analyzer.fetch("paper text")
    assert len(models.calls) == 1


def test_input_is_truncated(config, mocker):
    analyzer, models, _ = _analyzer(config, mocker, {"model-a": GOOD_RESPONSE})
    analyzer.fetch("x" * 40000 + "TAIL")
    prompt = models.calls[0][1]
    assert "x" * 30000 in prompt
    assert "x" * 30001 not in prompt
    assert "TAIL" not in prompt


def test_extract_first_json_object_skips_noise():
    text = 'Sure! ```json\n{"summary": "has } brace", "nested": {"a": 1}}\n``` then {"second": 2}'
    assert extract_first_json_object(text) == {"summary": "has } brace", "nested": {"a": 1}}
    assert extract_first_json_object("{broken {\"ok\": true}") == {"ok": True}
    assert extract_first_json_object('{"a": 1, "inner": {"b": 2}, oops} {"c": 3}') is None
    assert extract_first_json_object("no json") is None


def test_parse_analysis_is_lenient():
    review = parse_analysis('{"summary": ["a", "b"], "rating": "9", "unexpected": 1}')
    assert review.summary == "a\nb"
    assert review.rating == 5
    assert review.methodology == ""
    assert parse_analysis('{"rating": "great"}').rating == 0


def test_broken_outer_object_is_parse_failure():
    with pytest.raises(ParseFailure):
        parse_analysis('{"summary": "Great paper", "rating": 4, "meta": {"lang": "en"}, oops}')


def test_object_without_review_keys_is_parse_failure():
    with pytest.raises(ParseFailure):
        parse_analysis('{"answer": "I could not read the paper"}')
    assert parse_analysis('{"research_question": "Why?"}').research_question == "Why?"


def test_novelty_evaluation_returns_model_text(config, mocker):
    analyzer, models, _ = _analyzer(config, mocker, {
        "model-a": _api_error(404, "model not found"),
        "model-b": "  1. Primary novelty axis: idea\n",
    })
    assert analyzer.evaluate_novelty("An abstract") == "1. Primary novelty axis: idea"
    assert [m for m, _ in models.calls] == ["model-a", "model-b"]
    assert "An abstract" in models.calls[1][1]


def test_novelty_evaluation_halts_on_rejected_key(config, mocker):
    analyzer, models, _ = _analyzer(config, mocker, {
        "model-a": _api_error(401, "API key not valid"),
        "model-b": "fine",
    })
    with pytest.raises(InvalidCredential):
        analyzer.evaluate_novelty("An abstract")
    assert len(models.calls) == 1


def test_novelty_evaluation_needs_text_and_key(config, mocker):
    analyzer, models, factory = _analyzer(config, mocker, {})
    with pytest.raises(AnalysisFailure):
        analyzer.evaluate_novelty("   ")
    analyzer.api_key = ""
    with pytest.raises(InvalidCredential):
        analyzer.evaluate_novelty("An abstract")
    factory.assert_not_called()


def test_format_novelty_input():
    assert format_novelty_input("T", ["Doe, Jane", "Roe, Rick"], 2024, "Abs") == (
        "Title: T\nAuthors: Doe, Jane, Roe, Rick\nYear: 2024\nAbstract: Abs"
    )
    assert format_novelty_input() == (
        "Title: Unknown\nAuthors: Unknown\nYear: Unknown\nAbstract: No abstract available"
    )
