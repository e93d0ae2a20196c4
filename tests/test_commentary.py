from dataclasses import replace
from types import SimpleNamespace

import pytest

from authority_agent.commentary import GeminiCommentary, _strip_fences, normalize_commentary
from authority_agent.errors import ScoringCollaboratorError


def test_normalize_clamps_and_defaults():
    commentary = normalize_commentary(
        {"score": "142.6", "confidence": "MED", "reasoning": "  Clear answers. ", "recommendations": "Add FAQ"}
    )
    assert commentary.score == 100
    assert commentary.confidence == "medium"
    assert commentary.reasoning == "Clear answers."
    assert commentary.recommendations == ("Add FAQ",)


def test_normalize_caps_recommendations():
    commentary = normalize_commentary({"score": 55, "recommendations": [str(i) for i in range(9)] + [None, ""]})
    assert commentary.recommendations == ("0", "1", "2", "3", "4")
    assert commentary.confidence == "medium"


@pytest.mark.parametrize("raw", [None, [], "80", {"score": None}, {"score": "high"}, {"reasoning": "no score"}])
def test_malformed_responses_are_collaborator_errors(raw):
    with pytest.raises(ScoringCollaboratorError):
        normalize_commentary(raw)


def test_strip_fences():
    assert _strip_fences('```json\n{"score": 1}\n```') == '{"score": 1}'
    assert _strip_fences("```\n{}\n```") == "{}"
    assert _strip_fences(' {"a": 2} ') == '{"a": 2}'


def test_missing_key_is_unavailable(settings):
    client = GeminiCommentary(settings)
    assert client.available is False
    with pytest.raises(ScoringCollaboratorError, match="GEMINI_API_KEY"):
        client("some content", "ChatGPT")


class FakeModels:
    def __init__(self, text=None, error=None):
        self.text = text
        self.error = error

    def generate_content(self, **kwargs):
        if self.error:
            raise self.error
        return SimpleNamespace(text=self.text)


def commentary_with(settings, models):
    client = GeminiCommentary(replace(settings, gemini_api_key="test-key"))
    client._client = SimpleNamespace(models=models)
    return client


def test_gemini_response_is_parsed(settings):
    client = commentary_with(
        settings,
        FakeModels(text='```json\n{"score": 81, "confidence": "high", "reasoning": "Well cited."}\n```'),
    )
    commentary = client("page text", "Claude")
    assert commentary.score == 81
    assert commentary.confidence == "high"


@pytest.mark.parametrize(
    "models",
    [FakeModels(error=TimeoutError("deadline exceeded")), FakeModels(text=""), FakeModels(text="not json")],
)
def test_gemini_failures_become_collaborator_errors(settings, models):
    with pytest.raises(ScoringCollaboratorError):
        commentary_with(settings, models)("page text", "Perplexity")
