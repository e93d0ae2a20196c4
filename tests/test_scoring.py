import time

import pytest

from authority_agent.browser import NavigationResult
from authority_agent.commentary import Commentary
from authority_agent.errors import ScoringCollaboratorError
from authority_agent.extractor import build_snapshot
from authority_agent.models import ALL_PLATFORMS
from authority_agent.reputation import UNKNOWN_BAND_FLOOR, UNKNOWN_BAND_WIDTH
from authority_agent.scoring import (
    FALLBACK_RECOMMENDATIONS,
    WEIGHTS,
    FallbackScorer,
    ScoringEngine,
    heading_hierarchy_ok,
    score_seo,
)

from conftest import ARTICLE_HTML

URL = "https://blog.example.org/queues"


@pytest.fixture
def snapshot():
    nav = NavigationResult(
        html=ARTICLE_HTML,
        status_code=200,
        final_url=URL,
        headers={"content-security-policy": "default-src 'self'"},
    )
    return build_snapshot(URL, nav, vitals={"lcp": 1800.0, "fid": 12.0, "cls": 0.02})


class BrokenCommentary:
    def __init__(self, error):
        self.error = error
        self.calls = 0

    def __call__(self, content_excerpt, platform_label):
        self.calls += 1
        raise self.error


class FixedCommentary:
    def __call__(self, content_excerpt, platform_label):
        return Commentary(
            score=100,
            reasoning=f"{platform_label} likes the FAQ section.",
            recommendations=("Add a glossary",),
            confidence="high",
        )


def test_weights_favor_technical_and_content_over_freshness_and_trust():
    assert sum(WEIGHTS.values()) == pytest.approx(1.0)
    assert WEIGHTS["technical"] > WEIGHTS["freshness"] > WEIGHTS["trust"]
    assert WEIGHTS["content"] > WEIGHTS["trust"]


def test_scoring_is_idempotent(snapshot):
    engine = ScoringEngine()

    first = engine.score(snapshot, URL)
    second = engine.score(snapshot, URL)

    assert first.authority_score == second.authority_score
    assert first == second


def test_every_requested_platform_is_scored_within_bounds(snapshot):
    output = ScoringEngine().score(snapshot, URL)

    assert 0 <= output.authority_score.overall <= 100
    assert set(output.platform_scores) == set(ALL_PLATFORMS)
    for platform in output.platform_scores.values():
        assert 0 <= platform.score <= 100
        assert platform.factors
    for value in output.authority_score.breakdown.model_dump().values():
        assert 0 <= value <= 100
    assert len(output.authority_score.factors) == 7


def test_platform_subset(snapshot):
    output = ScoringEngine().score(snapshot, URL, platforms=("claude",))
    assert list(output.platform_scores) == ["claude"]


@pytest.mark.parametrize(
    "error",
    [ScoringCollaboratorError("Gemini returned malformed JSON."), TimeoutError("read timed out")],
)
def test_failed_commentary_falls_back_to_deterministic_scores(snapshot, diagnostic_events, error):
    broken = BrokenCommentary(error)

    enriched = ScoringEngine(broken).score(snapshot, URL)
    plain = ScoringEngine().score(snapshot, URL)

    assert broken.calls == len(ALL_PLATFORMS)
    assert enriched == plain
    assert len([e for e, _ in diagnostic_events if e == "commentary_unavailable"]) == len(ALL_PLATFORMS)


def test_commentary_blends_with_deterministic_score(snapshot):
    plain = ScoringEngine().score(snapshot, URL)
    enriched = ScoringEngine(FixedCommentary()).score(snapshot, URL)

    for key, deterministic in plain.platform_scores.items():
        blended = enriched.platform_scores[key]
        assert blended.score == int(round((deterministic.score + 100) / 2))
        assert blended.commentary
    assert "Add a glossary" in enriched.recommendations
    assert enriched.recommendations.count("Add a glossary") == 1
    assert enriched.authority_score == plain.authority_score


def test_commentary_skipped_when_disabled(snapshot):
    broken = BrokenCommentary(AssertionError("should not be called"))
    ScoringEngine(broken).score(snapshot, URL, use_commentary=False)
    assert broken.calls == 0


def test_commentary_not_started_after_deadline(snapshot, diagnostic_events):
    broken = BrokenCommentary(AssertionError("should not be called"))

    scored = ScoringEngine(broken).score(snapshot, URL, deadline=time.monotonic() - 1)

    assert broken.calls == 0
    assert scored == ScoringEngine().score(snapshot, URL)
    reasons = [f["error"] for e, f in diagnostic_events if e == "commentary_unavailable"]
    assert reasons == ["analysis deadline reached"] * len(ALL_PLATFORMS)


def test_seo_bounds_and_heading_hierarchy(snapshot):
    assert heading_hierarchy_ok(snapshot) is True
    good = score_seo(snapshot)

    short_title = snapshot.model_copy(
        update={"seo": snapshot.seo.model_copy(update={"title": "Hi"})}
    )
    assert score_seo(short_title) < good

    no_h1 = snapshot.model_copy(
        update={
            "content": snapshot.content.model_copy(
                update={
                    "heading_structure": snapshot.content.heading_structure.model_copy(update={"h1": ()})
                }
            )
        }
    )
    assert heading_hierarchy_ok(no_h1) is False
    assert score_seo(no_h1) < good


def test_low_components_produce_recommendations():
    nav = NavigationResult(html="<html><body><p>tiny</p></body></html>", status_code=200, final_url="http://tiny.example/")
    output = ScoringEngine().score(build_snapshot("http://tiny.example/", nav), "http://tiny.example/")

    assert "Ensure HTTPS is properly configured" in output.recommendations
    assert "Add structured data markup (JSON-LD)" in output.recommendations
    assert any("meta description" in r for r in output.recommendations)


def test_fallback_is_deterministic_per_domain():
    scorer = FallbackScorer()

    first = scorer.score("https://example.com")
    second = scorer.score("http://www.example.com/some/page")

    assert first == second
    assert UNKNOWN_BAND_FLOOR <= first.authority_score.overall < UNKNOWN_BAND_FLOOR + UNKNOWN_BAND_WIDTH
    assert first.recommendations == FALLBACK_RECOMMENDATIONS
    assert set(first.platform_scores) == set(ALL_PLATFORMS)


def test_fallback_uses_reputation_table_for_known_domains():
    output = FallbackScorer().score("https://www.github.com/anthropics")

    assert output.authority_score.overall == 78
    assert output.authority_score.breakdown.backlink == 78
    for value in output.authority_score.breakdown.model_dump().values():
        assert 68 <= value <= 88
