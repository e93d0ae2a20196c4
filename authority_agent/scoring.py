from __future__ import annotations

import logging
import time
from types import MappingProxyType
from typing import Iterable

from . import diagnostics
from .commentary import PLATFORM_LABELS, CommentaryClient
from .models import (
    ALL_PLATFORMS,
    AuthorityScore,
    PlatformScore,
    ScoreBreakdown,
    ScoringOutput,
    WebsiteSnapshot,
)
from .reputation import domain_of, domain_reputation, stable_hash
from .schema_validation import validate_schema

logger = logging.getLogger(__name__)

WEIGHTS = MappingProxyType({
    "technical": 0.20,
    "content": 0.20,
    "seo": 0.10,
    "ai_optimization": 0.20,
    "backlink": 0.15,
    "freshness": 0.10,
    "trust": 0.05,
})

PLATFORM_FACTORS = MappingProxyType({
    "chatgpt": ("Content structure", "FAQ format", "Clear answers", "Step-by-step content"),
    "claude": ("Technical accuracy", "Citations", "Comprehensive content", "Academic tone"),
    "perplexity": ("Source quality", "Fresh content", "Fact verification", "Multiple references"),
    "google_ai": ("E-E-A-T signals", "Technical SEO", "User experience", "Core Web Vitals"),
})

FALLBACK_RECOMMENDATIONS = (
    "Improve website loading speed",
    "Add more structured data markup",
    "Create FAQ sections for better AI understanding",
    "Optimize images and scripts",
    "Add more internal linking",
)

TITLE_BOUNDS = (30, 60)
META_DESCRIPTION_BOUNDS = (120, 160)


def _clamp(score: float) -> int:
    return max(0, min(100, int(round(score))))


def _dedupe(items: Iterable[str]) -> tuple[str, ...]:
    seen: list[str] = []
    for item in items:
        if item and item not in seen:
            seen.append(item)
    return tuple(seen)


# ---- component scores -----------------------------------------------------


def score_technical(snapshot: WebsiteSnapshot) -> int:
    technical = snapshot.technical
    score = 0.0

    vitals = technical.core_web_vitals
    if vitals.lcp_ms > 0:
        if vitals.lcp_ms < 2500:
            score += 15
        if vitals.fid_ms < 100:
            score += 15
        if vitals.cls < 0.1:
            score += 10

    if technical.is_mobile_optimized:
        score += 20

    images = technical.image_stats
    if images.total > 0:
        score += (images.with_alt / images.total) * 10 + (images.lazy_loaded / images.total) * 10

    resources = technical.resource_stats
    if resources.total > 0 and resources.average_size_bytes < 50_000:
        score += 10
    if resources.total < 20:
        score += 10

    return _clamp(score)


def score_content(snapshot: WebsiteSnapshot) -> int:
    content = snapshot.content
    score = 0

    if content.word_count >= 1000:
        score += 25
    elif content.word_count >= 500:
        score += 15
    elif content.word_count >= 200:
        score += 10

    if content.readability_score >= 70:
        score += 20
    elif content.readability_score >= 50:
        score += 15
    elif content.readability_score >= 30:
        score += 10

    headings = content.heading_structure
    if len(headings.h1) == 1:
        score += 10
    if len(headings.h2) >= 3:
        score += 10
    if len(headings.h3) >= 2:
        score += 5

    if content.paragraph_count >= 10:
        score += 10
    if content.list_count >= 2:
        score += 10
    if snapshot.technical.image_stats.total >= 3:
        score += 10

    return _clamp(score)


def _within(value: str, bounds: tuple[int, int]) -> bool:
    return bounds[0] <= len(value) <= bounds[1]


def heading_hierarchy_ok(snapshot: WebsiteSnapshot) -> bool:
    headings = snapshot.content.heading_structure
    return len(headings.h1) == 1 and len(headings.h2) >= 1


def score_seo(snapshot: WebsiteSnapshot) -> int:
    seo = snapshot.seo
    score = 0

    if _within(seo.title, TITLE_BOUNDS):
        score += 30
    elif seo.title:
        score += 15

    if _within(seo.meta_description, META_DESCRIPTION_BOUNDS):
        score += 30
    elif seo.meta_description:
        score += 15

    if heading_hierarchy_ok(snapshot):
        score += 25
    elif len(snapshot.content.heading_structure.h1) == 1:
        score += 10

    if seo.canonical:
        score += 10
    if seo.has_open_graph:
        score += 5

    return _clamp(score)


def structured_data_quality(snapshot: WebsiteSnapshot) -> int:
    blocks = snapshot.seo.structured_data_blocks
    if not blocks:
        return 0
    scores = [validate_schema(block).score for block in blocks]
    return _clamp(sum(scores) / len(scores))


def _chatgpt_factor_score(snapshot: WebsiteSnapshot) -> int:
    h = snapshot.ai_factors.platform_heuristics
    return (3 * h.has_structured_data + 3 * h.has_faq + 2 * h.has_code_examples
            + h.has_step_by_step + h.has_definitions)


def _claude_factor_score(snapshot: WebsiteSnapshot) -> int:
    h = snapshot.ai_factors.platform_heuristics
    return (3 * h.has_citations + 3 * h.has_references + 2 * h.has_academic_tone
            + h.has_detailed_explanations + h.has_code_examples)


def score_ai_optimization(snapshot: WebsiteSnapshot) -> int:
    ai = snapshot.ai_factors
    score = 0.0

    if ai.schema_markup_count > 0:
        score += 30
        score += structured_data_quality(snapshot) * 0.15

    if ai.faq_count > 0:
        score += 15
    if ai.table_count > 0:
        score += 10

    score += min(25, ai.citation_count * 5)
    score += min(10, _chatgpt_factor_score(snapshot))
    score += min(10, _claude_factor_score(snapshot))

    return _clamp(score)


def score_backlink(url: str) -> int:
    return domain_reputation(domain_of(url))


def score_freshness(snapshot: WebsiteSnapshot) -> int:
    content = snapshot.content
    score = 0
    if content.freshness.is_recent:
        score += 60
    elif content.freshness.dates_found > 0:
        score += 30
    if content.authorship.has_author:
        score += 40
    return _clamp(score)


def score_trust(snapshot: WebsiteSnapshot) -> int:
    security = snapshot.security
    score = 0
    if security.has_tls:
        score += 40
    if security.has_csp:
        score += 15
    if security.has_hsts:
        score += 15
    if security.has_referrer_policy:
        score += 15
    if snapshot.performance.redirect_count == 0:
        score += 15
    return _clamp(score)


# ---- composites -----------------------------------------------------------


def composite(breakdown: ScoreBreakdown) -> int:
    values = breakdown.model_dump()
    return _clamp(sum(values[key] * weight for key, weight in WEIGHTS.items()))


def factor_analysis(breakdown: ScoreBreakdown) -> tuple[str, ...]:
    bands = (
        ("technical", "Excellent technical performance", "Good technical foundation", "Technical improvements needed"),
        ("content", "High-quality content structure", "Decent content quality", "Content quality needs improvement"),
        ("seo", "Strong on-page SEO", "Reasonable on-page SEO", "On-page SEO gaps"),
        ("ai_optimization", "Excellent AI optimization", "Good AI compatibility", "AI optimization opportunities"),
        ("backlink", "Strong external authority signals", "Moderate external authority", "Limited external authority"),
        ("freshness", "Recent and updated content", "Somewhat current content", "Content may be outdated"),
        ("trust", "Strong security and trust signals", "Basic security measures", "Security improvements recommended"),
    )
    values = breakdown.model_dump()
    out = []
    for key, high, mid, low in bands:
        score = values[key]
        out.append(high if score >= 80 else mid if score >= 60 else low)
    return tuple(out)


def platform_score(platform: str, base: int, snapshot: WebsiteSnapshot) -> int:
    ai = snapshot.ai_factors
    h = ai.platform_heuristics
    score = base
    if platform == "chatgpt":
        score += 10 * (ai.faq_count > 0) + 8 * h.has_structured_data + 7 * h.has_code_examples
        score += 5 * h.has_step_by_step + 5 * h.has_definitions
    elif platform == "claude":
        score += 12 * (ai.citation_count > 0) + 10 * h.has_citations + 8 * h.has_academic_tone
        score += 7 * h.has_detailed_explanations + 8 * h.has_code_examples
    elif platform == "perplexity":
        score += 10 * h.has_recent_data + 8 * (snapshot.content.external_link_count > 5)
        score += 7 * h.has_factual_content + 5 * h.has_data_tables + 5 * snapshot.content.authorship.has_author
    elif platform == "google_ai":
        vitals = snapshot.technical.core_web_vitals
        if vitals.lcp_ms > 0:
            score += 8 * (vitals.lcp_ms < 2500) + 8 * (vitals.fid_ms < 100) + 6 * (vitals.cls < 0.1)
        score += 5 * snapshot.technical.is_mobile_optimized + 5 * snapshot.security.has_tls
    return _clamp(score)


def recommendations_for(breakdown: ScoreBreakdown, snapshot: WebsiteSnapshot) -> list[str]:
    recs: list[str] = []
    if breakdown.technical < 70:
        recs += [
            "Improve Core Web Vitals for better performance",
            "Optimize images with proper alt tags and lazy loading",
            "Reduce resource loading time",
        ]
    if breakdown.content < 70:
        recs += [
            "Increase content length to at least 1000 words",
            "Add more paragraphs and structured content",
        ]
    if breakdown.seo < 70:
        seo = snapshot.seo
        if not _within(seo.title, TITLE_BOUNDS):
            recs.append(f"Keep the page title between {TITLE_BOUNDS[0]} and {TITLE_BOUNDS[1]} characters")
        if not _within(seo.meta_description, META_DESCRIPTION_BOUNDS):
            recs.append(
                f"Write a meta description between {META_DESCRIPTION_BOUNDS[0]} and "
                f"{META_DESCRIPTION_BOUNDS[1]} characters"
            )
        if not heading_hierarchy_ok(snapshot):
            recs.append("Use exactly one H1 followed by descriptive H2 sub-headings")
    if breakdown.ai_optimization < 70:
        recs += [
            "Add structured data markup (JSON-LD)",
            "Create FAQ sections for better AI understanding",
            "Include citations and references",
        ]
    if breakdown.backlink < 70:
        recs += [
            "Build more links from authoritative domains",
            "Increase link diversity across different domains",
        ]
    if breakdown.freshness < 70:
        recs += [
            "Update content regularly with current information",
            "Add publication dates and author information",
        ]
    if breakdown.trust < 70:
        recs += [
            "Ensure HTTPS is properly configured",
            "Add security headers (CSP, HSTS)",
            "Implement proper referrer policies",
        ]
    return recs


class ScoringEngine:
    """Maps a snapshot to authority, platform scores and recommendations.

    Deterministic for a given snapshot. When a commentary collaborator is
    supplied it may refine platform scores; if it fails the deterministic
    values stand.
    """

    def __init__(self, commentary: CommentaryClient | None = None):
        self.commentary = commentary

    def score(
        self,
        snapshot: WebsiteSnapshot,
        url: str,
        platforms: Iterable[str] = ALL_PLATFORMS,
        use_commentary: bool = True,
        deadline: float | None = None,
    ) -> ScoringOutput:
        """Score ``snapshot``. Commentary is skipped once ``time.monotonic()`` passes ``deadline``."""
        breakdown = ScoreBreakdown(
            technical=score_technical(snapshot),
            content=score_content(snapshot),
            seo=score_seo(snapshot),
            ai_optimization=score_ai_optimization(snapshot),
            backlink=score_backlink(url),
            freshness=score_freshness(snapshot),
            trust=score_trust(snapshot),
        )
        authority = AuthorityScore(
            overall=composite(breakdown),
            breakdown=breakdown,
            weights=dict(WEIGHTS),
            factors=factor_analysis(breakdown),
        )

        recommendations = recommendations_for(breakdown, snapshot)
        platform_scores: dict[str, PlatformScore] = {}
        for platform in platforms:
            deterministic = platform_score(platform, authority.overall, snapshot)
            enriched = self._enrich(platform, deterministic, snapshot, url, deadline) if use_commentary else None
            if enriched is None:
                platform_scores[platform] = PlatformScore(
                    score=deterministic, factors=PLATFORM_FACTORS.get(platform, ())
                )
            else:
                platform_scores[platform], extra = enriched
                recommendations.extend(extra)

        return ScoringOutput(
            authority_score=authority,
            platform_scores=platform_scores,
            recommendations=_dedupe(recommendations),
        )

    def _enrich(
        self, platform: str, deterministic: int, snapshot: WebsiteSnapshot, url: str, deadline: float | None = None
    ):
        if self.commentary is None or not snapshot.content.excerpt:
            return None
        if deadline is not None and time.monotonic() >= deadline:
            diagnostics.emit("commentary_unavailable", url=url, platform=platform, error="analysis deadline reached")
            return None
        label = PLATFORM_LABELS.get(platform, platform)
        try:
            commentary = self.commentary(snapshot.content.excerpt, label)
            blended = _clamp((deterministic + commentary.score) / 2)
        except Exception as e:
            diagnostics.emit("commentary_unavailable", url=url, platform=platform, error=str(e))
            return None
        score = PlatformScore(
            score=blended,
            factors=PLATFORM_FACTORS.get(platform, ()),
            commentary=commentary.reasoning or None,
        )
        return score, list(commentary.recommendations)


class FallbackScorer:
    """Domain-only scoring for when live analysis is impossible."""

    _COMPONENTS = ("technical", "content", "seo", "ai_optimization", "backlink", "freshness", "trust")

    def score(self, url: str, platforms: Iterable[str] = ALL_PLATFORMS) -> ScoringOutput:
        domain = domain_of(url)
        overall = domain_reputation(domain)
        seed = stable_hash(domain)

        def jitter(slot: int) -> int:
            # Spread components +/-10 around the domain score, same for every call.
            return _clamp(overall + (seed >> (slot * 5)) % 21 - 10)

        values = {name: jitter(i) for i, name in enumerate(self._COMPONENTS)}
        values["backlink"] = overall
        breakdown = ScoreBreakdown(**values)

        platform_scores = {
            platform: PlatformScore(
                score=jitter(len(self._COMPONENTS) + i),
                factors=PLATFORM_FACTORS.get(platform, ()),
            )
            for i, platform in enumerate(platforms)
        }
        return ScoringOutput(
            authority_score=AuthorityScore(
                overall=overall,
                breakdown=breakdown,
                weights=dict(WEIGHTS),
                factors=("Estimated from domain reputation; live analysis unavailable",),
            ),
            platform_scores=platform_scores,
            recommendations=FALLBACK_RECOMMENDATIONS,
        )
