from __future__ import annotations

import asyncio
import base64
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from . import diagnostics
from .commentary import GeminiCommentary
from .config import Settings, get_settings
from .errors import CrawlError, JobExecutionError
from .extractor import FeatureExtractor
from .models import AnalysisJob, AnalysisResult
from .scoring import FallbackScorer, ScoringEngine

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[int], None]


def _noop(_: int) -> None:
    return None


def default_engine(settings: Settings) -> ScoringEngine:
    commentary = GeminiCommentary(settings) if settings.gemini_api_key else None
    return ScoringEngine(commentary)


async def analyze_job(
    job: AnalysisJob,
    *,
    extractor: FeatureExtractor | None = None,
    engine: ScoringEngine | None = None,
    fallback: FallbackScorer | None = None,
    progress: ProgressReporter | None = None,
    settings: Settings | None = None,
    deadline_s: float | None = None,
) -> AnalysisResult:
    """Crawl then score one job. Never raises: failures become a fallback result.

    Crawl and scoring together must finish within ``deadline_s`` (default
    ``settings.analysis_deadline_s``); past it the job falls back like any
    other failure. Commentary calls are not started after the deadline.
    """
    settings = settings or get_settings()
    extractor = extractor or FeatureExtractor(settings)
    engine = engine or default_engine(settings)
    fallback = fallback or FallbackScorer()
    report = progress or _noop
    budget = settings.analysis_deadline_s if deadline_s is None else deadline_s
    deadline = time.monotonic() + budget

    async def crawl_and_score():
        report(10)
        snapshot = await extractor.crawl(job.url, job.options)
        report(60)
        scored = await asyncio.to_thread(
            engine.score,
            snapshot,
            job.url,
            job.options.platforms,
            job.options.include_ai_factors,
            deadline=deadline,
        )
        report(90)
        return snapshot, scored

    try:
        snapshot, scored = await asyncio.wait_for(crawl_and_score(), timeout=budget)
    except Exception as e:
        if isinstance(e, (CrawlError, JobExecutionError)):
            err = e
        elif isinstance(e, TimeoutError):
            err = JobExecutionError(f"Analysis exceeded {budget:g}s")
        else:
            err = JobExecutionError(f"{type(e).__name__}: {e}")
        logger.warning("Analysis failed for %s, using fallback score: %s", job.url, err)
        diagnostics.emit("analysis_fallback", url=job.url, error=str(err))
        scored = fallback.score(job.url, job.options.platforms)
        return AnalysisResult(
            url=job.url,
            user_id=job.user_id,
            authority_score=scored.authority_score,
            platform_scores=scored.platform_scores,
            recommendations=scored.recommendations,
            timestamp=datetime.now(timezone.utc),
            status="failed",
            error=str(err) or type(e).__name__,
        )

    screenshot = None
    if snapshot.screenshot_png:
        screenshot = base64.b64encode(snapshot.screenshot_png).decode("ascii")

    return AnalysisResult(
        url=job.url,
        user_id=job.user_id,
        authority_score=scored.authority_score,
        platform_scores=scored.platform_scores,
        recommendations=scored.recommendations,
        timestamp=datetime.now(timezone.utc),
        status="completed",
        screenshot=screenshot,
    )


def run_job(job: AnalysisJob, progress: ProgressReporter | None = None) -> AnalysisResult:
    """Synchronous entry point used by both queue backends' worker threads."""
    logger.info("Processing analysis for %s", job.url)
    return asyncio.run(analyze_job(job, progress=progress))
