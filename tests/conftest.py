from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from authority_agent import diagnostics
from authority_agent.browser import NavigationFailed, NavigationResult, NavigationTimeout
from authority_agent.config import Settings
from authority_agent.models import (
    AnalysisJob,
    AnalysisResult,
    AuthorityScore,
    PlatformScore,
    ScoreBreakdown,
)

YEAR = datetime.now(timezone.utc).year

ARTICLE_HTML = f"""<!doctype html>
<html lang="en">
<head>
  <title>How Queue Backends Keep Analysis Jobs Moving</title>
  <meta name="description" content="A practical guide to running website analysis jobs through a durable queue, with retries, bounded retention and a local fallback when Redis is down.">
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <meta name="author" content="Dana Reyes">
  <meta property="og:title" content="Queue Backends">
  <meta property="article:published_time" content="{YEAR}-01-15T09:00:00Z">
  <link rel="canonical" href="https://blog.example.org/queues">
  <script type="application/ld+json">
  {{"@context": "https://schema.org", "@type": "Article", "headline": "Queue Backends",
    "author": {{"@type": "Person", "name": "Dana Reyes"}}, "datePublished": "{YEAR}-01-15"}}
  </script>
  <script type="application/ld+json">
  {{"@context": "https://schema.org", "@type": "FAQPage", "mainEntity": [
    {{"@type": "Question", "name": "Why retry?", "acceptedAnswer": {{"@type": "Answer", "text": "Networks fail."}}}},
    {{"@type": "Question", "name": "Why local?", "acceptedAnswer": {{"@type": "Answer", "text": "Availability."}}}}
  ]}}
  </script>
</head>
<body>
  <h1>Queue Backends</h1>
  <span class="byline">Dana Reyes</span>
  <time datetime="{YEAR}-01-15">{YEAR}-01-15</time>
  <h2>Why queues</h2>
  <p>Research on job systems shows that a durable queue keeps work safe. The study is clear.</p>
  <h2>Retries</h2>
  <p>Retries back off exponentially. Each attempt waits twice as long as the one before it.</p>
  <h2>Fallback</h2>
  <ol><li>Try Redis.</li><li>Fall back to memory.</li></ol>
  <ul><li>One</li><li>Two</li></ul>
  <pre><code>queue.enqueue(job)</code></pre>
  <table><tr><td>backend</td><td>retries</td></tr></table>
  <details><summary>Is it durable?</summary><p>Only the distributed backend.</p></details>
  <blockquote>Availability over purity.</blockquote>
  <cite>Queueing Theory, 2019</cite>
  <img src="/a.png" alt="diagram" loading="lazy">
  <img src="/b.png">
  <a href="/about">About</a>
  <a href="https://docs.python-rq.org/">rq docs</a>
  <a href="https://redis.io/docs">redis docs</a>
</body>
</html>
"""


class FakeSession:
    """Stands in for a rendering session; records what the extractor asked for."""

    def __init__(
        self,
        html: str = ARTICLE_HTML,
        *,
        status: int = 200,
        final_url: str | None = None,
        headers: dict[str, str] | None = None,
        timeouts: int = 0,
        fail: str | None = None,
        vitals: dict[str, float] | None = None,
        resources_error: bool = False,
    ):
        self.html = html
        self.status = status
        self.final_url = final_url
        self.headers = headers if headers is not None else {"content-security-policy": "default-src 'self'"}
        self.timeouts = timeouts
        self.fail = fail
        self.vitals = vitals if vitals is not None else {"lcp": 1800.0, "fid": 12.0, "cls": 0.02}
        self.resources_error = resources_error
        self.navigations: list[tuple[str, int]] = []
        self.observed = False
        self.closed = False
        self.user_agent: str | None = None

    async def navigate(self, url, wait_until, timeout_ms):
        self.navigations.append((wait_until, timeout_ms))
        if self.fail:
            raise NavigationFailed(self.fail)
        if len(self.navigations) <= self.timeouts:
            raise NavigationTimeout(f"Timeout {timeout_ms}ms exceeded")
        return NavigationResult(
            html=self.html,
            status_code=self.status,
            final_url=self.final_url or url,
            headers=self.headers,
            load_time_ms=850,
        )

    async def observe_performance(self, window_ms):
        self.observed = True
        return self.vitals

    async def navigation_timing(self):
        return {"ttfb": 120.0, "domContentLoaded": 640.0}

    async def resource_entries(self):
        if self.resources_error:
            raise RuntimeError("performance API unavailable")
        return [
            {"name": "app.js", "duration": 40.0, "size": 12000, "type": "script"},
            {"name": "site.css", "duration": 10.0, "size": 4000, "type": "link"},
        ]

    async def screenshot(self):
        return b"\x89PNG\r\n\x1a\nfake"


def session_factory(session: FakeSession):
    @asynccontextmanager
    async def factory(user_agent):
        session.user_agent = user_agent
        try:
            yield session
        finally:
            session.closed = True

    return factory


def make_result(url: str, *, status: str = "completed", error: str | None = None) -> AnalysisResult:
    breakdown = ScoreBreakdown(
        technical=70, content=70, seo=70, ai_optimization=70, backlink=70, freshness=70, trust=70
    )
    return AnalysisResult(
        url=url,
        authority_score=AuthorityScore(overall=70, breakdown=breakdown),
        platform_scores={"chatgpt": PlatformScore(score=72)},
        recommendations=("Add more structured data markup",),
        timestamp=datetime.now(timezone.utc),
        status=status,
        error=error,
    )


@pytest.fixture
def settings():
    return Settings(
        use_redis=False,
        local_delay_s=0.01,
        low_priority_delay_s=0.05,
        batch_pause_s=0.0,
        vitals_window_ms=10,
        http_probe=False,
        gemini_api_key=None,
    )


@pytest.fixture
def diagnostic_events():
    events: list[tuple[str, dict]] = []
    unsubscribe = diagnostics.subscribe(lambda event, fields: events.append((event, fields)))
    yield events
    unsubscribe()


@pytest.fixture
def stub_runner():
    """Runner that finishes instantly; URLs containing "boom" raise."""

    def runner(job: AnalysisJob, progress):
        progress(50)
        if "boom" in job.url:
            raise RuntimeError(f"worker crashed on {job.url}")
        return make_result(job.url)

    return runner
