from __future__ import annotations

import dataclasses
import json
import logging
import re
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from . import diagnostics
from .browser import NavigationFailed, NavigationResult, NavigationTimeout, RenderingSession, open_session
from .config import Settings, get_settings
from .errors import CrawlError, ExtractionFieldError
from .http_probe import ProbeResult, probe_http
from .models import (
    AIFactors,
    Authorship,
    ContentInfo,
    CoreWebVitals,
    Freshness,
    HeadingStructure,
    ImageStats,
    JobOptions,
    PerformanceInfo,
    PlatformHeuristics,
    ResourceStats,
    SecurityInfo,
    SEOInfo,
    TechnicalInfo,
    WebsiteSnapshot,
)
from .reputation import registrable_domain_guess

logger = logging.getLogger(__name__)

T = TypeVar("T")

SessionFactory = Callable[[str], AbstractAsyncContextManager[RenderingSession]]
HeaderProbe = Callable[..., Awaitable[ProbeResult]]

_EXCERPT_CHARS = 3000
_ACADEMIC_WORDS = ("research", "study", "analysis", "evidence", "conclusion", "methodology")


def _field(name: str, default: T, fn: Callable[..., T], *args: Any) -> T:
    """Run one extraction step; a failure contributes ``default`` instead."""
    try:
        return fn(*args)
    except Exception as e:
        err = ExtractionFieldError(name, e)
        diagnostics.emit("extraction_field_defaulted", field=name, error=str(err))
        return default


async def _afield(name: str, default: T, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
    try:
        return await fn(*args)
    except Exception as e:
        err = ExtractionFieldError(name, e)
        diagnostics.emit("extraction_field_defaulted", field=name, error=str(err))
        return default


# ---- text metrics ---------------------------------------------------------


def count_word_syllables(word: str) -> int:
    word = re.sub(r"[^a-z]", "", word.lower())
    if len(word) <= 3:
        return 1
    word = re.sub(r"(?:[^laeiouy]es|ed|[^laeiouy]e)$", "", word)
    word = re.sub(r"^y", "", word)
    matches = re.findall(r"[aeiouy]{1,2}", word)
    return len(matches) or 1


def readability_score(text: str) -> float:
    """Flesch reading ease, clamped to 0-100."""
    words = text.split()
    sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
    if not words or not sentences:
        return 0.0
    syllables = sum(count_word_syllables(w) for w in words)
    score = 206.835 - 1.015 * (len(words) / len(sentences)) - 84.6 * (syllables / len(words))
    return round(max(0.0, min(100.0, score)), 1)


def is_recent(date_string: str, *, now: datetime | None = None, days: int = 365) -> bool:
    if not date_string:
        return False
    try:
        parsed = datetime.fromisoformat(date_string.strip().replace("Z", "+00:00"))
    except ValueError:
        return False
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return (now - parsed).days < days


# ---- structured data ------------------------------------------------------


def _try_parse_json_fragment(s: str) -> Any | None:
    if not s:
        return None
    try:
        return json.loads(s)
    except ValueError:
        pass
    m = re.search(r"(\{.*\}|\[.*\])", s, flags=re.DOTALL)
    if not m:
        return None
    try:
        return json.loads(m.group(1))
    except ValueError:
        return None


def _walk_json(obj: Any):
    if isinstance(obj, dict):
        yield obj
        for v in obj.values():
            yield from _walk_json(v)
    elif isinstance(obj, list):
        for v in obj:
            yield from _walk_json(v)


def extract_structured_data(soup: BeautifulSoup, url: str = "") -> list[dict[str, Any]]:
    """Every JSON-LD object on the page; malformed blocks are skipped one by one."""
    blocks: list[dict[str, Any]] = []
    for index, tag in enumerate(soup.select('script[type="application/ld+json"]')):
        raw = (tag.string or tag.get_text() or "").strip()
        if not raw:
            continue
        parsed = _try_parse_json_fragment(raw)
        if parsed is None:
            diagnostics.emit("jsonld_block_skipped", url=url, index=index, preview=raw[:120])
            continue
        items = parsed if isinstance(parsed, list) else [parsed]
        for item in items:
            if not isinstance(item, dict):
                continue
            graph = item.get("@graph")
            if isinstance(graph, list):
                context = item.get("@context")
                for node in graph:
                    if isinstance(node, dict):
                        blocks.append({"@context": context, **node} if context and "@context" not in node else node)
            else:
                blocks.append(item)
    return blocks


def _schema_types(blocks: list[dict[str, Any]]) -> tuple[str, ...]:
    types: list[str] = []
    for block in blocks:
        for node in _walk_json(block):
            t = node.get("@type")
            for value in (t if isinstance(t, list) else [t]):
                if isinstance(value, str) and value not in types:
                    types.append(value)
    return tuple(types)


# ---- per-section extraction ----------------------------------------------


def _visible_text(soup: BeautifulSoup) -> str:
    clone = BeautifulSoup(str(soup), "html.parser")
    for tag in clone(["script", "style", "noscript", "template"]):
        tag.decompose()
    return re.sub(r"\s+", " ", clone.get_text(" ")).strip()


def _headings(soup: BeautifulSoup) -> HeadingStructure:
    levels = {
        f"h{i}": tuple(h.get_text(" ", strip=True) for h in soup.find_all(f"h{i}"))
        for i in range(1, 7)
    }
    return HeadingStructure(**levels)


def _authorship(soup: BeautifulSoup) -> Authorship:
    authors: list[str] = []
    for selector in (".author", ".byline", ".writer", '[rel="author"]'):
        for el in soup.select(selector):
            text = el.get_text(" ", strip=True)
            if text and text not in authors:
                authors.append(text[:120])
    for selector in ('meta[name="author"]', 'meta[property="article:author"]'):
        for el in soup.select(selector):
            content = (el.get("content") or "").strip()
            if content and content not in authors:
                authors.append(content[:120])
    return Authorship(authors=tuple(authors), has_author=bool(authors))


def _meta(soup: BeautifulSoup, **attrs: str) -> str:
    tag = soup.find("meta", attrs=attrs)
    return (tag.get("content") or "").strip() if tag else ""


def _freshness(soup: BeautifulSoup, blocks: list[dict[str, Any]]) -> Freshness:
    dates = [el.get_text(" ", strip=True) for el in soup.select("time, .date, .published, .updated")]
    published = _meta(soup, property="article:published_time")
    modified = _meta(soup, property="article:modified_time") or _meta(soup, name="last-modified")
    for block in blocks:
        published = published or str(block.get("datePublished") or "")
        modified = modified or str(block.get("dateModified") or "")
    return Freshness(
        dates_found=len(dates),
        published=published,
        last_modified=modified,
        is_recent=is_recent(modified) or is_recent(published),
    )


def _links(soup: BeautifulSoup, base_url: str) -> tuple[int, int, tuple[str, ...]]:
    anchors = soup.find_all("a")
    own = registrable_domain_guess(urlparse(base_url).hostname or "")
    external = 0
    domains: list[str] = []
    for a in anchors:
        href = (a.get("href") or "").strip()
        if not href.lower().startswith(("http://", "https://")):
            continue
        host = registrable_domain_guess(urlparse(href).hostname or "")
        if not host or host == own:
            continue
        external += 1
        if host not in domains:
            domains.append(host)
    return len(anchors), external, tuple(domains)


def _images(soup: BeautifulSoup) -> ImageStats:
    images = soup.find_all("img")
    return ImageStats(
        total=len(images),
        with_alt=sum(1 for img in images if (img.get("alt") or "").strip()),
        lazy_loaded=sum(1 for img in images if (img.get("loading") or "").lower() == "lazy"),
    )


def _resources(entries: list[dict[str, Any]]) -> ResourceStats:
    if not entries:
        return ResourceStats()
    sizes = [float(e.get("size") or 0) for e in entries]
    return ResourceStats(
        total=len(entries),
        scripts=sum(1 for e in entries if e.get("type") == "script"),
        stylesheets=sum(1 for e in entries if e.get("type") in ("link", "css")),
        images=sum(1 for e in entries if e.get("type") == "img"),
        fonts=sum(1 for e in entries if e.get("type") == "font"),
        average_size_bytes=round(sum(sizes) / len(sizes), 1),
    )


def _vitals(raw: dict[str, float]) -> CoreWebVitals:
    return CoreWebVitals(
        lcp_ms=round(float(raw.get("lcp", 0.0)), 1),
        fid_ms=round(float(raw.get("fid", 0.0)), 1),
        cls=round(float(raw.get("cls", 0.0)), 4),
    )


def _faq_count(soup: BeautifulSoup, blocks: list[dict[str, Any]]) -> int:
    count = 0
    for el in soup.select("details, .faq, .faq-item"):
        question = el.select_one("summary, .question, h3, h4")
        answer = el.select_one("p, .answer")
        if question and question.get_text(strip=True) and answer and answer.get_text(strip=True):
            count += 1
    for block in blocks:
        if block.get("@type") == "FAQPage":
            entities = block.get("mainEntity")
            count += len(entities) if isinstance(entities, list) else (1 if entities else 0)
    return count


def _citation_count(soup: BeautifulSoup) -> int:
    count = len(soup.select("cite, .citation, [data-cite]"))
    count += len(soup.select("ol.references li, .references ol li"))
    return count


def _security(final_url: str, headers: dict[str, str], soup: BeautifulSoup) -> SecurityInfo:
    return SecurityInfo(
        has_tls=urlparse(final_url).scheme == "https",
        has_csp="content-security-policy" in headers
        or soup.find("meta", attrs={"http-equiv": re.compile("^content-security-policy$", re.I)}) is not None,
        has_hsts="strict-transport-security" in headers,
        has_referrer_policy="referrer-policy" in headers or soup.find("meta", attrs={"name": "referrer"}) is not None,
    )


def _seo(soup: BeautifulSoup, blocks: list[dict[str, Any]]) -> SEOInfo:
    canonical = soup.find("link", rel="canonical")
    return SEOInfo(
        title=soup.title.get_text(strip=True) if soup.title else "",
        meta_description=_meta(soup, name="description"),
        canonical=(canonical.get("href") or "").strip() if canonical else "",
        has_open_graph=soup.find("meta", property=re.compile(r"^og:")) is not None,
        structured_data_blocks=tuple(blocks),
    )


def _platform_heuristics(soup: BeautifulSoup, text: str, blocks: list[dict[str, Any]], external_links: int) -> PlatformHeuristics:
    lower = text.lower()
    current_year = str(datetime.now(timezone.utc).year)
    dates = [el.get_text(" ", strip=True) for el in soup.select("time, .date, .published")]
    return PlatformHeuristics(
        has_structured_data=bool(blocks),
        has_faq=bool(soup.select("details, .faq")),
        has_code_examples=bool(soup.select("pre code, .code-example")),
        has_step_by_step=bool(soup.select("ol li, .step, .tutorial")),
        has_definitions=bool(soup.select("dl, .definition, .glossary")),
        has_citations=bool(soup.select("cite, .citation")),
        has_references=bool(soup.select(".references, .bibliography")),
        has_academic_tone=any(w in lower for w in _ACADEMIC_WORDS),
        has_detailed_explanations=any(len(p.get_text()) > 200 for p in soup.find_all("p")),
        has_recent_data=any(current_year in d for d in dates),
        has_multiple_sources=external_links > 5,
        has_factual_content=bool(soup.select("blockquote, .quote, .fact")),
        has_data_tables=bool(soup.select("table, .chart, .graph")),
    )


def _ai_factors(soup: BeautifulSoup, text: str, blocks: list[dict[str, Any]], external_links: int) -> AIFactors:
    return AIFactors(
        schema_markup_count=len(blocks),
        schema_types=_field("schema_types", (), _schema_types, blocks),
        microdata_count=len(soup.select("[itemtype]")),
        faq_count=_field("faq_count", 0, _faq_count, soup, blocks),
        citation_count=_field("citation_count", 0, _citation_count, soup),
        table_count=len(soup.find_all("table")),
        code_block_count=len(soup.select("pre, code")),
        platform_heuristics=_field(
            "platform_heuristics", PlatformHeuristics(), _platform_heuristics, soup, text, blocks, external_links
        ),
    )


def build_snapshot(
    url: str,
    nav: NavigationResult,
    *,
    vitals: dict[str, float] | None = None,
    timing: dict[str, float] | None = None,
    resources: list[dict[str, Any]] | None = None,
    options: JobOptions | None = None,
    screenshot_png: bytes | None = None,
) -> WebsiteSnapshot:
    """Turn one rendered page into a complete snapshot.

    Each step is isolated: whatever throws contributes its zero/empty default
    and the rest of the snapshot is still populated.
    """
    options = options or JobOptions()
    final_url = nav.final_url or url
    soup = _field("html", BeautifulSoup("", "html.parser"), BeautifulSoup, nav.html or "", "html.parser")
    blocks = _field("structured_data", [], extract_structured_data, soup, url)
    text = _field("text", "", _visible_text, soup)
    link_count, external_links, external_domains = _field("links", (0, 0, ()), _links, soup, final_url)
    timing = timing or {}

    performance = PerformanceInfo(
        load_time_ms=nav.load_time_ms,
        status_code=nav.status_code,
        redirect_count=nav.redirect_count,
        ttfb_ms=round(float(timing.get("ttfb", 0.0)), 1),
        dom_content_loaded_ms=round(float(timing.get("domContentLoaded", 0.0)), 1),
    )

    technical = TechnicalInfo(
        core_web_vitals=_field("core_web_vitals", CoreWebVitals(), _vitals, vitals or {}),
        is_mobile_optimized=_field(
            "viewport", False, lambda: soup.find("meta", attrs={"name": "viewport"}) is not None
        ),
        image_stats=_field("image_stats", ImageStats(), _images, soup),
        resource_stats=_field("resource_stats", ResourceStats(), _resources, resources or []),
    )

    content = ContentInfo(
        word_count=len(text.split()),
        readability_score=_field("readability", 0.0, readability_score, text),
        heading_structure=_field("headings", HeadingStructure(), _headings, soup),
        paragraph_count=_field("paragraphs", 0, lambda: len(soup.find_all("p"))),
        list_count=_field("lists", 0, lambda: len(soup.find_all(["ul", "ol"]))),
        link_count=link_count,
        external_link_count=external_links,
        external_domains=external_domains,
        authorship=_field("authorship", Authorship(), _authorship, soup),
        freshness=_field("freshness", Freshness(), _freshness, soup, blocks),
        excerpt=text[:_EXCERPT_CHARS],
    )

    ai_factors = AIFactors()
    if options.include_ai_factors:
        ai_factors = _field("ai_factors", AIFactors(), _ai_factors, soup, text, blocks, external_links)

    return WebsiteSnapshot(
        url=url,
        final_url=final_url,
        performance=performance,
        technical=technical,
        content=content,
        seo=_field("seo", SEOInfo(structured_data_blocks=tuple(blocks)), _seo, soup, blocks),
        security=_field("security", SecurityInfo(), _security, final_url, nav.headers, soup),
        ai_factors=ai_factors,
        screenshot_png=screenshot_png,
    )


class FeatureExtractor:
    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: SessionFactory | None = None,
        header_probe: HeaderProbe | None = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory or open_session
        self._header_probe = header_probe or probe_http

    async def crawl(self, url: str, options: JobOptions | None = None) -> WebsiteSnapshot:
        options = options or JobOptions()
        probe = None
        if self.settings.http_probe:
            probe = await _afield("http_probe", None, self._probe, url)

        async with self._session_factory(self.settings.user_agent) as session:
            nav = await self._navigate(session, url)
            if not 200 <= nav.status_code < 300:
                raise CrawlError(url, f"HTTP {nav.status_code}")

            timing = await _afield("navigation_timing", {}, session.navigation_timing)
            resources = await _afield("resources", [], session.resource_entries)
            vitals: dict[str, float] = {}
            if options.include_performance:
                vitals = await _afield(
                    "core_web_vitals", {}, session.observe_performance, self.settings.vitals_window_ms
                )
            screenshot = None
            if options.include_screenshots:
                screenshot = await _afield("screenshot", None, session.screenshot)

        if probe is not None:
            nav = dataclasses.replace(
                nav,
                headers={**probe.headers, **nav.headers},
                redirect_count=max(nav.redirect_count, probe.redirect_count),
            )

        return build_snapshot(
            url,
            nav,
            vitals=vitals,
            timing=timing,
            resources=resources,
            options=options,
            screenshot_png=screenshot,
        )

    async def _probe(self, url: str) -> ProbeResult:
        return await self._header_probe(
            url, user_agent=self.settings.user_agent, timeout_s=self.settings.probe_timeout_s
        )

    async def _navigate(self, session: RenderingSession, url: str) -> NavigationResult:
        plan = self.settings.navigation_plan()
        for attempt, (wait_until, timeout_ms) in enumerate(plan, start=1):
            try:
                return await session.navigate(url, wait_until, timeout_ms)
            except NavigationTimeout:
                logger.warning(
                    "Navigation to %s timed out (wait_until=%s, %sms), attempt %s/%s",
                    url, wait_until, timeout_ms, attempt, len(plan),
                )
                diagnostics.emit("navigation_retry", url=url, attempt=attempt, wait_until=wait_until)
            except NavigationFailed as e:
                raise CrawlError(url, str(e)) from e
        raise CrawlError(url, f"navigation timed out after {len(plan)} attempts")
