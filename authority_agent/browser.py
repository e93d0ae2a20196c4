from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright


class NavigationTimeout(Exception):
    """Navigation did not reach its wait condition in time."""


class NavigationFailed(Exception):
    """Navigation failed for a reason other than a timeout (DNS, refused, TLS...)."""


@dataclass(frozen=True)
class NavigationResult:
    html: str
    status_code: int
    final_url: str
    redirect_count: int = 0
    headers: dict[str, str] = field(default_factory=dict)
    load_time_ms: int = 0


class RenderingSession(Protocol):
    async def navigate(self, url: str, wait_until: str, timeout_ms: int) -> NavigationResult: ...

    async def observe_performance(self, window_ms: int) -> dict[str, float]: ...

    async def navigation_timing(self) -> dict[str, float]: ...

    async def resource_entries(self) -> list[dict[str, Any]]: ...

    async def screenshot(self) -> bytes: ...


_VITALS_JS = """
(windowMs) => new Promise((resolve) => {
  const vitals = {};
  const watch = (type, onEntry) => {
    try {
      new PerformanceObserver((list) => list.getEntries().forEach(onEntry))
        .observe({ type, buffered: true });
    } catch (e) {}
  };
  watch('largest-contentful-paint', (e) => { vitals.lcp = e.startTime; });
  watch('first-input', (e) => { vitals.fid = e.processingStart - e.startTime; });
  watch('layout-shift', (e) => {
    if (!e.hadRecentInput) vitals.cls = (vitals.cls || 0) + e.value;
  });
  setTimeout(() => resolve(vitals), windowMs);
})
"""

_NAV_TIMING_JS = """
() => {
  const nav = performance.getEntriesByType('navigation')[0];
  if (!nav) return {};
  return {
    ttfb: nav.responseStart - nav.requestStart,
    domContentLoaded: nav.domContentLoadedEventEnd - nav.startTime,
  };
}
"""

_RESOURCES_JS = """
() => performance.getEntriesByType('resource').map((entry) => ({
  name: entry.name,
  duration: entry.duration,
  size: entry.transferSize || 0,
  type: entry.initiatorType,
}))
"""


class PlaywrightSession:
    """One page in one browser, owned by a single crawl."""

    def __init__(self, page):
        self._page = page

    async def navigate(self, url: str, wait_until: str, timeout_ms: int) -> NavigationResult:
        start = time.perf_counter()
        try:
            response = await self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(str(e)) from e
        except PlaywrightError as e:
            raise NavigationFailed(str(e)) from e
        load_time_ms = int((time.perf_counter() - start) * 1000)

        if response is None:
            raise NavigationFailed("No response received.")

        redirects = 0
        request = response.request.redirected_from
        while request is not None:
            redirects += 1
            request = request.redirected_from

        try:
            headers = await response.all_headers()
        except PlaywrightError:
            headers = dict(response.headers)

        return NavigationResult(
            html=await self._page.content(),
            status_code=response.status,
            final_url=response.url,
            redirect_count=redirects,
            headers={k.lower(): v for k, v in headers.items()},
            load_time_ms=load_time_ms,
        )

    async def observe_performance(self, window_ms: int) -> dict[str, float]:
        try:
            raw = await asyncio.wait_for(
                self._page.evaluate(_VITALS_JS, window_ms),
                timeout=window_ms / 1000 + 2,
            )
        except asyncio.TimeoutError:
            return {}
        return {k: float(v) for k, v in (raw or {}).items() if isinstance(v, (int, float))}

    async def navigation_timing(self) -> dict[str, float]:
        raw = await self._page.evaluate(_NAV_TIMING_JS)
        return {k: float(v) for k, v in (raw or {}).items() if isinstance(v, (int, float))}

    async def resource_entries(self) -> list[dict[str, Any]]:
        return list(await self._page.evaluate(_RESOURCES_JS) or [])

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(type="png", full_page=False)


@asynccontextmanager
async def open_session(user_agent: str) -> AsyncIterator[PlaywrightSession]:
    # Short-lived, no persistent storage; torn down on every exit path.
    async with async_playwright() as p:
        browser = await p.chromium.launch(
            headless=True,
            args=[
                "--no-sandbox",
                "--disable-dev-shm-usage",
                "--disable-gpu",
            ],
        )
        try:
            context = await browser.new_context(
                viewport={"width": 1365, "height": 768},
                user_agent=user_agent,
                java_script_enabled=True,
                ignore_https_errors=True,
            )
            try:
                page = await context.new_page()
                yield PlaywrightSession(page)
            finally:
                await context.close()
        finally:
            await browser.close()
