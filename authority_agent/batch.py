from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Iterable

from .errors import JobExecutionError
from .models import AnalysisResult, BatchItemResult, BatchProgress

logger = logging.getLogger(__name__)

Analyze = Callable[[str], Awaitable[AnalysisResult]]
ProgressCallback = Callable[[BatchProgress], None]


class BatchCoordinator:
    """Run many URLs through the pipeline, ``concurrency`` at a time.

    Each chunk is awaited fully before the next starts, with a short pause
    in between. A failing URL is recorded and never aborts the batch.
    """

    def __init__(self, analyze: Analyze, *, pause_s: float = 1.0):
        self._analyze = analyze
        self.pause_s = pause_s

    @classmethod
    def for_queue(cls, queue, *, pause_s: float = 1.0, poll_interval_s: float = 1.0, timeout_s: float = 300.0):
        async def analyze(url: str) -> AnalysisResult:
            job_id = await asyncio.to_thread(queue.enqueue, {"url": url})
            record = await queue.wait(job_id, poll_interval_s=poll_interval_s, timeout_s=timeout_s)
            if record is None:
                raise JobExecutionError(f"job {job_id} expired before finishing")
            if record.result is None:
                raise JobExecutionError(record.failure_reason or f"job {job_id} did not finish ({record.status})")
            return record.result

        return cls(analyze, pause_s=pause_s)

    async def _run_one(self, url: str) -> BatchItemResult:
        now = datetime.now(timezone.utc)
        try:
            result = await self._analyze(url)
        except Exception as e:
            logger.warning("Batch item %s failed: %s", url, e)
            return BatchItemResult(url=url, success=False, error=str(e) or type(e).__name__, timestamp=now)
        if result.status == "failed":
            return BatchItemResult(url=url, success=False, result=result, error=result.error or "Analysis failed", timestamp=now)
        return BatchItemResult(url=url, success=True, result=result, timestamp=now)

    async def stream(self, urls: Iterable[str], concurrency: int = 2) -> AsyncIterator[tuple[list[BatchItemResult], BatchProgress]]:
        """Yield each chunk's results together with a snapshot of the running progress."""
        urls = list(urls)
        size = max(1, concurrency)
        progress = BatchProgress(total_urls=len(urls))

        for start in range(0, len(urls), size):
            chunk = urls[start:start + size]
            progress.current_url = chunk[0]
            progress.current_progress = round(start / len(urls) * 100)

            chunk_results = list(await asyncio.gather(*(self._run_one(u) for u in chunk)))
            progress.completed_urls += len(chunk_results)
            progress.errors.extend(f"{r.url}: {r.error}" for r in chunk_results if not r.success)
            progress.current_progress = round(progress.completed_urls / len(urls) * 100)

            yield chunk_results, progress.model_copy(deep=True)

            if start + size < len(urls) and self.pause_s > 0:
                await asyncio.sleep(self.pause_s)

    async def analyze_batch(
        self,
        urls: Iterable[str],
        concurrency: int = 2,
        on_progress: ProgressCallback | None = None,
    ) -> list[BatchItemResult]:
        results: list[BatchItemResult] = []
        async for chunk_results, progress in self.stream(urls, concurrency):
            results.extend(chunk_results)
            if on_progress is not None:
                on_progress(progress)
        return results
