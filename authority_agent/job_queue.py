from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from .backends import QueueBackend, create_backend
from .config import Settings
from .models import AnalysisJob, JobRecord, JobStatusResponse, QueueStats, WorkerStatus

logger = logging.getLogger(__name__)


class JobQueue:
    """Submission, status and stats surface over one backend.

    The backend is resolved once and held as a plain reference; nothing
    here re-evaluates which backend is in use.
    """

    def __init__(self, backend: QueueBackend):
        self.backend = backend

    @classmethod
    def create(cls, settings: Settings | None = None) -> "JobQueue":
        return cls(create_backend(settings))

    @property
    def backend_kind(self) -> str:
        return self.backend.kind

    def enqueue(self, job: AnalysisJob | dict[str, Any]) -> str:
        if not isinstance(job, AnalysisJob):
            job = AnalysisJob.model_validate(job)
        return self.backend.submit(job)

    def status(self, job_id: str) -> JobRecord | None:
        return self.backend.read(job_id)

    def job_status(self, job_id: str) -> JobStatusResponse:
        record = self.backend.read(job_id)
        if record is None:
            return JobStatusResponse(id=job_id, status="not_found")
        error = record.failure_reason
        if error is None and record.result is not None:
            error = record.result.error
        return JobStatusResponse(
            id=record.id,
            status=record.status,
            progress=record.progress,
            result=record.result,
            error=error,
        )

    def stats(self) -> QueueStats:
        counts = self.backend.counts()
        return QueueStats(**counts, total=sum(counts.values()), backend=self.backend.kind)

    def cleanup(self, max_age_s: float | None = None) -> int:
        return self.backend.cleanup(max_age_s)

    def worker_status(self) -> WorkerStatus:
        return self.backend.worker_status()

    async def wait(self, job_id: str, *, poll_interval_s: float = 1.0, timeout_s: float = 300.0) -> JobRecord | None:
        """Poll until the job reaches a terminal state, disappears or ``timeout_s`` elapses."""
        deadline = time.monotonic() + timeout_s
        while True:
            record = await asyncio.to_thread(self.backend.read, job_id)
            if record is None or record.status in ("completed", "failed"):
                return record
            if time.monotonic() >= deadline:
                return record
            await asyncio.sleep(poll_interval_s)

    def close(self) -> None:
        self.backend.close()
