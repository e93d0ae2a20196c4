from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from . import diagnostics
from .batch import BatchCoordinator
from .config import get_settings
from .job_queue import JobQueue
from .models import (
    AnalysisJob,
    BatchRequest,
    BatchResponse,
    BatchProgress,
    JobStatusResponse,
    QueueStats,
    SchemaValidateRequest,
    SchemaValidationResult,
    WorkerStatus,
)
from .schema_validation import validate_schema

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
if settings.diagnostics:
    diagnostics.enable()

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_queue() -> JobQueue:
    # Backend selection happens once per process.
    queue = JobQueue.create(settings)
    logger.info("Job queue ready (%s backend)", queue.backend_kind)
    return queue


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Backend is chosen at startup, not on the first request.
    queue = get_queue()
    yield
    queue.close()


app = FastAPI(title="Authority Analysis Agent", version="0.1.0", lifespan=lifespan)

# For local dev, this defaults to allowing http://localhost:3000.
# In production, set AUTHORITY_CORS_ORIGINS to the deployed frontend origins.
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_batch_coordinator(queue: JobQueue = Depends(get_queue)) -> BatchCoordinator:
    return BatchCoordinator.for_queue(queue, pause_s=settings.batch_pause_s)


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/analyze", status_code=202)
def analyze_endpoint(job: AnalysisJob, queue: JobQueue = Depends(get_queue)):
    return {"job_id": queue.enqueue(job)}


@app.get("/jobs/{job_id}", response_model=JobStatusResponse)
def job_status_endpoint(job_id: str, queue: JobQueue = Depends(get_queue)):
    status = queue.job_status(job_id)
    if status.status == "not_found":
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return status


@app.get("/queue/stats", response_model=QueueStats)
def queue_stats_endpoint(queue: JobQueue = Depends(get_queue)):
    return queue.stats()


@app.get("/queue/worker", response_model=WorkerStatus)
def worker_status_endpoint(queue: JobQueue = Depends(get_queue)):
    return queue.worker_status()


@app.post("/queue/cleanup")
def cleanup_endpoint(
    max_age_s: float | None = Query(None, ge=0),
    queue: JobQueue = Depends(get_queue),
):
    return {"removed": queue.cleanup(max_age_s)}


@app.post("/batch", response_model=BatchResponse)
async def batch_endpoint(req: BatchRequest, coordinator: BatchCoordinator = Depends(get_batch_coordinator)):
    progress = BatchProgress(total_urls=len(req.urls))
    results = []
    async for chunk_results, progress in coordinator.stream(req.urls, req.concurrency):
        results.extend(chunk_results)
    return BatchResponse(results=results, progress=progress)


@app.post("/schema/validate", response_model=SchemaValidationResult)
def schema_validate_endpoint(req: SchemaValidateRequest):
    return validate_schema(req.schema_object, req.declared_type)
