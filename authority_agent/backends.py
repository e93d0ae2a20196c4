from __future__ import annotations

import heapq
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import redis
from rq import Queue, Retry, Worker, get_current_job
from rq.exceptions import NoSuchJobError
from rq.job import Callback, Job
from rq.registry import FailedJobRegistry, FinishedJobRegistry, ScheduledJobRegistry, StartedJobRegistry
from rq.results import Result

from .config import Settings, get_settings
from .errors import QueueBackendUnavailable
from .models import AnalysisJob, AnalysisResult, JobRecord, JobState, WorkerStatus
from .pipeline import ProgressReporter, run_job

logger = logging.getLogger(__name__)

PRIORITY_WEIGHTS = {"high": 1, "normal": 2, "low": 3}
TERMINAL_STATES: frozenset[str] = frozenset({"completed", "failed"})

_ALLOWED_TRANSITIONS = {
    "waiting": {"active"},
    "active": {"completed", "failed"},
}

Runner = Callable[[AnalysisJob, ProgressReporter], AnalysisResult]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class QueueBackend(ABC):
    """Persistence and execution strategy for analysis jobs."""

    kind: str = ""
    default_max_age_s: int = 0

    @abstractmethod
    def submit(self, job: AnalysisJob) -> str: ...

    @abstractmethod
    def read(self, job_id: str) -> JobRecord | None: ...

    @abstractmethod
    def list(self, state: JobState | None = None) -> list[JobRecord]: ...

    @abstractmethod
    def remove(self, job_id: str) -> bool: ...

    @abstractmethod
    def worker_status(self) -> WorkerStatus: ...

    def counts(self) -> dict[str, int]:
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0}
        for record in self.list():
            counts[record.status] += 1
        return counts

    def cleanup(self, max_age_s: float | None = None) -> int:
        """Remove terminal records whose last processing time is older than ``max_age_s``."""
        max_age = self.default_max_age_s if max_age_s is None else max_age_s
        cutoff = _now() - timedelta(seconds=max_age)
        removed = 0
        for record in self.list():
            if record.status not in TERMINAL_STATES:
                continue
            if (record.processed_at or record.created_at) < cutoff and self.remove(record.id):
                removed += 1
        logger.info("Cleaned up %s old analysis jobs (%s backend)", removed, self.kind)
        return removed

    def close(self) -> None:
        return None


# ---- local ----------------------------------------------------------------


class LocalBackend(QueueBackend):
    """Single-process store; jobs run one at a time on a deferred timer.

    Jobs whose timers have fired wait in a heap ordered by priority weight,
    then submission order, so the single worker always takes the most urgent
    ready job. No retry: whatever the runner raises is recorded verbatim as the
    failure reason.
    """

    kind = "local"

    def __init__(self, settings: Settings | None = None, runner: Runner = run_job):
        self.settings = settings or get_settings()
        self.default_max_age_s = self.settings.local_max_age_s
        self._runner = runner
        self._records: dict[str, JobRecord] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self._ready: list[tuple[int, int, str, AnalysisJob]] = []
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="authority-local")
        self._closed = False

    def submit(self, job: AnalysisJob) -> str:
        with self._lock:
            seq = next(self._counter)
            job_id = f"job_{seq}"
            self._records[job_id] = JobRecord(id=job_id, status="waiting", created_at=_now())

        delay = self.settings.local_delay_s
        if job.priority == "low":
            delay += self.settings.low_priority_delay_s
        timer = threading.Timer(delay, self._dispatch, args=(job_id, job, seq))
        timer.daemon = True
        timer.start()
        logger.info("Added analysis job %s for URL: %s (local backend)", job_id, job.url)
        return job_id

    def _dispatch(self, job_id: str, job: AnalysisJob, seq: int) -> None:
        with self._lock:
            if self._closed:
                return
            heapq.heappush(self._ready, (PRIORITY_WEIGHTS[job.priority], seq, job_id, job))
            self._executor.submit(self._run_next)

    def _run_next(self) -> None:
        # One executor task per ready job; each takes whichever job is most urgent now.
        with self._lock:
            if not self._ready:
                return
            _, _, job_id, job = heapq.heappop(self._ready)
        self._execute(job_id, job)

    def _update(self, job_id: str, **changes: Any) -> bool:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return False
            new_status = changes.get("status")
            if new_status and new_status != record.status:
                if new_status not in _ALLOWED_TRANSITIONS.get(record.status, ()):
                    logger.error("Refusing %s transition %s -> %s", job_id, record.status, new_status)
                    return False
            self._records[job_id] = record.model_copy(update=changes)
            return True

    def _set_progress(self, job_id: str, value: int) -> None:
        with self._lock:
            record = self._records.get(job_id)
            if record is None or record.status != "active":
                return
            self._records[job_id] = record.model_copy(update={"progress": max(record.progress, min(100, value))})

    def _execute(self, job_id: str, job: AnalysisJob) -> None:
        with self._lock:
            record = self._records.get(job_id)
            attempts = record.attempts + 1 if record else 1
        if not self._update(job_id, status="active", processed_at=_now(), attempts=attempts):
            return
        try:
            result = self._runner(job, lambda value: self._set_progress(job_id, value))
        except Exception as e:
            logger.warning("Job %s failed: %s", job_id, e)
            self._update(job_id, status="failed", processed_at=_now(), failure_reason=str(e) or repr(e))
            return
        self._update(job_id, status="completed", progress=100, result=result, processed_at=_now())
        logger.info("Job %s completed (analysis status: %s)", job_id, result.status)

    def read(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._records.get(job_id)

    def list(self, state: JobState | None = None) -> list[JobRecord]:
        with self._lock:
            records = list(self._records.values())
        return [r for r in records if state is None or r.status == state]

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._records.pop(job_id, None) is not None

    def worker_status(self) -> WorkerStatus:
        return WorkerStatus(backend="local", is_running=not self._closed, concurrency=1, name="local-worker")

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=False)


# ---- distributed ----------------------------------------------------------


def run_analysis_task(payload: dict[str, Any]) -> dict[str, Any]:
    """rq entry point: executes one job inside a distributed worker."""
    job = AnalysisJob.model_validate(payload)
    current = get_current_job()

    def progress(value: int) -> None:
        if current is None:
            return
        current.meta["progress"] = value
        current.save_meta()

    return run_job(job, progress=progress).model_dump(mode="json")


def _trim_registry(registry, job: Job, keep: int, joining: bool = True) -> None:
    """Delete the oldest entries so that at most ``keep`` remain once ``job`` is recorded.

    Callbacks can run before or after rq writes ``job`` into the registry, so
    ``job`` itself is left out of the count and, when it is joining, takes one slot.
    """
    # Registry ids come back oldest first.
    others = [job_id for job_id in registry.get_job_ids() if job_id != job.id]
    slots = max(0, keep - 1) if joining else keep
    for job_id in others[: max(0, len(others) - slots)]:
        registry.remove(job_id, delete_job=True)


def _keep(job: Job, key: str) -> int:
    value = job.meta.get(key)
    return int(value) if value is not None else getattr(get_settings(), key)


def trim_finished(job: Job, connection, result, *args, **kwargs) -> None:
    queue = Queue(job.origin, connection=connection)
    _trim_registry(FinishedJobRegistry(queue=queue), job, _keep(job, "keep_completed"))


def trim_failed(job: Job, connection, type, value, traceback) -> None:
    # A job with retries left goes back to the scheduler, not the failed registry.
    retrying = bool(job.retries_left)
    logger.warning("Job %s failed%s: %s", job.id, " (will retry)" if retrying else "", value)
    queue = Queue(job.origin, connection=connection)
    _trim_registry(FailedJobRegistry(queue=queue), job, _keep(job, "keep_failed"), joining=not retrying)


_RQ_STATES: dict[str, JobState] = {
    "queued": "waiting",
    "deferred": "waiting",
    "scheduled": "waiting",
    "started": "active",
    "finished": "completed",
    "failed": "failed",
    "stopped": "failed",
    "canceled": "failed",
}


class DistributedBackend(QueueBackend):
    """Redis-backed queue shared by any number of rq worker processes.

    Delivery is at-least-once: a job whose worker dies may run again.
    """

    kind = "distributed"

    def __init__(self, connection: redis.Redis, settings: Settings | None = None, *, is_async: bool = True):
        self.settings = settings or get_settings()
        self.default_max_age_s = self.settings.distributed_max_age_s
        self.connection = connection
        self.queues = {
            priority: Queue(
                self.queue_name(self.settings, priority),
                connection=connection,
                default_timeout=self.settings.job_timeout_s,
                is_async=is_async,
            )
            for priority in sorted(PRIORITY_WEIGHTS, key=PRIORITY_WEIGHTS.get)
        }

    @staticmethod
    def queue_name(settings: Settings, priority: str) -> str:
        return f"{settings.queue_name}-{priority}"

    @classmethod
    def connect(cls, settings: Settings | None = None) -> "DistributedBackend":
        settings = settings or get_settings()
        connection = redis.Redis.from_url(settings.redis_url, socket_connect_timeout=2, socket_timeout=5)
        try:
            connection.ping()
        except (redis.exceptions.RedisError, OSError) as e:
            raise QueueBackendUnavailable(f"Redis at {settings.redis_url} is unreachable: {e}") from e
        return cls(connection, settings)

    def _retry(self) -> Retry | None:
        retries = self.settings.job_retries
        if retries <= 0:
            return None
        return Retry(max=retries, interval=[self.settings.backoff_s * 2 ** i for i in range(retries)])

    def submit(self, job: AnalysisJob) -> str:
        queue = self.queues[job.priority]
        options: dict[str, Any] = {
            "retry": self._retry(),
            "job_timeout": self.settings.job_timeout_s,
            "result_ttl": self.settings.distributed_max_age_s,
            "failure_ttl": self.settings.distributed_max_age_s,
            "on_success": Callback(trim_finished),
            "on_failure": Callback(trim_failed),
            "meta": {
                "progress": 0,
                "priority_weight": PRIORITY_WEIGHTS[job.priority],
                "keep_completed": self.settings.keep_completed,
                "keep_failed": self.settings.keep_failed,
            },
        }
        payload = job.model_dump(mode="json")
        if job.priority == "low" and self.settings.low_priority_delay_s > 0:
            delay = timedelta(seconds=self.settings.low_priority_delay_s)
            rq_job = queue.enqueue_in(delay, run_analysis_task, payload, **options)
        else:
            rq_job = queue.enqueue(run_analysis_task, payload, **options)
        logger.info("Added analysis job %s for URL: %s", rq_job.id, job.url)
        return rq_job.id

    def _state(self, rq_job: Job) -> JobState:
        status = rq_job.get_status(refresh=False)
        state = _RQ_STATES.get(getattr(status, "value", status) or "queued", "waiting")
        # A job waiting for a retry has already been active; never report it as waiting again.
        if state == "waiting" and rq_job.started_at is not None:
            return "active"
        return state

    def _attempts(self, rq_job: Job) -> int:
        retries_left = rq_job.retries_left
        used = self.settings.job_retries - retries_left if retries_left is not None else 0
        return max(0, used) + (1 if rq_job.started_at is not None else 0)

    def _failure_reason(self, rq_job: Job) -> str | None:
        latest = rq_job.latest_result()
        if latest is None or latest.type != Result.Type.FAILED:
            return None
        lines = (latest.exc_string or "").strip().splitlines()
        return lines[-1] if lines else "Job failed"

    def _to_record(self, rq_job: Job) -> JobRecord:
        state = self._state(rq_job)
        result = None
        failure_reason = None
        progress = int(rq_job.meta.get("progress", 0) or 0)
        if state == "completed":
            value = rq_job.return_value()
            if isinstance(value, dict):
                result = AnalysisResult.model_validate(value)
            progress = 100
        elif state == "failed":
            failure_reason = self._failure_reason(rq_job)
        return JobRecord(
            id=rq_job.id,
            status=state,
            progress=max(0, min(100, progress)),
            result=result,
            created_at=_utc(rq_job.created_at) or _now(),
            processed_at=_utc(rq_job.ended_at or rq_job.started_at),
            failure_reason=failure_reason,
            attempts=self._attempts(rq_job),
        )

    def read(self, job_id: str) -> JobRecord | None:
        try:
            rq_job = Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return None
        return self._to_record(rq_job)

    def _ids_for(self, state: JobState | None) -> list[str]:
        ids: list[str] = []
        for queue in self.queues.values():
            if state in (None, "waiting", "active"):
                ids += queue.get_job_ids()
                ids += ScheduledJobRegistry(queue=queue).get_job_ids()
            if state in (None, "active"):
                ids += StartedJobRegistry(queue=queue).get_job_ids()
            if state in (None, "completed"):
                ids += FinishedJobRegistry(queue=queue).get_job_ids()
            if state in (None, "failed"):
                ids += FailedJobRegistry(queue=queue).get_job_ids()
        return list(dict.fromkeys(ids))

    def list(self, state: JobState | None = None) -> list[JobRecord]:
        jobs = Job.fetch_many(self._ids_for(state), connection=self.connection)
        records = [self._to_record(j) for j in jobs if j is not None]
        return [r for r in records if state is None or r.status == state]

    def counts(self) -> dict[str, int]:
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0}
        for queue in self.queues.values():
            counts["waiting"] += queue.count
            # Scheduled holds both delayed first runs and jobs waiting for a retry.
            scheduled = Job.fetch_many(ScheduledJobRegistry(queue=queue).get_job_ids(), connection=self.connection)
            for rq_job in scheduled:
                if rq_job is not None:
                    counts[self._state(rq_job)] += 1
            counts["active"] += StartedJobRegistry(queue=queue).count
            counts["completed"] += FinishedJobRegistry(queue=queue).count
            counts["failed"] += FailedJobRegistry(queue=queue).count
        return counts

    def remove(self, job_id: str) -> bool:
        try:
            rq_job = Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return False
        rq_job.delete(remove_from_queue=True)
        return True

    def worker_status(self) -> WorkerStatus:
        workers = Worker.all(connection=self.connection)
        return WorkerStatus(
            backend="distributed",
            is_running=bool(workers),
            concurrency=len(workers),
            name=self.settings.queue_name,
        )

    def close(self) -> None:
        self.connection.close()


def create_backend(settings: Settings | None = None, runner: Runner = run_job) -> QueueBackend:
    """Pick the backend for this process. Called once; never re-evaluated."""
    settings = settings or get_settings()
    if settings.use_redis:
        try:
            backend = DistributedBackend.connect(settings)
        except QueueBackendUnavailable as e:
            logger.warning("Redis connection failed, using local backend: %s", e)
        else:
            logger.info("Redis connection established (%s)", settings.redis_url)
            return backend
    return LocalBackend(settings, runner=runner)
