import asyncio

import pytest

from authority_agent.backends import LocalBackend
from authority_agent.job_queue import JobQueue

from conftest import make_result


@pytest.fixture
def queue(settings, stub_runner):
    q = JobQueue(LocalBackend(settings, runner=stub_runner))
    yield q
    q.close()


def finish(queue, job_id):
    return asyncio.run(queue.wait(job_id, poll_interval_s=0.01, timeout_s=5))


def test_enqueue_accepts_plain_dicts(queue):
    job_id = queue.enqueue({"url": "example.com", "priority": "high", "user_id": "u-1"})
    record = finish(queue, job_id)
    assert record.status == "completed"
    assert record.result.url == "https://example.com"


@pytest.mark.parametrize("url", ["", "ftp://example.com", "localhost", "https://"])
def test_enqueue_rejects_invalid_urls(queue, url):
    with pytest.raises(ValueError):
        queue.enqueue({"url": url})
    assert queue.stats().total == 0


def test_unknown_job_is_not_found(queue):
    assert queue.status("job_404") is None
    response = queue.job_status("job_404")
    assert response.status == "not_found"
    assert response.result is None


def test_failed_job_surfaces_its_reason(queue):
    job_id = queue.enqueue({"url": "boom.example"})
    finish(queue, job_id)

    response = queue.job_status(job_id)
    assert response.status == "failed"
    assert response.error == "worker crashed on https://boom.example"


def test_degraded_analysis_is_completed_at_queue_level(settings):
    def runner(job, progress):
        return make_result(job.url, status="failed", error="Crawl failed for https://down.example: HTTP 502")

    queue = JobQueue(LocalBackend(settings, runner=runner))
    try:
        job_id = queue.enqueue({"url": "down.example"})
        finish(queue, job_id)
        response = queue.job_status(job_id)
    finally:
        queue.close()

    assert response.status == "completed"
    assert response.result.status == "failed"
    assert response.result.authority_score is not None
    assert "HTTP 502" in response.error


def test_stats_count_every_state(queue):
    ok = queue.enqueue({"url": "ok.example"})
    bad = queue.enqueue({"url": "boom.example"})
    finish(queue, ok)
    finish(queue, bad)

    stats = queue.stats()
    assert (stats.waiting, stats.active, stats.completed, stats.failed) == (0, 0, 1, 1)
    assert stats.total == 2
    assert stats.backend == "local"


def test_cleanup_uses_backend_default_age(queue):
    finish(queue, queue.enqueue({"url": "ok.example"}))
    assert queue.cleanup() == 0
    assert queue.cleanup(0) == 1
    assert queue.stats().total == 0


def test_worker_status(queue):
    status = queue.worker_status()
    assert status.backend == "local"
    assert status.concurrency == 1
    assert status.is_running is True


def test_create_with_redis_disabled_uses_local_backend(settings):
    queue = JobQueue.create(settings)
    try:
        assert queue.backend_kind == "local"
        assert isinstance(queue.backend, LocalBackend)
    finally:
        queue.close()
