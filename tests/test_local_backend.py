import threading
import time
from dataclasses import replace

from authority_agent.backends import LocalBackend
from authority_agent.models import AnalysisJob

from conftest import make_result


def wait_for(backend, job_id, states=("completed", "failed"), timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        record = backend.read(job_id)
        if record is not None and record.status in states:
            return record
        time.sleep(0.01)
    raise AssertionError(f"{job_id} never reached {states}: {backend.read(job_id)}")


def test_ids_come_from_an_incrementing_counter(settings, stub_runner):
    backend = LocalBackend(settings, runner=stub_runner)
    try:
        ids = [backend.submit(AnalysisJob(url=f"site{i}.example")) for i in range(3)]
    finally:
        backend.close()
    assert ids == ["job_1", "job_2", "job_3"]


def test_status_moves_forward_only(settings):
    release = threading.Event()
    reported = threading.Event()

    def runner(job, progress):
        progress(40)
        reported.set()
        release.wait(5)
        return make_result(job.url)

    backend = LocalBackend(replace(settings, local_delay_s=0.2), runner=runner)
    try:
        job_id = backend.submit(AnalysisJob(url="example.com"))
        seen = [backend.read(job_id).status]

        assert reported.wait(5)
        active = backend.read(job_id)
        seen.append(active.status)
        assert active.progress == 40
        assert active.attempts == 1

        release.set()
        done = wait_for(backend, job_id)
        seen.append(done.status)
    finally:
        release.set()
        backend.close()

    assert seen == ["waiting", "active", "completed"]
    assert done.progress == 100
    assert done.result.url == "https://example.com"
    assert done.processed_at >= done.created_at


def test_submit_returns_before_the_job_runs(settings):
    def slow_runner(job, progress):
        time.sleep(1.0)
        return make_result(job.url)

    backend = LocalBackend(settings, runner=slow_runner)
    try:
        started = time.monotonic()
        job_id = backend.submit(AnalysisJob(url="unreachable.invalid"))
        elapsed = time.monotonic() - started
        assert backend.read(job_id).status in ("waiting", "active")
    finally:
        backend.close()
    assert elapsed < 0.5


def test_runner_failure_is_terminal_and_verbatim(settings, stub_runner):
    backend = LocalBackend(settings, runner=stub_runner)
    try:
        job = AnalysisJob(url="boom.example")
        record = wait_for(backend, backend.submit(job))
    finally:
        backend.close()

    assert record.status == "failed"
    assert record.failure_reason == f"worker crashed on {job.url}"
    assert record.result is None
    assert record.attempts == 1


def test_jobs_never_run_in_parallel(settings):
    lock = threading.Lock()
    running = []
    peak = []

    def runner(job, progress):
        with lock:
            running.append(job.url)
            peak.append(len(running))
        time.sleep(0.05)
        with lock:
            running.remove(job.url)
        return make_result(job.url)

    backend = LocalBackend(settings, runner=runner)
    try:
        ids = [backend.submit(AnalysisJob(url=f"site{i}.example")) for i in range(4)]
        for job_id in ids:
            wait_for(backend, job_id)
    finally:
        backend.close()
    assert max(peak) == 1


def test_low_priority_runs_after_normal(settings, stub_runner):
    backend = LocalBackend(settings, runner=stub_runner)
    try:
        low = backend.submit(AnalysisJob(url="later.example", priority="low"))
        normal = backend.submit(AnalysisJob(url="sooner.example"))
        low_record = wait_for(backend, low)
        normal_record = wait_for(backend, normal)
    finally:
        backend.close()
    assert normal_record.processed_at < low_record.processed_at


def test_ready_jobs_run_by_priority_weight(settings):
    started = threading.Event()
    release = threading.Event()
    order = []

    def runner(job, progress):
        order.append(job.url)
        if job.url == "https://busy.example":
            started.set()
            release.wait(5)
        return make_result(job.url)

    backend = LocalBackend(settings, runner=runner)
    try:
        busy = backend.submit(AnalysisJob(url="busy.example"))
        assert started.wait(5)
        normal = backend.submit(AnalysisJob(url="normal.example"))
        high = backend.submit(AnalysisJob(url="high.example", priority="high"))
        deadline = time.monotonic() + 5
        while len(backend._ready) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        release.set()
        for job_id in (busy, normal, high):
            wait_for(backend, job_id)
    finally:
        release.set()
        backend.close()
    assert order == ["https://busy.example", "https://high.example", "https://normal.example"]


def test_removed_job_is_never_executed(settings):
    calls = []

    def runner(job, progress):
        calls.append(job.url)
        return make_result(job.url)

    backend = LocalBackend(replace(settings, local_delay_s=0.1), runner=runner)
    try:
        job_id = backend.submit(AnalysisJob(url="example.com"))
        assert backend.remove(job_id) is True
        time.sleep(0.3)
    finally:
        backend.close()
    assert calls == []
    assert backend.read(job_id) is None
    assert backend.remove(job_id) is False


def test_cleanup_only_removes_old_terminal_records(settings, stub_runner):
    release = threading.Event()

    def runner(job, progress):
        if "hold" in job.url:
            release.wait(5)
        return stub_runner(job, progress)

    backend = LocalBackend(settings, runner=runner)
    try:
        done = backend.submit(AnalysisJob(url="done.example"))
        failed = backend.submit(AnalysisJob(url="boom.example"))
        wait_for(backend, done)
        wait_for(backend, failed)
        held = backend.submit(AnalysisJob(url="hold.example"))
        wait_for(backend, held, states=("active",))

        assert backend.cleanup() == 0
        assert backend.cleanup(max_age_s=0) == 2
        assert backend.read(held).status == "active"
        assert [r.id for r in backend.list()] == [held]
    finally:
        release.set()
        backend.close()


def test_default_cleanup_age_is_one_hour(settings, stub_runner):
    backend = LocalBackend(settings, runner=stub_runner)
    backend.close()
    assert backend.default_max_age_s == 3600


def test_list_filters_by_state(settings, stub_runner):
    backend = LocalBackend(settings, runner=stub_runner)
    try:
        ok = backend.submit(AnalysisJob(url="ok.example"))
        bad = backend.submit(AnalysisJob(url="boom.example"))
        wait_for(backend, ok)
        wait_for(backend, bad)
        assert [r.id for r in backend.list("completed")] == [ok]
        assert [r.id for r in backend.list("failed")] == [bad]
        assert backend.list("waiting") == []
        assert backend.counts() == {"waiting": 0, "active": 0, "completed": 1, "failed": 1}
    finally:
        backend.close()
