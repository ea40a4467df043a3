import asyncio
from datetime import timedelta

import pytest

from execution_core.errors import JobNotFoundError, SecurityViolation, ValidationError
from execution_core.schemas import (
    ExecutionRequest,
    ExecutorSettings,
    Job,
    JobOptions,
    JobStatus,
    SchedulerSettings,
    utc_now,
)
from sandbox.executor import SecureExecutor
from service.scheduler import JobScheduler
from store import JobStore


def _scheduler(max_jobs: int = 1, store: JobStore | None = None, **settings) -> JobScheduler:
    executor = SecureExecutor(settings=ExecutorSettings(legacy_execution_enabled=True))
    scheduler_settings = SchedulerSettings(
        max_concurrent_jobs=max_jobs,
        enable_persistence=store is not None,
        **settings,
    )
    return JobScheduler(executor=executor, settings=scheduler_settings, store=store)


async def _drain(scheduler: JobScheduler) -> None:
    await scheduler.start()
    try:
        await scheduler.join()
    finally:
        await scheduler.shutdown()


async def _until(predicate, timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.05)


def test_submit_creates_pending_job():
    scheduler = _scheduler()
    job_id = scheduler.submit({"code": "print(1)"})
    assert scheduler.submission_receipt(job_id) == {"jobId": job_id, "status": "PENDING"}
    job = scheduler.get(job_id)
    assert job.status == JobStatus.PENDING
    assert job.progress == 0
    assert scheduler.stats().pending == 1


def test_get_returns_a_snapshot():
    scheduler = _scheduler()
    job_id = scheduler.submit({"code": "print(1)"})
    snapshot = scheduler.get(job_id)
    snapshot.status = JobStatus.FAILED
    assert scheduler.get(job_id).status == JobStatus.PENDING
    assert scheduler.get(job_id) == scheduler.get(job_id)


def test_rejected_requests_create_no_job():
    scheduler = _scheduler()
    variables = {f"v{index}": {"url": "https://api.example.com"} for index in range(11)}
    with pytest.raises(ValidationError):
        scheduler.submit({"secure_data_variables": variables, "Global_code": "return 1"})
    with pytest.raises(SecurityViolation):
        scheduler.submit({"secure_data_variables": {}, "Global_code": "return KEYBOARD_X"})
    with pytest.raises(ValidationError):
        scheduler.submit({"nothing": True})
    assert scheduler.stats().total == 0


def test_jobs_run_in_submission_order():
    scheduler = _scheduler(max_jobs=1)
    ids = [scheduler.submit({"code": f"print({index})"}) for index in range(3)]
    asyncio.run(_drain(scheduler))

    jobs = [scheduler.get(job_id) for job_id in ids]
    assert [job.status for job in jobs] == [JobStatus.COMPLETED] * 3
    assert jobs[0].completed_at <= jobs[1].started_at
    assert jobs[1].completed_at <= jobs[2].started_at
    assert jobs[2].result["stdout"] == "2\n"
    assert jobs[2].progress == 100


def test_concurrency_is_bounded():
    scheduler = _scheduler(max_jobs=2)
    for _ in range(4):
        scheduler.submit({"code": "import time\ntime.sleep(0.5)"})
    peaks: list[int] = []

    async def scenario():
        await scheduler.start()
        while scheduler.stats().completed < 4:
            stats = scheduler.stats()
            peaks.append(stats.running)
            assert stats.active_workers <= 2
            await asyncio.sleep(0.05)
        await scheduler.shutdown()

    asyncio.run(scenario())
    assert max(peaks) == 2


def test_second_two_phase_job_waits_for_the_first(upstream):
    settings = SchedulerSettings(max_concurrent_jobs=1, enable_persistence=False)
    scheduler = JobScheduler(executor=SecureExecutor(), settings=settings)
    request = {
        "secure_data_variables": {"user": {"url": f"{upstream}/user", "method": "GET"}},
        "Global_code": "import time\ntime.sleep(0.3)\nreturn user()['id']",
    }
    first = scheduler.submit(request)
    second = scheduler.submit(request)
    asyncio.run(_drain(scheduler))

    jobs = [scheduler.get(first), scheduler.get(second)]
    assert [job.status for job in jobs] == [JobStatus.COMPLETED] * 2
    assert jobs[0].completed_at <= jobs[1].started_at
    assert [job.result["execution_mode"] for job in jobs] == ["secure-two-phase"] * 2
    assert [job.result["return_value"] for job in jobs] == [42, 42]


def test_priority_is_honored_when_enabled():
    scheduler = _scheduler(max_jobs=1, honor_priority=True)
    low = scheduler.submit({"code": "print('low')"}, JobOptions(priority="low"))
    high = scheduler.submit({"code": "print('high')", "priority": "high"})
    asyncio.run(_drain(scheduler))
    assert scheduler.get(high).completed_at <= scheduler.get(low).started_at


def test_priority_is_ignored_by_default():
    scheduler = _scheduler(max_jobs=1)
    low = scheduler.submit({"code": "print('low')"}, JobOptions(priority="low"))
    high = scheduler.submit({"code": "print('high')"}, JobOptions(priority="high"))
    asyncio.run(_drain(scheduler))
    assert scheduler.get(low).completed_at <= scheduler.get(high).started_at


def test_progress_is_tracked_while_running():
    scheduler = _scheduler()
    code = (
        "import time\n"
        "print('Progress: 40%', flush=True)\n"
        "time.sleep(1)\n"
        "print('Progress: 250%', flush=True)\n"
        "time.sleep(1)"
    )
    job_id = scheduler.submit({"code": code})
    seen: list[int] = []

    async def scenario():
        await scheduler.start()
        await _until(lambda: scheduler.get(job_id).progress == 40)
        seen.append(scheduler.get(job_id).progress)
        await _until(lambda: scheduler.get(job_id).progress == 100)
        seen.append(scheduler.get(job_id).progress)
        await scheduler.wait(job_id, timeout=10)
        await scheduler.shutdown()

    asyncio.run(scenario())
    job = scheduler.get(job_id)
    assert seen == [40, 100]
    assert job.status == JobStatus.COMPLETED
    assert job.progress_message == "Progress: 250%"


def test_cancel_running_job_stays_cancelled():
    scheduler = _scheduler(max_jobs=1)
    running = scheduler.submit({"code": "import time\ntime.sleep(30)"})
    queued = scheduler.submit({"code": "print('next')"})

    async def scenario():
        await scheduler.start()
        await _until(lambda: scheduler._workers[running].process is not None)
        cancelled = scheduler.cancel(running)
        assert cancelled.status == JobStatus.CANCELLED
        await scheduler.wait(queued, timeout=10)
        await asyncio.sleep(0.2)
        await scheduler.shutdown()

    asyncio.run(scenario())
    job = scheduler.get(running)
    assert job.status == JobStatus.CANCELLED
    assert job.completed_at is not None
    assert job.error is None
    assert scheduler.get(queued).status == JobStatus.COMPLETED


def test_cancel_pending_and_terminal_jobs():
    scheduler = _scheduler()
    job_id = scheduler.submit({"code": "print(1)"})
    assert scheduler.cancel(job_id).status == JobStatus.CANCELLED
    updated_at = scheduler.get(job_id).updated_at
    assert scheduler.cancel(job_id).updated_at == updated_at

    asyncio.run(_drain(scheduler))
    assert scheduler.get(job_id).status == JobStatus.CANCELLED


def test_nonzero_exit_fails_job():
    scheduler = _scheduler()
    job_id = scheduler.submit({"code": "import sys\nprint('partial')\nsys.exit(4)"})
    asyncio.run(_drain(scheduler))
    job = scheduler.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.type == "execution_error"
    assert job.error.code == 4
    assert job.error.stdout == "partial\n"


def test_timeout_option_fails_job():
    scheduler = _scheduler()
    job_id = scheduler.submit({"code": "import time\ntime.sleep(30)"}, JobOptions(timeout=1))
    asyncio.run(_drain(scheduler))
    job = scheduler.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.type == "timeout_error"


def test_global_code_error_fails_job_with_result():
    scheduler = _scheduler()
    job_id = scheduler.submit({"secure_data_variables": {}, "Global_code": "raise KeyError('missing')"})
    asyncio.run(_drain(scheduler))
    job = scheduler.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.type == "execution_error"
    assert job.error.execution_mode == "secure-two-phase"
    assert job.result["errors"][0]["type"] == "KeyError"


def test_list_is_newest_first_and_paged():
    scheduler = _scheduler()
    ids = [scheduler.submit({"code": f"print({index})"}) for index in range(3)]
    page = scheduler.list(limit=2)
    assert page.total == 3
    assert page.has_more is True
    assert [job.id for job in page.jobs] == [ids[2], ids[1]]
    response = scheduler.list(status="PENDING", limit=2, offset=2).to_response()
    assert response["hasMore"] is False
    assert [job["id"] for job in response["jobs"]] == [ids[0]]


def test_unknown_job_raises():
    scheduler = _scheduler()
    with pytest.raises(JobNotFoundError):
        scheduler.get("missing")
    with pytest.raises(JobNotFoundError):
        scheduler.delete("missing")


def test_sweep_removes_old_terminal_jobs(tmp_path):
    store = JobStore(tmp_path / "jobs.db")
    scheduler = _scheduler(store=store, job_ttl_s=60)
    finished = scheduler.submit({"code": "print(1)"})
    pending = scheduler.submit({"code": "print(2)"})
    scheduler.cancel(finished)

    assert scheduler.sweep_expired() == 0
    assert scheduler.sweep_expired(now=utc_now() + timedelta(seconds=120)) == 1
    assert [job.id for job in scheduler.list().jobs] == [pending]
    assert store.get(finished) is None


def test_running_jobs_are_requeued_on_load(tmp_path):
    store = JobStore(tmp_path / "jobs.db")
    job = Job(id="abc123", request=ExecutionRequest(code="print('again')"), status=JobStatus.RUNNING)
    job.started_at = utc_now()
    store.save(job)

    scheduler = _scheduler(store=store)
    assert scheduler.load() == 1
    restored = scheduler.get("abc123")
    assert restored.status == JobStatus.PENDING
    assert restored.started_at is None
    assert store.get("abc123").status == JobStatus.PENDING

    asyncio.run(_drain(scheduler))
    assert store.get("abc123").status == JobStatus.COMPLETED


def test_header_credentials_are_not_persisted(tmp_path):
    store = JobStore(tmp_path / "jobs.db")
    scheduler = _scheduler(store=store)
    job_id = scheduler.submit(
        {"code": "print(1)"}, header_env={"KEYBOARD_PROVIDER_USER_TOKEN_FOR_X": "hdr-secret-value"}
    )
    assert "hdr-secret-value" not in store.get(job_id).to_json()
    asyncio.run(_drain(scheduler))
    assert job_id not in scheduler._header_env


def test_delete_removes_job_and_record(tmp_path):
    store = JobStore(tmp_path / "jobs.db")
    scheduler = _scheduler(store=store)
    job_id = scheduler.submit({"code": "print(1)"})
    assert scheduler.delete(job_id) is True
    assert store.get(job_id) is None
    with pytest.raises(JobNotFoundError):
        scheduler.get(job_id)
