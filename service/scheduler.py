"""
Bounded-concurrency job scheduler.

Jobs are admitted from the pending set up to ``max_concurrent_jobs`` at a
time; each admitted job runs through the executor as an asyncio task whose
real work happens in subprocesses. Every mutation is written through to the
job store when persistence is enabled.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import sqlite3
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from execution_core.errors import ExecutionCoreError, ExecutionError, JobNotFoundError, classify_error
from execution_core.schemas import (
    PRIORITY_RANK,
    ExecutionOutcome,
    ExecutionRequest,
    Job,
    JobError,
    JobOptions,
    JobPage,
    JobStats,
    JobStatus,
    SchedulerSettings,
    utc_now,
)
from sandbox.executor import SecureExecutor, parse_request
from store.repository import JobStore

logger = logging.getLogger(__name__)

PROGRESS_PATTERN = re.compile(r"Progress:\s*(\d+)%", re.IGNORECASE)


@dataclass
class Worker:
    """Live handle for a RUNNING job."""

    job_id: str
    task: asyncio.Task | None = None
    process: asyncio.subprocess.Process | None = None

    def terminate(self) -> None:
        if self.process is not None and self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass


class JobScheduler:
    def __init__(
        self,
        executor: SecureExecutor | None = None,
        settings: SchedulerSettings | None = None,
        store: JobStore | None = None,
    ) -> None:
        self.executor = executor or SecureExecutor()
        self.settings = settings or SchedulerSettings()
        if store is None and self.settings.enable_persistence:
            store = JobStore(self.settings.persistence_path)
        self.store = store
        self._jobs: dict[str, Job] = {}
        self._workers: dict[str, Worker] = {}
        self._header_env: dict[str, dict[str, str]] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._sweep_task: asyncio.Task | None = None
        self._loaded = False

    # -- lifecycle --------------------------------------------------------

    def load(self) -> int:
        """Restore persisted jobs. Jobs caught RUNNING are demoted to PENDING."""
        self._loaded = True
        if self.store is None:
            return 0
        loaded = 0
        for job in self.store.load_all():
            if job.status == JobStatus.RUNNING:
                job.status = JobStatus.PENDING
                job.started_at = None
                job.updated_at = utc_now()
                self._persist(job)
                logger.info("Job %s was running at shutdown; re-queued", job.id)
            self._jobs[job.id] = job
            loaded += 1
        logger.info("Loaded %d persisted job(s)", loaded)
        return loaded

    async def start(self) -> None:
        """Load persisted jobs, start the expiry sweep and admit pending work."""
        if not self._loaded:
            self.load()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="job-expiry-sweep")
        self._admit()

    async def shutdown(self) -> None:
        """Stop the sweep and abandon running jobs; they stay RUNNING on disk."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        workers = list(self._workers.values())
        for worker in workers:
            worker.terminate()
            if worker.task is not None:
                worker.task.cancel()
        await asyncio.gather(
            *(worker.task for worker in workers if worker.task is not None),
            return_exceptions=True,
        )
        self._workers.clear()

    # -- public operations ------------------------------------------------

    def submit(
        self,
        request: ExecutionRequest | Mapping[str, Any],
        options: JobOptions | None = None,
        header_env: Mapping[str, str] | None = None,
    ) -> str:
        """Validate and enqueue a request; returns the new job id.

        Raises:
            ValidationError, DependencyCycleError, SecurityViolation: The
                request is rejected and no job is created.
        """
        request = parse_request(request)
        self.executor.validate(request)
        if options is None:
            options = JobOptions(
                priority=request.priority,
                timeout=request.timeout,
                max_retries=request.max_retries,
            )
        job = Job(id=secrets.token_hex(16), request=request, options=options)
        self._jobs[job.id] = job
        if header_env:
            self._header_env[job.id] = dict(header_env)
        self._persist(job)
        logger.info("Job %s submitted", job.id)
        self._admit()
        return job.id

    @staticmethod
    def submission_receipt(job_id: str) -> dict[str, str]:
        return {"jobId": job_id, "status": JobStatus.PENDING.value}

    def get(self, job_id: str) -> Job:
        """A snapshot of the job; mutating it does not affect the scheduler."""
        return self._require(job_id).model_copy(deep=True)

    def list(
        self,
        status: JobStatus | str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> JobPage:
        # Newest first; equal timestamps fall back to reverse submission order.
        jobs = list(reversed(self._jobs.values()))
        if status is not None:
            wanted = JobStatus(status)
            jobs = [job for job in jobs if job.status == wanted]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        page = jobs[offset : offset + limit]
        return JobPage(
            jobs=[job.model_copy(deep=True) for job in page],
            total=len(jobs),
            has_more=offset + limit < len(jobs),
        )

    def cancel(self, job_id: str) -> Job:
        """Cancel a pending or running job. Terminal jobs are left unchanged."""
        job = self._require(job_id)
        if job.is_terminal:
            return job.model_copy(deep=True)
        worker = self._workers.pop(job_id, None)
        if worker is not None:
            worker.terminate()
            if worker.task is not None:
                worker.task.cancel()
        self._set_status(job, JobStatus.CANCELLED)
        logger.info("Job %s cancelled", job_id)
        self._admit()
        return job.model_copy(deep=True)

    def delete(self, job_id: str) -> bool:
        job = self._require(job_id)
        if job.status == JobStatus.RUNNING:
            self.cancel(job_id)
        self._forget(job_id)
        logger.info("Job %s deleted", job_id)
        return True

    def stats(self) -> JobStats:
        counts = {status: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status] += 1
        return JobStats(
            total=len(self._jobs),
            pending=counts[JobStatus.PENDING],
            running=counts[JobStatus.RUNNING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            cancelled=counts[JobStatus.CANCELLED],
            active_workers=len(self._workers),
            max_concurrent_jobs=self.settings.max_concurrent_jobs,
        )

    async def wait(self, job_id: str, timeout: float | None = None) -> Job:
        """Wait until the job reaches a terminal status."""
        job = self._require(job_id)
        if not job.is_terminal:
            event = self._done.setdefault(job_id, asyncio.Event())
            await asyncio.wait_for(event.wait(), timeout=timeout)
        return self.get(job_id)

    async def join(self) -> None:
        """Wait until no job is running and nothing more can be admitted."""
        self._admit()
        while True:
            tasks = [worker.task for worker in self._workers.values() if worker.task is not None]
            if not tasks:
                return
            await asyncio.wait(tasks)

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Remove terminal jobs older than the TTL."""
        cutoff = (now or utc_now()) - timedelta(seconds=self.settings.job_ttl_s)
        expired = [job.id for job in self._jobs.values() if job.is_terminal and job.created_at < cutoff]
        for job_id in expired:
            self._forget(job_id)
        if expired:
            logger.info("Expired %d job(s)", len(expired))
        return len(expired)

    # -- internals --------------------------------------------------------

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _forget(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._header_env.pop(job_id, None)
        event = self._done.pop(job_id, None)
        if event is not None:
            event.set()
        if self.store is not None:
            try:
                self.store.delete(job_id)
            except sqlite3.Error as exc:
                logger.error("Failed to delete job %s from store: %s", job_id, exc)

    def _persist(self, job: Job) -> None:
        if self.store is None:
            return
        try:
            self.store.save(job)
        except sqlite3.Error as exc:
            logger.error("Failed to persist job %s: %s", job.id, exc)

    def _set_status(self, job: Job, status: JobStatus, **fields: Any) -> None:
        now = utc_now()
        job.status = status
        job.updated_at = now
        if status == JobStatus.RUNNING:
            job.started_at = now
        elif job.is_terminal:
            job.completed_at = now
            if status == JobStatus.COMPLETED:
                job.progress = 100
        for name, value in fields.items():
            setattr(job, name, value)
        self._persist(job)
        if job.is_terminal:
            # Header-derived credentials are never needed again.
            self._header_env.pop(job.id, None)
            event = self._done.get(job.id)
            if event is not None:
                event.set()

    def _next_pending(self) -> Job | None:
        pending = [job for job in self._jobs.values() if job.status == JobStatus.PENDING]
        if not pending:
            return None
        if self.settings.honor_priority:
            return min(pending, key=lambda job: (PRIORITY_RANK[job.options.priority], job.created_at))
        return min(pending, key=lambda job: job.created_at)

    def _admit(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Admission happens once an event loop drives the scheduler.
            return
        while len(self._workers) < self.settings.max_concurrent_jobs:
            job = self._next_pending()
            if job is None:
                return
            worker = Worker(job_id=job.id)
            self._workers[job.id] = worker
            self._set_status(job, JobStatus.RUNNING)
            logger.info("Job %s started", job.id)
            worker.task = loop.create_task(self._run_job(job, worker), name=f"job-{job.id}")

    async def _run_job(self, job: Job, worker: Worker) -> None:
        def _on_spawn(process: asyncio.subprocess.Process) -> None:
            worker.process = process

        try:
            outcome = await self.executor.execute(
                job.request,
                self._header_env.get(job.id),
                timeout=job.options.timeout,
                on_spawn=_on_spawn,
                on_stdout_line=lambda line: self._on_output(job, line),
            )
        except asyncio.CancelledError:
            logger.debug("Job %s task cancelled", job.id)
            raise
        except ExecutionCoreError as exc:
            self._finish_failed(
                job,
                JobError(
                    message=exc.message,
                    type=exc.kind.value,
                    code=exc.exit_code if isinstance(exc, ExecutionError) else None,
                    stdout=exc.stdout or None,
                    stderr=exc.stderr or None,
                ),
            )
        except Exception as exc:  # noqa: BLE001 - one job's failure must not stop the scheduler
            logger.exception("Job %s crashed", job.id)
            message = self.executor.sanitizer.scrub_text(str(exc)) or exc.__class__.__name__
            self._finish_failed(job, JobError(message=message, type=classify_error(message).value))
        else:
            self._finish(job, outcome)
        finally:
            if self._workers.get(job.id) is worker:
                del self._workers[job.id]
            self._admit()

    def _finish(self, job: Job, outcome: ExecutionOutcome) -> None:
        if job.status != JobStatus.RUNNING:
            return
        if outcome.success:
            self._set_status(job, JobStatus.COMPLETED, result=outcome.model_dump(mode="json"))
            logger.info("Job %s completed", job.id)
            return
        first_error = outcome.errors[0] if outcome.errors else {}
        self._finish_failed(
            job,
            JobError(
                message=str(first_error.get("message") or "Execution failed"),
                type=outcome.failure_type or "execution_error",
                code=outcome.exit_code,
                stdout=outcome.stdout or None,
                stderr=outcome.stderr or None,
                execution_mode=outcome.execution_mode,
            ),
            result=outcome.model_dump(mode="json"),
        )

    def _finish_failed(self, job: Job, error: JobError, result: dict[str, Any] | None = None) -> None:
        # A cancelled job stays cancelled even if its task reports later.
        if job.status != JobStatus.RUNNING:
            return
        self._set_status(job, JobStatus.FAILED, error=error, result=result)
        logger.warning("Job %s failed: %s", job.id, error.type)

    def _on_output(self, job: Job, line: str) -> None:
        match = PROGRESS_PATTERN.search(line)
        if match is None or job.status != JobStatus.RUNNING:
            return
        job.progress = max(0, min(100, int(match.group(1))))
        job.progress_message = line.strip()
        job.updated_at = utc_now()
        self._persist(job)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sweep_interval_s)
            self.sweep_expired()
