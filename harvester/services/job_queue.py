from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from uuid import uuid4

from opentelemetry import trace

from harvester.core.config import Settings
from harvester.providers.browser_scrape import ScraperExecutionError
from harvester.providers.structured_search import QuotaExhaustedError, StructuredSearchError
from harvester.schemas.jobs import JobStatus
from harvester.services.dispatcher import Dispatcher
from harvester.services.merge import OutputParseError
from harvester.services.records import JobRecord, JobSpec, utcnow
from harvester.services.repository import Repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CRASH_RECOVERY_MESSAGE = "Job failed due to server restart/crash"
EXPECTED_JOB_ERRORS = (QuotaExhaustedError, ScraperExecutionError, StructuredSearchError, OutputParseError)


class WorkQueue:
    """Durable job queue with a global concurrency ceiling.

    Jobs are admitted only by ``admission_pass``, which a single coordinator
    task runs whenever it is signalled (after every enqueue and every job
    completion). Admission marks a job running in the store before its task
    is created, so the running count read by the next pass already includes
    it.
    """

    def __init__(
        self,
        repository: Repository,
        dispatcher: Dispatcher,
        settings: Settings,
        *,
        cooldown_seconds: float | None = None,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.settings = settings
        self.cooldown_seconds = settings.queue_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        self._wakeup = asyncio.Event()
        self._coordinator: asyncio.Task[None] | None = None
        self._admitting = False
        self._busy = False
        self._completion_pending = False
        self._tasks: set[asyncio.Task[None]] = set()

    async def init(self) -> int:
        recovered = await self.repository.fail_running_jobs(
            error_message=CRASH_RECOVERY_MESSAGE,
            completed_at=utcnow(),
        )
        if recovered:
            logger.warning("marked %s stranded running jobs as failed", recovered)
        self.start()
        self.request_admission()
        return recovered

    def start(self) -> None:
        if self._coordinator is None or self._coordinator.done():
            self._coordinator = asyncio.create_task(self._coordinate(), name="work-queue-coordinator")

    async def stop(self) -> None:
        if self._coordinator is None:
            return
        self._coordinator.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._coordinator
        self._coordinator = None

    async def join(self) -> None:
        """Wait until no job is executing and the coordinator has nothing left to do."""
        while True:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                continue
            coordinating = self._coordinator is not None and not self._coordinator.done()
            if coordinating and (self._busy or self._wakeup.is_set()):
                await asyncio.sleep(0.01)
                continue
            return

    async def enqueue(self, spec: JobSpec) -> JobRecord:
        job = JobRecord(
            id=str(uuid4()),
            queries=list(spec.queries),
            triggered_by=spec.triggered_by,
            config=spec.config,
            provider=spec.config.provider,
            metadata=dict(spec.metadata),
            owner_id=spec.owner_id,
        )
        created = await self.repository.create_job(job)
        logger.info(
            "enqueued job %s (%s queries, triggered_by=%s)",
            created.id,
            len(created.queries),
            created.triggered_by.value,
        )
        self.request_admission()
        return created

    def request_admission(self) -> None:
        self._wakeup.set()

    async def _coordinate(self) -> None:
        while True:
            await self._wakeup.wait()
            self._busy = True
            try:
                if self._completion_pending:
                    self._completion_pending = False
                    if self.cooldown_seconds > 0:
                        await asyncio.sleep(self.cooldown_seconds)
                self._wakeup.clear()
                try:
                    await self.admission_pass()
                except Exception:
                    logger.exception("admission pass failed")
            finally:
                self._busy = False

    async def admission_pass(self) -> list[str]:
        if self._admitting:
            logger.debug("admission pass already in progress; request dropped")
            return []

        self._admitting = True
        try:
            with tracer.start_as_current_span("queue.admission_pass") as span:
                limit = await self._concurrency_limit()
                running = await self.repository.count_jobs(JobStatus.RUNNING)
                span.set_attribute("queue.limit", limit)
                span.set_attribute("queue.running", running)
                if running >= limit:
                    return []

                started: list[str] = []
                for job in await self.repository.list_pending_jobs(limit - running):
                    claimed = await self.repository.mark_job_running(job.id, started_at=utcnow())
                    if claimed is None:
                        continue
                    task = asyncio.create_task(self._execute(claimed), name=f"job-{claimed.id}")
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
                    started.append(claimed.id)

                if started:
                    logger.info("admitted %s jobs (%s running, limit %s)", len(started), running + len(started), limit)
                return started
        finally:
            self._admitting = False

    async def _concurrency_limit(self) -> int:
        global_settings = await self.repository.get_global_settings()
        return global_settings.max_concurrent_jobs or self.settings.max_concurrent_jobs

    async def _execute(self, job: JobRecord) -> None:
        with tracer.start_as_current_span("queue.execute_job") as span:
            span.set_attribute("job.id", job.id)
            try:
                result = await self.dispatcher.dispatch(job)
            except EXPECTED_JOB_ERRORS as exc:
                logger.error("job %s failed: %s", job.id, exc)
                await self._record_failure(job, str(exc))
            except Exception as exc:
                logger.exception("job %s failed unexpectedly", job.id)
                await self._record_failure(job, str(exc) or exc.__class__.__name__)
            else:
                completed_at = utcnow()
                stats = result.stats
                try:
                    await self.repository.complete_job(
                        job.id,
                        completed_at=completed_at,
                        duration_seconds=self._duration(job, completed_at),
                        results_count=stats.total,
                        new_businesses=stats.new,
                        updated_businesses=stats.updated,
                        skipped_businesses=stats.skipped,
                        error_count=stats.errors,
                        output_path=str(result.output.path),
                    )
                except Exception as exc:
                    logger.exception("could not record completion of job %s", job.id)
                    message = str(exc) or exc.__class__.__name__
                    await self._record_failure(job, f"Could not record completion: {message}")
                else:
                    logger.info("job %s completed: %s", job.id, stats.counters())
            finally:
                self._completion_pending = True
                self.request_admission()

    async def _record_failure(self, job: JobRecord, message: str) -> None:
        completed_at = utcnow()
        try:
            await self.repository.fail_job(
                job.id,
                completed_at=completed_at,
                duration_seconds=self._duration(job, completed_at),
                error_message=message,
            )
        except Exception:
            logger.exception("could not record failure of job %s", job.id)

    @staticmethod
    def _duration(job: JobRecord, completed_at: datetime) -> int | None:
        if job.started_at is None:
            return None
        return max(0, int((completed_at - job.started_at).total_seconds()))
