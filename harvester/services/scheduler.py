from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from opentelemetry import trace

from harvester.core.config import Settings
from harvester.schemas.jobs import TriggerOrigin
from harvester.schemas.schedules import ScheduleKind
from harvester.services.records import ScheduleRecord, utcnow
from harvester.services.repository import Repository, RepositoryError, RepositoryNotFoundError
from harvester.services.submissions import SubmissionResult, SubmissionService

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ScheduleNotFoundError(LookupError):
    """Raised when a schedule id does not exist."""


class TaskScheduler:
    """Feeds the work queue from stored schedules.

    Recurring schedules are APScheduler cron jobs keyed by schedule id.
    One-time schedules are plain event-loop timers, armed only when the target
    instant is within ``max_one_time_delay_seconds``; anything further out is
    left unregistered until it is scheduled again closer to the date.
    """

    def __init__(
        self,
        repository: Repository,
        submissions: SubmissionService,
        settings: Settings,
        *,
        scheduler: AsyncIOScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.submissions = submissions
        self.settings = settings
        self.timezone = ZoneInfo(settings.scheduler_timezone)
        self.clock = clock
        self._scheduler = scheduler or AsyncIOScheduler(timezone=self.timezone)
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    async def start(self) -> int:
        if not self._scheduler.running:
            self._scheduler.start()
        try:
            schedules = await self.repository.list_schedules(active_only=True)
        except RepositoryError:
            logger.exception("could not load schedules")
            return 0

        registered = sum(1 for schedule in schedules if self.schedule_job(schedule))
        logger.info("scheduler started: %s of %s active schedules registered", registered, len(schedules))
        return registered

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._scheduler.remove_all_jobs()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("scheduler stopped")

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def is_registered(self, schedule_id: str) -> bool:
        return schedule_id in self._timers or self._scheduler.get_job(schedule_id) is not None

    def schedule_job(self, schedule: ScheduleRecord) -> bool:
        """Register ``schedule``, replacing any earlier registration. Needs a running loop."""
        self.remove_schedule(schedule.id)
        if not schedule.is_active:
            return False
        if schedule.kind is ScheduleKind.RECURRING:
            return self._register_cron(schedule)
        return self._arm_one_time(schedule)

    def remove_schedule(self, schedule_id: str) -> None:
        timer = self._timers.pop(schedule_id, None)
        if timer is not None:
            timer.cancel()
        if self._scheduler.get_job(schedule_id) is not None:
            self._scheduler.remove_job(schedule_id)

    def _register_cron(self, schedule: ScheduleRecord) -> bool:
        try:
            trigger = CronTrigger.from_crontab(schedule.cron_expression or "", timezone=self.timezone)
        except ValueError as exc:
            logger.warning(
                "schedule %s has an invalid cron expression %r: %s",
                schedule.id,
                schedule.cron_expression,
                exc,
            )
            return False

        self._scheduler.add_job(
            self._fire_cron,
            trigger=trigger,
            id=schedule.id,
            name=schedule.name,
            args=[schedule.id],
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info("registered cron schedule %s (%s)", schedule.id, schedule.cron_expression)
        return True

    def _arm_one_time(self, schedule: ScheduleRecord) -> bool:
        if schedule.scheduled_time is None:
            logger.warning("one-time schedule %s has no scheduled_time", schedule.id)
            return False

        target = schedule.scheduled_time
        if target.tzinfo is None:
            target = target.replace(tzinfo=self.timezone)
        delay = (target - self.clock()).total_seconds()

        if delay <= 0:
            logger.info("one-time schedule %s is past due; running now", schedule.id)
            self._spawn(self._run_logged(schedule.id))
            return True
        if delay > self.settings.max_one_time_delay_seconds:
            logger.warning(
                "one-time schedule %s is %.0fs away, beyond the %.0fs timer limit; not registered",
                schedule.id,
                delay,
                self.settings.max_one_time_delay_seconds,
            )
            return False

        loop = asyncio.get_running_loop()
        self._timers[schedule.id] = loop.call_later(delay, self._fire_one_time, schedule.id)
        logger.info("armed one-time schedule %s in %.0fs", schedule.id, delay)
        return True

    def _fire_one_time(self, schedule_id: str) -> None:
        self._timers.pop(schedule_id, None)
        self._spawn(self._run_logged(schedule_id))

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_logged(self, schedule_id: str) -> None:
        try:
            await self.run_schedule_now(schedule_id)
        except Exception:
            logger.exception("one-time schedule %s failed to run", schedule_id)

    async def _fire_cron(self, schedule_id: str) -> None:
        try:
            schedule = await self.repository.get_schedule(schedule_id)
        except RepositoryNotFoundError:
            logger.warning("cron schedule %s no longer exists; unregistering", schedule_id)
            self.remove_schedule(schedule_id)
            return
        except RepositoryError:
            logger.exception("could not load schedule %s", schedule_id)
            return

        if not schedule.is_active:
            logger.info("cron schedule %s is inactive; unregistering", schedule_id)
            self.remove_schedule(schedule_id)
            return
        await self.execute_scheduled_scrape(schedule)

    async def run_schedule_now(self, schedule_id: str) -> SubmissionResult | None:
        try:
            schedule = await self.repository.get_schedule(schedule_id)
        except RepositoryNotFoundError as exc:
            raise ScheduleNotFoundError(f"schedule {schedule_id} not found") from exc

        if schedule.kind is not ScheduleKind.ONE_TIME:
            return await self.execute_scheduled_scrape(schedule)

        self.remove_schedule(schedule_id)
        try:
            return await self.execute_scheduled_scrape(schedule)
        finally:
            await self.repository.deactivate_schedule(schedule_id, status="completed")

    async def execute_scheduled_scrape(self, schedule: ScheduleRecord) -> SubmissionResult | None:
        with tracer.start_as_current_span("scheduler.execute_schedule") as span:
            span.set_attribute("schedule.id", schedule.id)
            try:
                await self.repository.touch_schedule_last_run(schedule.id, last_run=self.clock())
                result = await self.submissions.submit(
                    schedule.queries,
                    schedule.config,
                    triggered_by=TriggerOrigin.SCHEDULER,
                    owner_id=schedule.owner_id,
                    metadata={**schedule.metadata, "schedule_id": schedule.id},
                    exclude_schedule_id=schedule.id,
                )
            except Exception:
                logger.exception("scheduled scrape for %s failed", schedule.id)
                return None

            if result.skipped:
                logger.info(
                    "schedule %s: all %s queries skipped (conflicts=%s)",
                    schedule.id,
                    len(schedule.queries),
                    result.conflicts,
                )
            else:
                logger.info(
                    "schedule %s queued job %s with %s queries (%s skipped)",
                    schedule.id,
                    result.job.id if result.job else None,
                    len(result.accepted_queries),
                    result.skipped_count,
                )
            return result
