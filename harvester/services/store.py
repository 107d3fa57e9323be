from collections.abc import Sequence
from copy import deepcopy
from datetime import date, datetime
from itertools import count

from harvester.schemas.jobs import JobStatus, ProviderType
from harvester.schemas.settings import GlobalSettings
from harvester.services.records import BusinessRecord, JobRecord, RawRecord, ScheduleRecord
from harvester.services.repository import RepositoryConflictError, RepositoryNotFoundError


def _normalized(queries: Sequence[str]) -> set[str]:
    return {query.strip().lower() for query in queries}


class InMemoryRepository:
    """Process-local store for development runs and tests.

    Records are deep-copied on the way in and out, so callers never hold a
    reference to stored state and every write goes through a method here.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, JobRecord] = {}
        self.schedules: dict[str, ScheduleRecord] = {}
        self.businesses: dict[str, BusinessRecord] = {}
        self.raw_records: list[RawRecord] = []
        self.settings: GlobalSettings | None = None
        self._job_seq: dict[str, int] = {}
        self._seq = count()

    async def close(self) -> None:
        return None

    # jobs

    async def create_job(self, job: JobRecord) -> JobRecord:
        if job.id in self.jobs:
            raise RepositoryConflictError(f"job {job.id} already exists")
        self.jobs[job.id] = deepcopy(job)
        self._job_seq[job.id] = next(self._seq)
        return deepcopy(job)

    async def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return deepcopy(job)

    async def list_jobs(self, *, status: JobStatus | None = None, limit: int = 20, offset: int = 0) -> list[JobRecord]:
        jobs = [job for job in self.jobs.values() if status is None or job.status is status]
        jobs.sort(key=lambda job: (job.created_at, self._job_seq[job.id]), reverse=True)
        limit = max(1, min(limit, 500))
        offset = max(0, offset)
        return [deepcopy(job) for job in jobs[offset : offset + limit]]

    async def count_jobs(self, status: JobStatus) -> int:
        return sum(1 for job in self.jobs.values() if job.status is status)

    async def list_pending_jobs(self, limit: int) -> list[JobRecord]:
        if limit <= 0:
            return []
        pending = [job for job in self.jobs.values() if job.status is JobStatus.PENDING]
        pending.sort(key=lambda job: (job.created_at, self._job_seq[job.id]))
        return [deepcopy(job) for job in pending[:limit]]

    async def mark_job_running(self, job_id: str, *, started_at: datetime) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.PENDING:
            return None
        job.status = JobStatus.RUNNING
        job.started_at = started_at
        return deepcopy(job)

    async def set_job_provider(self, job_id: str, provider: ProviderType) -> None:
        job = self.jobs.get(job_id)
        if job is not None:
            job.provider = provider

    async def complete_job(
        self,
        job_id: str,
        *,
        completed_at: datetime,
        duration_seconds: int | None,
        results_count: int,
        new_businesses: int,
        updated_businesses: int,
        skipped_businesses: int,
        error_count: int,
        output_path: str | None,
    ) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            return False
        job.status = JobStatus.COMPLETED
        job.completed_at = completed_at
        job.duration_seconds = duration_seconds
        job.results_count = results_count
        job.new_businesses = new_businesses
        job.updated_businesses = updated_businesses
        job.skipped_businesses = skipped_businesses
        job.error_count = error_count
        job.output_path = output_path
        return True

    async def fail_job(
        self,
        job_id: str,
        *,
        completed_at: datetime,
        duration_seconds: int | None,
        error_message: str,
    ) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.status is not JobStatus.RUNNING:
            return False
        job.status = JobStatus.FAILED
        job.completed_at = completed_at
        job.duration_seconds = duration_seconds
        job.error_message = error_message
        return True

    async def fail_running_jobs(self, *, error_message: str, completed_at: datetime) -> int:
        failed = 0
        for job in self.jobs.values():
            if job.status is JobStatus.RUNNING:
                job.status = JobStatus.FAILED
                job.completed_at = completed_at
                job.error_message = error_message
                failed += 1
        return failed

    async def list_job_queries(
        self,
        *,
        statuses: Sequence[str],
        matching: Sequence[str],
        provider: ProviderType | None = None,
    ) -> list[list[str]]:
        wanted = set(matching)
        allowed = set(statuses)
        return [
            list(job.queries)
            for job in self.jobs.values()
            if job.status.value in allowed
            and (provider is None or job.provider is provider)
            and _normalized(job.queries) & wanted
        ]

    # schedules

    async def create_schedule(self, schedule: ScheduleRecord) -> ScheduleRecord:
        if schedule.id in self.schedules:
            raise RepositoryConflictError(f"schedule {schedule.id} already exists")
        self.schedules[schedule.id] = deepcopy(schedule)
        return deepcopy(schedule)

    async def get_schedule(self, schedule_id: str) -> ScheduleRecord:
        schedule = self.schedules.get(schedule_id)
        if schedule is None:
            raise RepositoryNotFoundError("schedule not found")
        return deepcopy(schedule)

    async def list_schedules(self, *, active_only: bool = False) -> list[ScheduleRecord]:
        schedules = [item for item in self.schedules.values() if item.is_active or not active_only]
        schedules.sort(key=lambda item: item.created_at, reverse=True)
        return [deepcopy(item) for item in schedules]

    async def list_schedule_queries(
        self,
        *,
        statuses: Sequence[str],
        matching: Sequence[str],
        exclude_schedule_id: str | None = None,
    ) -> list[list[str]]:
        wanted = set(matching)
        allowed = set(statuses)
        return [
            list(item.queries)
            for item in self.schedules.values()
            if item.is_active
            and item.status in allowed
            and item.id != exclude_schedule_id
            and _normalized(item.queries) & wanted
        ]

    async def touch_schedule_last_run(self, schedule_id: str, *, last_run: datetime) -> None:
        schedule = self.schedules.get(schedule_id)
        if schedule is not None:
            schedule.last_run = last_run

    async def deactivate_schedule(self, schedule_id: str, *, status: str = "completed") -> None:
        schedule = self.schedules.get(schedule_id)
        if schedule is not None:
            schedule.is_active = False
            schedule.status = status

    async def delete_schedule(self, schedule_id: str) -> bool:
        return self.schedules.pop(schedule_id, None) is not None

    # settings

    async def get_global_settings(self) -> GlobalSettings:
        if self.settings is None:
            return GlobalSettings()
        return self.settings.model_copy(deep=True)

    async def save_global_settings(self, settings: GlobalSettings) -> GlobalSettings:
        self.settings = settings.model_copy(deep=True)
        return settings

    async def save_quota_counter(self, *, calls_today: int, last_reset_date: date) -> None:
        if self.settings is None:
            self.settings = GlobalSettings()
        self.settings.google_places.calls_today = calls_today
        self.settings.google_places.last_reset_date = last_reset_date

    # businesses

    async def get_business(self, place_id: str) -> BusinessRecord | None:
        business = self.businesses.get(place_id)
        return deepcopy(business) if business else None

    async def insert_business(self, business: BusinessRecord) -> BusinessRecord:
        if business.place_id in self.businesses:
            raise RepositoryConflictError(f"business {business.place_id} already exists")
        self.businesses[business.place_id] = deepcopy(business)
        return deepcopy(business)

    async def update_business(self, business: BusinessRecord) -> None:
        if business.place_id not in self.businesses:
            raise RepositoryNotFoundError("business not found")
        self.businesses[business.place_id] = deepcopy(business)

    # raw provenance

    async def find_raw_record(
        self,
        *,
        provider: ProviderType,
        place_id: str,
        job_id: str | None,
    ) -> RawRecord | None:
        for raw in self.raw_records:
            if raw.provider is provider and raw.place_id == place_id and raw.job_id == job_id:
                return deepcopy(raw)
        return None

    async def create_raw_record(self, raw: RawRecord) -> RawRecord:
        self.raw_records.append(deepcopy(raw))
        return deepcopy(raw)
