from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from harvester.core.config import get_settings
from harvester.schemas.jobs import JobConfig, JobStatus, ProviderType, TriggerOrigin
from harvester.schemas.schedules import ScheduleKind
from harvester.schemas.settings import GlobalSettings
from harvester.services.records import BusinessRecord, JobRecord, RawRecord, ScheduleRecord

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


GLOBAL_SETTINGS_KEY = "global"

SCHEMA_SQL = """
create table if not exists jobs (
  seq bigint generated always as identity,
  id text primary key,
  status text not null default 'pending'
    check (status in ('pending', 'running', 'completed', 'failed')),
  queries text[] not null default '{}',
  provider text,
  config jsonb not null default '{}'::jsonb,
  metadata jsonb not null default '{}'::jsonb,
  triggered_by text not null,
  owner_id text,
  results_count integer not null default 0,
  new_businesses integer not null default 0,
  updated_businesses integer not null default 0,
  skipped_businesses integer not null default 0,
  error_count integer not null default 0,
  output_path text,
  error_message text,
  created_at timestamptz not null default now(),
  started_at timestamptz,
  completed_at timestamptz,
  duration_seconds integer
);
create index if not exists jobs_status_created_idx on jobs (status, created_at, seq);
create index if not exists jobs_queries_idx on jobs using gin (queries);

create table if not exists schedules (
  id text primary key,
  name text not null,
  kind text not null check (kind in ('recurring', 'one-time')),
  cron_expression text,
  scheduled_time timestamptz,
  status text not null default 'pending'
    check (status in ('pending', 'active', 'completed', 'cancelled')),
  is_active boolean not null default true,
  queries text[] not null default '{}',
  config jsonb not null default '{}'::jsonb,
  metadata jsonb not null default '{}'::jsonb,
  last_run timestamptz,
  owner_id text,
  created_at timestamptz not null default now()
);

create table if not exists app_settings (
  key text primary key,
  value jsonb not null default '{}'::jsonb,
  updated_at timestamptz not null default now()
);

create table if not exists businesses (
  place_id text primary key,
  data jsonb not null,
  status text,
  owner_id text,
  first_seen timestamptz,
  last_updated timestamptz
);

create table if not exists raw_records (
  id text primary key,
  provider text not null,
  place_id text not null,
  job_id text,
  source_query text not null default '',
  data jsonb not null,
  created_at timestamptz not null default now()
);
create index if not exists raw_records_lookup_idx on raw_records (provider, place_id, job_id);
"""

_JOB_COLUMNS = """
  id, status, queries, provider, config, metadata, triggered_by, owner_id,
  results_count, new_businesses, updated_businesses, skipped_businesses, error_count,
  output_path, error_message, created_at, started_at, completed_at, duration_seconds
"""

_SCHEDULE_COLUMNS = """
  id, name, kind, cron_expression, scheduled_time, status, is_active, queries,
  config, metadata, last_run, owner_id, created_at
"""


class Repository(Protocol):
    async def close(self) -> None: ...

    async def create_job(self, job: JobRecord) -> JobRecord: ...

    async def get_job(self, job_id: str) -> JobRecord: ...

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[JobRecord]: ...

    async def count_jobs(self, status: JobStatus) -> int: ...

    async def list_pending_jobs(self, limit: int) -> list[JobRecord]: ...

    async def mark_job_running(self, job_id: str, *, started_at: datetime) -> JobRecord | None: ...

    async def set_job_provider(self, job_id: str, provider: ProviderType) -> None: ...

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
    ) -> bool: ...

    async def fail_job(
        self,
        job_id: str,
        *,
        completed_at: datetime,
        duration_seconds: int | None,
        error_message: str,
    ) -> bool: ...

    async def fail_running_jobs(self, *, error_message: str, completed_at: datetime) -> int: ...

    async def list_job_queries(
        self,
        *,
        statuses: Sequence[str],
        matching: Sequence[str],
        provider: ProviderType | None = None,
    ) -> list[list[str]]: ...

    async def create_schedule(self, schedule: ScheduleRecord) -> ScheduleRecord: ...

    async def get_schedule(self, schedule_id: str) -> ScheduleRecord: ...

    async def list_schedules(self, *, active_only: bool = False) -> list[ScheduleRecord]: ...

    async def list_schedule_queries(
        self,
        *,
        statuses: Sequence[str],
        matching: Sequence[str],
        exclude_schedule_id: str | None = None,
    ) -> list[list[str]]: ...

    async def touch_schedule_last_run(self, schedule_id: str, *, last_run: datetime) -> None: ...

    async def deactivate_schedule(self, schedule_id: str, *, status: str = "completed") -> None: ...

    async def delete_schedule(self, schedule_id: str) -> bool: ...

    async def get_global_settings(self) -> GlobalSettings: ...

    async def save_global_settings(self, settings: GlobalSettings) -> GlobalSettings: ...

    async def save_quota_counter(self, *, calls_today: int, last_reset_date: date) -> None: ...

    async def get_business(self, place_id: str) -> BusinessRecord | None: ...

    async def insert_business(self, business: BusinessRecord) -> BusinessRecord: ...

    async def update_business(self, business: BusinessRecord) -> None: ...

    async def find_raw_record(
        self,
        *,
        provider: ProviderType,
        place_id: str,
        job_id: str | None,
    ) -> RawRecord | None: ...

    async def create_raw_record(self, raw: RawRecord) -> RawRecord: ...


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

    # jobs

    async def create_job(self, job: JobRecord) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into jobs (
                  id, status, queries, provider, config, metadata, triggered_by, owner_id, created_at
                )
                values ($1, $2, $3::text[], $4, $5::jsonb, $6::jsonb, $7, $8, $9)
                returning {_JOB_COLUMNS}
                """,
                job.id,
                job.status.value,
                list(job.queries),
                job.provider.value if job.provider else None,
                json.dumps(job.config.to_json()),
                json.dumps(job.metadata),
                job.triggered_by.value,
                job.owner_id,
                job.created_at,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"job {job.id} already exists") from exc
        return self._job_row_to_record(row)

    async def get_job(self, job_id: str) -> JobRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_JOB_COLUMNS} from jobs where id = $1", job_id)
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def list_jobs(self, *, status: JobStatus | None = None, limit: int = 20, offset: int = 0) -> list[JobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where ($1::text is null or status = $1)
            order by created_at desc, seq desc
            limit $2 offset $3
            """,
            status.value if status else None,
            max(1, min(limit, 500)),
            max(0, offset),
        )
        return [self._job_row_to_record(row) for row in rows]

    async def count_jobs(self, status: JobStatus) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("select count(*) from jobs where status = $1", status.value))

    async def list_pending_jobs(self, limit: int) -> list[JobRecord]:
        if limit <= 0:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where status = 'pending'
            order by created_at asc, seq asc
            limit $1
            """,
            limit,
        )
        return [self._job_row_to_record(row) for row in rows]

    async def mark_job_running(self, job_id: str, *, started_at: datetime) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update jobs
            set status = 'running', started_at = $2
            where id = $1 and status = 'pending'
            returning {_JOB_COLUMNS}
            """,
            job_id,
            started_at,
        )
        return self._job_row_to_record(row) if row else None

    async def set_job_provider(self, job_id: str, provider: ProviderType) -> None:
        pool = await self._get_pool()
        await pool.execute("update jobs set provider = $2 where id = $1", job_id, provider.value)

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
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update jobs
            set
              status = 'completed',
              completed_at = $2,
              duration_seconds = $3,
              results_count = $4,
              new_businesses = $5,
              updated_businesses = $6,
              skipped_businesses = $7,
              error_count = $8,
              output_path = $9
            where id = $1 and status = 'running'
            returning id
            """,
            job_id,
            completed_at,
            duration_seconds,
            results_count,
            new_businesses,
            updated_businesses,
            skipped_businesses,
            error_count,
            output_path,
        )
        return updated is not None

    async def fail_job(
        self,
        job_id: str,
        *,
        completed_at: datetime,
        duration_seconds: int | None,
        error_message: str,
    ) -> bool:
        pool = await self._get_pool()
        updated = await pool.fetchval(
            """
            update jobs
            set status = 'failed', completed_at = $2, duration_seconds = $3, error_message = $4
            where id = $1 and status = 'running'
            returning id
            """,
            job_id,
            completed_at,
            duration_seconds,
            error_message,
        )
        return updated is not None

    async def fail_running_jobs(self, *, error_message: str, completed_at: datetime) -> int:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            update jobs
            set status = 'failed', completed_at = $2, error_message = $1
            where status = 'running'
            returning id
            """,
            error_message,
            completed_at,
        )
        return len(rows)

    async def list_job_queries(
        self,
        *,
        statuses: Sequence[str],
        matching: Sequence[str],
        provider: ProviderType | None = None,
    ) -> list[list[str]]:
        if not matching:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select queries
            from jobs
            where status = any($1::text[])
              and ($2::text is null or provider = $2)
              and exists (
                select 1 from unnest(queries) q where lower(btrim(q)) = any($3::text[])
              )
            """,
            list(statuses),
            provider.value if provider else None,
            list(matching),
        )
        return [list(row["queries"] or []) for row in rows]

    # schedules

    async def create_schedule(self, schedule: ScheduleRecord) -> ScheduleRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into schedules (
                  id, name, kind, cron_expression, scheduled_time, status, is_active,
                  queries, config, metadata, owner_id, created_at
                )
                values ($1, $2, $3, $4, $5, $6, $7, $8::text[], $9::jsonb, $10::jsonb, $11, $12)
                returning {_SCHEDULE_COLUMNS}
                """,
                schedule.id,
                schedule.name,
                schedule.kind.value,
                schedule.cron_expression,
                schedule.scheduled_time,
                schedule.status,
                schedule.is_active,
                list(schedule.queries),
                json.dumps(schedule.config.to_json()),
                json.dumps(schedule.metadata),
                schedule.owner_id,
                schedule.created_at,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"schedule {schedule.id} already exists") from exc
        return self._schedule_row_to_record(row)

    async def get_schedule(self, schedule_id: str) -> ScheduleRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_SCHEDULE_COLUMNS} from schedules where id = $1", schedule_id)
        if row is None:
            raise RepositoryNotFoundError("schedule not found")
        return self._schedule_row_to_record(row)

    async def list_schedules(self, *, active_only: bool = False) -> list[ScheduleRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SCHEDULE_COLUMNS}
            from schedules
            where (not $1::boolean or is_active)
            order by created_at desc
            """,
            active_only,
        )
        return [self._schedule_row_to_record(row) for row in rows]

    async def list_schedule_queries(
        self,
        *,
        statuses: Sequence[str],
        matching: Sequence[str],
        exclude_schedule_id: str | None = None,
    ) -> list[list[str]]:
        if not matching:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select queries
            from schedules
            where is_active
              and status = any($1::text[])
              and ($2::text is null or id <> $2)
              and exists (
                select 1 from unnest(queries) q where lower(btrim(q)) = any($3::text[])
              )
            """,
            list(statuses),
            exclude_schedule_id,
            list(matching),
        )
        return [list(row["queries"] or []) for row in rows]

    async def touch_schedule_last_run(self, schedule_id: str, *, last_run: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute("update schedules set last_run = $2 where id = $1", schedule_id, last_run)

    async def deactivate_schedule(self, schedule_id: str, *, status: str = "completed") -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update schedules set is_active = false, status = $2 where id = $1",
            schedule_id,
            status,
        )

    async def delete_schedule(self, schedule_id: str) -> bool:
        pool = await self._get_pool()
        deleted = await pool.fetchval("delete from schedules where id = $1 returning id", schedule_id)
        return deleted is not None

    # settings

    async def get_global_settings(self) -> GlobalSettings:
        pool = await self._get_pool()
        value = await pool.fetchval("select value from app_settings where key = $1", GLOBAL_SETTINGS_KEY)
        payload = self._coerce_json_dict(value)
        return GlobalSettings.model_validate(payload) if payload else GlobalSettings()

    async def save_global_settings(self, settings: GlobalSettings) -> GlobalSettings:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into app_settings (key, value, updated_at)
            values ($1, $2::jsonb, now())
            on conflict (key) do update set value = excluded.value, updated_at = now()
            """,
            GLOBAL_SETTINGS_KEY,
            settings.model_dump_json(),
        )
        return settings

    async def save_quota_counter(self, *, calls_today: int, last_reset_date: date) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                updated = await conn.fetchval(
                    """
                    update app_settings
                    set
                      value = jsonb_set(
                        value,
                        '{google_places}',
                        coalesce(value->'google_places', '{}'::jsonb)
                          || jsonb_build_object('calls_today', $2::int, 'last_reset_date', $3::text),
                        true
                      ),
                      updated_at = now()
                    where key = $1
                    returning key
                    """,
                    GLOBAL_SETTINGS_KEY,
                    calls_today,
                    last_reset_date.isoformat(),
                )
                if updated is None:
                    seeded = GlobalSettings()
                    seeded.google_places.calls_today = calls_today
                    seeded.google_places.last_reset_date = last_reset_date
                    await conn.execute(
                        """
                        insert into app_settings (key, value, updated_at)
                        values ($1, $2::jsonb, now())
                        on conflict (key) do nothing
                        """,
                        GLOBAL_SETTINGS_KEY,
                        seeded.model_dump_json(),
                    )

    # businesses

    async def get_business(self, place_id: str) -> BusinessRecord | None:
        pool = await self._get_pool()
        value = await pool.fetchval("select data from businesses where place_id = $1", place_id)
        if value is None:
            return None
        return BusinessRecord.from_json(self._coerce_json_dict(value))

    async def insert_business(self, business: BusinessRecord) -> BusinessRecord:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into businesses (place_id, data, status, owner_id, first_seen, last_updated)
                values ($1, $2::jsonb, $3, $4, $5, $6)
                """,
                business.place_id,
                json.dumps(business.to_json()),
                business.status,
                business.owner_id,
                business.first_seen,
                business.last_updated,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"business {business.place_id} already exists") from exc
        return business

    async def update_business(self, business: BusinessRecord) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update businesses
            set data = $2::jsonb, status = $3, owner_id = $4, last_updated = $5
            where place_id = $1
            """,
            business.place_id,
            json.dumps(business.to_json()),
            business.status,
            business.owner_id,
            business.last_updated,
        )

    # raw provenance

    async def find_raw_record(
        self,
        *,
        provider: ProviderType,
        place_id: str,
        job_id: str | None,
    ) -> RawRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id, provider, place_id, job_id, source_query, data, created_at
            from raw_records
            where provider = $1 and place_id = $2 and job_id is not distinct from $3
            order by created_at asc
            limit 1
            """,
            provider.value,
            place_id,
            job_id,
        )
        if row is None:
            return None
        return RawRecord(
            id=row["id"],
            provider=ProviderType(row["provider"]),
            place_id=row["place_id"],
            job_id=row["job_id"],
            source_query=row["source_query"],
            data=self._coerce_json_dict(row["data"]),
            created_at=row["created_at"],
        )

    async def create_raw_record(self, raw: RawRecord) -> RawRecord:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into raw_records (id, provider, place_id, job_id, source_query, data, created_at)
            values ($1, $2, $3, $4, $5, $6::jsonb, $7)
            """,
            raw.id,
            raw.provider.value,
            raw.place_id,
            raw.job_id,
            raw.source_query,
            json.dumps(raw.data, default=str),
            raw.created_at,
        )
        return raw

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("HARVESTER_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _job_row_to_record(self, row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            status=JobStatus(row["status"]),
            queries=list(row["queries"] or []),
            provider=ProviderType(row["provider"]) if row["provider"] else None,
            config=JobConfig.model_validate(self._coerce_json_dict(row["config"])),
            metadata=self._coerce_json_dict(row["metadata"]),
            triggered_by=TriggerOrigin(row["triggered_by"]),
            owner_id=row["owner_id"],
            results_count=row["results_count"],
            new_businesses=row["new_businesses"],
            updated_businesses=row["updated_businesses"],
            skipped_businesses=row["skipped_businesses"],
            error_count=row["error_count"],
            output_path=row["output_path"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration_seconds=row["duration_seconds"],
        )

    def _schedule_row_to_record(self, row: asyncpg.Record) -> ScheduleRecord:
        return ScheduleRecord(
            id=row["id"],
            name=row["name"],
            kind=ScheduleKind(row["kind"]),
            cron_expression=row["cron_expression"],
            scheduled_time=row["scheduled_time"],
            status=row["status"],
            is_active=bool(row["is_active"]),
            queries=list(row["queries"] or []),
            config=JobConfig.model_validate(self._coerce_json_dict(row["config"])),
            metadata=self._coerce_json_dict(row["metadata"]),
            last_run=row["last_run"],
            owner_id=row["owner_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> Repository:
    settings = get_settings()
    if not settings.database_url:
        from harvester.services.store import InMemoryRepository

        logger.warning("HARVESTER_DATABASE_URL is not set; using the in-memory repository")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
