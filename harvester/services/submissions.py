from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from harvester.schemas.jobs import JobConfig, SubmissionOut, TriggerOrigin
from harvester.schemas.settings import GlobalSettings
from harvester.services.job_queue import WorkQueue
from harvester.services.query_validator import QueryValidator, normalize_queries
from harvester.services.records import JobRecord, JobSpec
from harvester.services.repository import Repository

logger = logging.getLogger(__name__)

FALLBACK_MAX_RESULTS = 70


class SubmissionValidationError(ValueError):
    """Raised when a submission is malformed; nothing is enqueued."""


@dataclass(slots=True)
class SubmissionResult:
    skipped: bool
    message: str
    job: JobRecord | None = None
    accepted_queries: list[str] = field(default_factory=list)
    skipped_count: int = 0
    conflicts: list[str] = field(default_factory=list)

    def to_out(self) -> SubmissionOut:
        return SubmissionOut(
            success=True,
            skipped=self.skipped,
            job_id=self.job.id if self.job else None,
            status=self.job.status.value if self.job else "skipped",
            accepted_queries=list(self.accepted_queries),
            skipped_count=self.skipped_count,
            conflicts=list(self.conflicts),
            message=self.message,
        )


def apply_config_defaults(config: JobConfig, settings: GlobalSettings, **bookkeeping: Any) -> JobConfig:
    """Fill unset tunables from the global settings record; explicit values win."""
    data = config.model_dump(exclude_none=True)
    max_results = config.max_results or settings.default_max_results or FALLBACK_MAX_RESULTS
    data["max_results"] = max_results
    data["depth"] = config.depth or math.ceil(max_results / 10)
    if config.email_extraction is None:
        data["email_extraction"] = settings.email_extraction_enabled
    data.update(bookkeeping)
    return JobConfig.model_validate(data)


def _check_queries(queries: Any) -> list[str]:
    if not isinstance(queries, list) or not all(isinstance(query, str) for query in queries):
        raise SubmissionValidationError("queries must be a list of strings")
    if not any(query.strip() for query in queries):
        raise SubmissionValidationError("at least one non-empty query is required")
    return queries


class SubmissionService:
    """Turns a query list into a queued job, shared by the API and the scheduler."""

    def __init__(self, repository: Repository, validator: QueryValidator, queue: WorkQueue) -> None:
        self.repository = repository
        self.validator = validator
        self.queue = queue

    async def filter_queries(
        self,
        queries: list[str],
        config: JobConfig,
        *,
        exclude_schedule_id: str | None = None,
    ) -> tuple[list[str], int, list[str]]:
        """Return the queries that survive both duplicate checks, the skipped count and the conflicts."""
        queries = _check_queries(queries)
        accepted = normalize_queries(queries)
        conflicts: list[str] = []
        if not config.force_scrape:
            global_settings = await self.repository.get_global_settings()
            provider = config.provider or global_settings.data_provider
            conflict_check = await self.validator.check_active_conflicts(
                accepted,
                exclude_schedule_id=exclude_schedule_id,
            )
            conflicts = conflict_check.conflicts
            duplicate_check = await self.validator.check_duplicates(conflict_check.unique_queries, provider)
            accepted = duplicate_check.unique_queries
        return accepted, len(queries) - len(accepted), conflicts

    async def submit(
        self,
        queries: list[str],
        config: JobConfig | None = None,
        *,
        triggered_by: TriggerOrigin = TriggerOrigin.MANUAL,
        owner_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        exclude_schedule_id: str | None = None,
    ) -> SubmissionResult:
        config = config or JobConfig()
        accepted, skipped_count, conflicts = await self.filter_queries(
            queries,
            config,
            exclude_schedule_id=exclude_schedule_id,
        )

        if not accepted:
            logger.info(
                "submission skipped: %s queries already scraped or in progress (conflicts=%s)",
                len(queries),
                conflicts,
            )
            return SubmissionResult(
                skipped=True,
                message="All queries were skipped: already scraped or in progress",
                skipped_count=skipped_count,
                conflicts=conflicts,
            )

        global_settings = await self.repository.get_global_settings()
        job_config = apply_config_defaults(
            config,
            global_settings,
            original_query_count=len(queries),
            skipped_count=skipped_count,
        )
        job = await self.queue.enqueue(
            JobSpec(
                queries=accepted,
                config=job_config,
                triggered_by=triggered_by,
                owner_id=owner_id,
                metadata=metadata or {},
            )
        )
        message = f"Job queued with {len(accepted)} queries"
        if skipped_count:
            message += f" ({skipped_count} skipped as duplicates)"
        return SubmissionResult(
            skipped=False,
            message=message,
            job=job,
            accepted_queries=accepted,
            skipped_count=skipped_count,
            conflicts=conflicts,
        )
