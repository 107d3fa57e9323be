from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from harvester.schemas.jobs import ProviderType
from harvester.services.repository import Repository

HISTORICAL_JOB_STATUSES = ("completed", "running")
# "processing" is what older deployments called a running job.
ACTIVE_JOB_STATUSES = ("pending", "running", "processing")
ACTIVE_SCHEDULE_STATUSES = ("pending", "active")


def normalize_query(query: str) -> str:
    return query.strip().lower()


def normalize_queries(queries: Iterable[str]) -> list[str]:
    """Trim, lower-case and de-duplicate, keeping first-seen order and dropping blanks."""
    unique: list[str] = []
    seen: set[str] = set()
    for query in queries:
        normalized = normalize_query(query)
        if normalized and normalized not in seen:
            seen.add(normalized)
            unique.append(normalized)
    return unique


def _collect(query_lists: Iterable[list[str]]) -> set[str]:
    return {normalize_query(query) for queries in query_lists for query in queries}


@dataclass(slots=True)
class DuplicateCheck:
    unique_queries: list[str]
    skipped_count: int


@dataclass(slots=True)
class ConflictCheck:
    unique_queries: list[str]
    conflict_count: int
    conflicts: list[str] = field(default_factory=list)


class QueryValidator:
    """Advisory filters applied before a job is created.

    Neither check is a store constraint; two submissions racing past both at
    once simply scrape twice and merge idempotently.
    """

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def check_duplicates(self, queries: list[str], provider: ProviderType) -> DuplicateCheck:
        unique_input = normalize_queries(queries)
        previous = await self.repository.list_job_queries(
            statuses=HISTORICAL_JOB_STATUSES,
            matching=unique_input,
            provider=provider,
        )
        seen = _collect(previous)
        unique_queries = [query for query in unique_input if query not in seen]
        return DuplicateCheck(unique_queries=unique_queries, skipped_count=len(queries) - len(unique_queries))

    async def check_active_conflicts(
        self,
        queries: list[str],
        *,
        exclude_schedule_id: str | None = None,
    ) -> ConflictCheck:
        unique_input = normalize_queries(queries)
        active = _collect(
            await self.repository.list_job_queries(statuses=ACTIVE_JOB_STATUSES, matching=unique_input)
        )
        active |= _collect(
            await self.repository.list_schedule_queries(
                statuses=ACTIVE_SCHEDULE_STATUSES,
                matching=unique_input,
                exclude_schedule_id=exclude_schedule_id,
            )
        )
        conflicts = [query for query in unique_input if query in active]
        unique_queries = [query for query in unique_input if query not in active]
        return ConflictCheck(unique_queries=unique_queries, conflict_count=len(conflicts), conflicts=conflicts)
