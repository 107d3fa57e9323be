from __future__ import annotations

import asyncio

import pytest

from harvester.schemas.jobs import JobConfig, JobStatus, ProviderType, TriggerOrigin
from harvester.schemas.schedules import ScheduleKind
from harvester.schemas.settings import GlobalSettings
from harvester.services.job_queue import WorkQueue
from harvester.services.query_validator import QueryValidator
from harvester.services.records import JobRecord, ScheduleRecord
from harvester.services.store import InMemoryRepository
from harvester.services.submissions import SubmissionService, SubmissionValidationError, apply_config_defaults


def _service(repository: InMemoryRepository, settings, gated_dispatcher) -> SubmissionService:
    queue = WorkQueue(repository, gated_dispatcher, settings)
    return SubmissionService(repository, QueryValidator(repository), queue)


@pytest.mark.parametrize("queries", [[], ["", "   "], "cafes", ["cafes", 3]])
def test_malformed_queries_are_rejected(settings, gated_dispatcher, queries) -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        service = _service(repository, settings, gated_dispatcher)
        with pytest.raises(SubmissionValidationError):
            await service.submit(queries)
        assert repository.jobs == {}

    asyncio.run(scenario())


def test_submission_queues_normalized_queries(settings, gated_dispatcher) -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        service = _service(repository, settings, gated_dispatcher)
        result = await service.submit(
            ["  Cafes in Paris", "cafes in paris", "Bars in Paris "],
            owner_id="user-1",
            metadata={"source": "form"},
        )
        assert not result.skipped
        assert result.accepted_queries == ["cafes in paris", "bars in paris"]
        assert result.skipped_count == 1
        assert result.message == "Job queued with 2 queries (1 skipped as duplicates)"

        stored = await repository.get_job(result.job.id)
        assert stored.status is JobStatus.PENDING
        assert stored.queries == ["cafes in paris", "bars in paris"]
        assert stored.triggered_by is TriggerOrigin.MANUAL
        assert stored.owner_id == "user-1"
        assert stored.metadata == {"source": "form"}
        assert stored.config.original_query_count == 3
        assert stored.config.skipped_count == 1

        out = result.to_out()
        assert out.job_id == stored.id
        assert out.status == "pending"

    asyncio.run(scenario())


def test_defaults_come_from_settings_record() -> None:
    config = apply_config_defaults(JobConfig(), GlobalSettings())
    assert config.max_results == 70
    assert config.depth == 7
    assert config.email_extraction is False

    tuned = apply_config_defaults(
        JobConfig(max_results=25),
        GlobalSettings(default_max_results=90, email_extraction_enabled=True),
    )
    assert tuned.max_results == 25
    assert tuned.depth == 3
    assert tuned.email_extraction is True

    explicit = apply_config_defaults(JobConfig(depth=2, email_extraction=False, custom_flag="x"), GlobalSettings())
    assert explicit.depth == 2
    assert explicit.email_extraction is False
    assert explicit.to_json()["custom_flag"] == "x"


def test_history_skips_only_for_the_same_provider(settings, gated_dispatcher) -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        await repository.create_job(
            JobRecord(
                id="old",
                queries=["cafes in paris"],
                triggered_by=TriggerOrigin.MANUAL,
                status=JobStatus.COMPLETED,
                provider=ProviderType.SCRAPER,
            )
        )
        service = _service(repository, settings, gated_dispatcher)

        skipped = await service.submit(["Cafes in Paris"])
        assert skipped.skipped
        assert skipped.job is None
        assert skipped.message == "All queries were skipped: already scraped or in progress"
        assert skipped.to_out().status == "skipped"

        places = await service.submit(["Cafes in Paris"], JobConfig(provider=ProviderType.GOOGLE_PLACES))
        assert not places.skipped
        assert places.accepted_queries == ["cafes in paris"]

    asyncio.run(scenario())


def test_force_scrape_bypasses_both_checks(settings, gated_dispatcher) -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        await repository.create_job(
            JobRecord(
                id="old",
                queries=["cafes"],
                triggered_by=TriggerOrigin.MANUAL,
                status=JobStatus.COMPLETED,
                provider=ProviderType.SCRAPER,
            )
        )
        await repository.create_job(JobRecord(id="live", queries=["bars"], triggered_by=TriggerOrigin.MANUAL))
        service = _service(repository, settings, gated_dispatcher)

        result = await service.submit(["cafes", "bars"], JobConfig(force_scrape=True))
        assert not result.skipped
        assert result.accepted_queries == ["cafes", "bars"]
        assert result.conflicts == []

    asyncio.run(scenario())


def test_queries_owned_by_active_schedule_conflict(settings, gated_dispatcher) -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        await repository.create_schedule(
            ScheduleRecord(
                id="nightly",
                name="nightly",
                kind=ScheduleKind.RECURRING,
                cron_expression="0 2 * * *",
                queries=["plumbers in lyon"],
                status="active",
            )
        )
        service = _service(repository, settings, gated_dispatcher)

        result = await service.submit(["plumbers in lyon", "roofers in lyon"])
        assert result.conflicts == ["plumbers in lyon"]
        assert result.accepted_queries == ["roofers in lyon"]

        own = await service.submit(["plumbers in lyon"], exclude_schedule_id="nightly")
        assert own.accepted_queries == ["plumbers in lyon"]

    asyncio.run(scenario())
