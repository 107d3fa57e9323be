from __future__ import annotations

import logging
from dataclasses import dataclass

from harvester.core.config import Settings, get_settings
from harvester.providers.browser_scrape import BrowserScrapeProvider
from harvester.providers.places_client import PlacesClient
from harvester.providers.structured_search import StructuredSearchProvider
from harvester.services.dispatcher import Dispatcher
from harvester.services.job_queue import WorkQueue
from harvester.services.merge import MergeEngine
from harvester.services.query_validator import QueryValidator
from harvester.services.repository import PostgresRepository, Repository, get_repository
from harvester.services.scheduler import TaskScheduler
from harvester.services.submissions import SubmissionService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    settings: Settings
    repository: Repository
    merge: MergeEngine
    validator: QueryValidator
    dispatcher: Dispatcher
    queue: WorkQueue
    submissions: SubmissionService
    scheduler: TaskScheduler

    async def start(self) -> None:
        if isinstance(self.repository, PostgresRepository) and self.settings.database_auto_migrate:
            await self.repository.ensure_schema()
            logger.info("database schema ensured")
        await self.queue.init()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.queue.stop()
        await self.repository.close()


def build_services(
    settings: Settings | None = None,
    repository: Repository | None = None,
    *,
    places_client: PlacesClient | None = None,
) -> Services:
    settings = settings or get_settings()
    repository = repository or get_repository()
    merge = MergeEngine(repository)
    validator = QueryValidator(repository)
    dispatcher = Dispatcher(
        repository,
        settings,
        merge,
        scraper=BrowserScrapeProvider(settings),
        structured=StructuredSearchProvider(repository, settings, client=places_client),
    )
    queue = WorkQueue(repository, dispatcher, settings)
    submissions = SubmissionService(repository, validator, queue)
    scheduler = TaskScheduler(repository, submissions, settings)
    return Services(
        settings=settings,
        repository=repository,
        merge=merge,
        validator=validator,
        dispatcher=dispatcher,
        queue=queue,
        submissions=submissions,
        scheduler=scheduler,
    )
