from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass

from opentelemetry import trace

from harvester.core.config import Settings
from harvester.providers.base import RawOutput, job_workdir
from harvester.providers.browser_scrape import BrowserScrapeProvider
from harvester.providers.structured_search import QuotaExhaustedError, StructuredSearchProvider
from harvester.schemas.jobs import JobConfig, ProviderType
from harvester.services.merge import MergeEngine, MergeStats
from harvester.services.records import JobRecord
from harvester.services.repository import Repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Provider = BrowserScrapeProvider | StructuredSearchProvider


@dataclass(slots=True)
class DispatchResult:
    provider: ProviderType
    output: RawOutput
    stats: MergeStats


class Dispatcher:
    """Runs one admitted job: pick the provider, scrape, merge the output.

    Provider choice is strict. A job that resolves to Places while the Places
    budget is spent fails; it is never rerouted to the scraper.
    """

    def __init__(
        self,
        repository: Repository,
        settings: Settings,
        merge: MergeEngine,
        scraper: BrowserScrapeProvider,
        structured: StructuredSearchProvider,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.merge = merge
        self._providers: dict[ProviderType, Provider] = {
            ProviderType.SCRAPER: scraper,
            ProviderType.GOOGLE_PLACES: structured,
        }

    async def resolve_provider(self, config: JobConfig) -> ProviderType:
        if config.provider is not None:
            return config.provider
        global_settings = await self.repository.get_global_settings()
        return global_settings.data_provider

    def provider_for(self, provider_type: ProviderType) -> Provider:
        return self._providers[provider_type]

    async def dispatch(self, job: JobRecord) -> DispatchResult:
        with tracer.start_as_current_span("dispatcher.dispatch") as span:
            span.set_attribute("job.id", job.id)
            provider_type = await self.resolve_provider(job.config)
            span.set_attribute("job.provider", provider_type.value)
            await self.repository.set_job_provider(job.id, provider_type)
            provider = self.provider_for(provider_type)
            logger.info("job %s dispatched to %s provider", job.id, provider_type.value)

            try:
                if isinstance(provider, StructuredSearchProvider):
                    decision = await provider.check_limit()
                    if not decision.allowed:
                        logger.warning("job %s: Google Places unavailable (%s)", job.id, decision.reason)
                        raise QuotaExhaustedError(
                            f"Google Places API limit reached ({decision.reason}). "
                            "Select the scraper provider to run this job."
                        )

                output = await provider.execute_scrape(job.queries, job.id, job.config)
                stats = await self.merge.process_output(
                    output.path,
                    source_query=", ".join(job.queries),
                    provider=provider_type,
                    job_id=job.id,
                    owner_id=job.owner_id,
                )
                return DispatchResult(provider=provider_type, output=output, stats=stats)
            finally:
                if self.settings.cleanup_temp:
                    workdir = job_workdir(self.settings.data_dir, job.id)
                    await asyncio.to_thread(shutil.rmtree, workdir, ignore_errors=True)
