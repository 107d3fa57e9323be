from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar

from harvester.schemas.jobs import JobConfig, ProviderType


@dataclass(slots=True)
class RawOutput:
    path: Path
    provider: ProviderType


def job_workdir(data_dir: str | Path, job_id: str) -> Path:
    return Path(data_dir) / f"scraper-{job_id}"


class ScrapeProvider(ABC):
    """A source of raw business records for a list of search queries.

    Implementations write everything they collect to one artifact (a JSON
    array or NDJSON) and return its location.
    """

    provider_type: ClassVar[ProviderType]

    @abstractmethod
    async def execute_scrape(self, queries: list[str], job_id: str, config: JobConfig) -> RawOutput:
        raise NotImplementedError
