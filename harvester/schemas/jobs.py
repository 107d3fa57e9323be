from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

FieldsLevel = Literal["basic", "contact", "atmosphere"]


class ProviderType(str, Enum):
    SCRAPER = "scraper"
    GOOGLE_PLACES = "google_places"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerOrigin(str, Enum):
    MANUAL = "manual"
    SCHEDULER = "scheduler"


class JobConfig(BaseModel):
    """Per-job provider configuration.

    Recognized keys are typed; anything else is carried along untouched so a
    newer submitter can pass options this worker does not know about yet.
    """

    provider: ProviderType | None = None
    fields_level: FieldsLevel | None = None
    max_pages: int | None = Field(default=None, ge=1)
    max_results: int | None = Field(default=None, ge=1)
    depth: int | None = Field(default=None, ge=1)
    concurrency: int | None = Field(default=None, ge=1)
    lang: str | None = None
    zoom: int | None = None
    proxies: list[str] | str | None = None
    geo: str | None = None
    debug: bool | None = None
    email_extraction: bool | None = None
    force_scrape: bool = False
    original_query_count: int | None = None
    skipped_count: int | None = None

    model_config = ConfigDict(extra="allow")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ScrapeJobRequest(JobConfig):
    queries: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def job_config(self) -> JobConfig:
        return JobConfig.model_validate(self.model_dump(exclude={"queries", "metadata"}, exclude_none=True))


class JobOut(BaseModel):
    id: str
    status: JobStatus
    queries: list[str]
    provider: ProviderType | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    triggered_by: TriggerOrigin
    owner_id: str | None = None
    results_count: int = 0
    new_businesses: int = 0
    updated_businesses: int = 0
    skipped_businesses: int = 0
    error_count: int = 0
    output_path: str | None = None
    error_message: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: int | None = None


class SubmissionOut(BaseModel):
    success: bool
    skipped: bool = False
    job_id: str | None = None
    status: str
    accepted_queries: list[str] = Field(default_factory=list)
    skipped_count: int = 0
    conflicts: list[str] = Field(default_factory=list)
    message: str
