from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any

from harvester.schemas.jobs import JobConfig, JobOut, JobStatus, ProviderType, TriggerOrigin
from harvester.schemas.schedules import ScheduleKind, ScheduleOut

DEFAULT_BUSINESS_STATUS = "new"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class JobSpec:
    queries: list[str]
    config: JobConfig = field(default_factory=JobConfig)
    triggered_by: TriggerOrigin = TriggerOrigin.MANUAL
    owner_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobRecord:
    id: str
    queries: list[str]
    triggered_by: TriggerOrigin
    config: JobConfig = field(default_factory=JobConfig)
    status: JobStatus = JobStatus.PENDING
    provider: ProviderType | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    owner_id: str | None = None
    results_count: int = 0
    new_businesses: int = 0
    updated_businesses: int = 0
    skipped_businesses: int = 0
    error_count: int = 0
    output_path: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_seconds: int | None = None

    def to_out(self) -> JobOut:
        return JobOut(
            id=self.id,
            status=self.status,
            queries=list(self.queries),
            provider=self.provider,
            config=self.config.to_json(),
            metadata=dict(self.metadata),
            triggered_by=self.triggered_by,
            owner_id=self.owner_id,
            results_count=self.results_count,
            new_businesses=self.new_businesses,
            updated_businesses=self.updated_businesses,
            skipped_businesses=self.skipped_businesses,
            error_count=self.error_count,
            output_path=self.output_path,
            error_message=self.error_message,
            created_at=self.created_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            duration_seconds=self.duration_seconds,
        )


@dataclass(slots=True)
class ScheduleRecord:
    id: str
    name: str
    kind: ScheduleKind
    queries: list[str]
    cron_expression: str | None = None
    scheduled_time: datetime | None = None
    status: str = "pending"
    is_active: bool = True
    config: JobConfig = field(default_factory=JobConfig)
    metadata: dict[str, Any] = field(default_factory=dict)
    last_run: datetime | None = None
    owner_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_out(self) -> ScheduleOut:
        return ScheduleOut(
            id=self.id,
            name=self.name,
            kind=self.kind,
            cron_expression=self.cron_expression,
            scheduled_time=self.scheduled_time,
            status=self.status,
            is_active=self.is_active,
            queries=list(self.queries),
            config=self.config.to_json(),
            metadata=dict(self.metadata),
            last_run=self.last_run,
            owner_id=self.owner_id,
            created_at=self.created_at,
        )


@dataclass(slots=True)
class BusinessRecord:
    place_id: str
    name: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None
    phone: str | None = None
    international_phone: str | None = None
    website: str | None = None
    emails: list[str] = field(default_factory=list)
    category: str | None = None
    additional_categories: list[Any] = field(default_factory=list)
    rating: float | None = None
    review_count: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    price_level: Any = None
    business_status: str | None = None
    open_state: str | None = None
    working_hours: Any = None
    images: list[Any] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    raw_references: list[dict[str, str]] = field(default_factory=list)
    status: str | None = None
    owner_id: str | None = None
    first_seen: datetime | None = None
    last_updated: datetime | None = None

    def to_json(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("first_seen", "last_updated"):
            value = payload[key]
            payload[key] = value.isoformat() if isinstance(value, datetime) else None
        return payload

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> BusinessRecord:
        known = {item.name for item in fields(cls)}
        data = {key: value for key, value in payload.items() if key in known}
        for key in ("first_seen", "last_updated"):
            value = data.get(key)
            if isinstance(value, str):
                data[key] = datetime.fromisoformat(value)
        return cls(**data)


@dataclass(slots=True)
class RawRecord:
    id: str
    provider: ProviderType
    place_id: str
    job_id: str | None
    source_query: str
    data: dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)
