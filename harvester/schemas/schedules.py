from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from harvester.schemas.jobs import JobConfig

ScheduleStatus = Literal["pending", "active", "completed", "cancelled"]


class ScheduleKind(str, Enum):
    RECURRING = "recurring"
    ONE_TIME = "one-time"


class ScheduleCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    kind: ScheduleKind = ScheduleKind.ONE_TIME
    cron_expression: str | None = None
    scheduled_time: datetime | None = None
    is_active: bool = True
    queries: list[str] = Field(default_factory=list)
    config: JobConfig = Field(default_factory=JobConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_trigger(self) -> "ScheduleCreateRequest":
        if self.kind is ScheduleKind.RECURRING and not self.cron_expression:
            raise ValueError("cron_expression is required for recurring schedules")
        if self.kind is ScheduleKind.ONE_TIME and self.scheduled_time is None:
            raise ValueError("scheduled_time is required for one-time schedules")
        return self


class ScheduleOut(BaseModel):
    id: str
    name: str
    kind: ScheduleKind
    cron_expression: str | None = None
    scheduled_time: datetime | None = None
    status: ScheduleStatus
    is_active: bool
    queries: list[str]
    config: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_run: datetime | None = None
    owner_id: str | None = None
    created_at: datetime
