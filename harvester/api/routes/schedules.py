from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Response, status

from harvester.api.deps import get_owner_id, get_services
from harvester.schemas.jobs import SubmissionOut
from harvester.schemas.schedules import ScheduleCreateRequest, ScheduleOut
from harvester.services.container import Services
from harvester.services.records import ScheduleRecord
from harvester.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)
from harvester.services.scheduler import ScheduleNotFoundError
from harvester.services.submissions import SubmissionValidationError

router = APIRouter()


@router.post("", response_model=ScheduleOut | SubmissionOut, status_code=status.HTTP_201_CREATED)
async def create_schedule(
    payload: ScheduleCreateRequest,
    response: Response,
    services: Services = Depends(get_services),
    owner_id: str | None = Depends(get_owner_id),
) -> ScheduleOut | SubmissionOut:
    try:
        queries, skipped_count, conflicts = await services.submissions.filter_queries(payload.queries, payload.config)
        if not queries:
            response.status_code = status.HTTP_200_OK
            return SubmissionOut(
                success=True,
                skipped=True,
                status="skipped",
                skipped_count=skipped_count,
                conflicts=conflicts,
                message="All queries are already running, scheduled or scraped",
            )

        schedule = await services.repository.create_schedule(
            ScheduleRecord(
                id=str(uuid4()),
                name=payload.name,
                kind=payload.kind,
                queries=queries,
                cron_expression=payload.cron_expression,
                scheduled_time=payload.scheduled_time,
                status="active" if payload.is_active else "pending",
                is_active=payload.is_active,
                config=payload.config,
                metadata=payload.metadata,
                owner_id=owner_id,
            )
        )
    except SubmissionValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    services.scheduler.schedule_job(schedule)
    return schedule.to_out()


@router.get("", response_model=list[ScheduleOut])
async def list_schedules(services: Services = Depends(get_services), active_only: bool = False) -> list[ScheduleOut]:
    try:
        schedules = await services.repository.list_schedules(active_only=active_only)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [schedule.to_out() for schedule in schedules]


@router.get("/{schedule_id}", response_model=ScheduleOut)
async def get_schedule(schedule_id: str, services: Services = Depends(get_services)) -> ScheduleOut:
    try:
        schedule = await services.repository.get_schedule(schedule_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return schedule.to_out()


@router.delete("/{schedule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_schedule(schedule_id: str, services: Services = Depends(get_services)) -> Response:
    services.scheduler.remove_schedule(schedule_id)
    try:
        deleted = await services.repository.delete_schedule(schedule_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="schedule not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{schedule_id}/run", response_model=SubmissionOut)
async def run_schedule(schedule_id: str, services: Services = Depends(get_services)) -> SubmissionOut:
    try:
        result = await services.scheduler.run_schedule_now(schedule_id)
    except ScheduleNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if result is None:
        return SubmissionOut(success=False, status="failed", message="schedule ran but no job could be submitted")
    return result.to_out()
