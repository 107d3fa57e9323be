from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from harvester.api.deps import get_owner_id, get_services
from harvester.schemas.jobs import JobOut, JobStatus, ScrapeJobRequest, SubmissionOut
from harvester.services.container import Services
from harvester.services.repository import RepositoryNotFoundError, RepositoryUnavailableError
from harvester.services.submissions import SubmissionValidationError

router = APIRouter()


@router.post("", response_model=SubmissionOut, status_code=status.HTTP_202_ACCEPTED)
async def submit_job(
    payload: ScrapeJobRequest,
    response: Response,
    services: Services = Depends(get_services),
    owner_id: str | None = Depends(get_owner_id),
) -> SubmissionOut:
    try:
        result = await services.submissions.submit(
            payload.queries,
            payload.job_config(),
            owner_id=owner_id,
            metadata=payload.metadata,
        )
    except SubmissionValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if result.skipped:
        response.status_code = status.HTTP_200_OK
    return result.to_out()


@router.get("", response_model=list[JobOut])
async def list_jobs(
    services: Services = Depends(get_services),
    job_status: JobStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        jobs = await services.repository.list_jobs(status=job_status, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [job.to_out() for job in jobs]


@router.get("/{job_id}", response_model=JobOut)
async def get_job(job_id: str, services: Services = Depends(get_services)) -> JobOut:
    try:
        job = await services.repository.get_job(job_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return job.to_out()
