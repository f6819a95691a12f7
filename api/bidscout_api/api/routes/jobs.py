from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from bidscout_api.core.security import get_machine_principal
from bidscout_api.schemas.jobs import EnqueueRunRequest, JobOut
from bidscout_api.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[JobOut])
async def get_jobs(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=500),
) -> list[JobOut]:
    try:
        principal.require_scopes({"jobs:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        jobs = await repository.list_jobs(status=status_filter, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return [JobOut(**job) for job in jobs]


@router.post("", response_model=JobOut)
async def enqueue_job(
    payload: EnqueueRunRequest,
    response: Response,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
) -> JobOut:
    try:
        principal.require_scopes({"jobs:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job, created = await repository.enqueue_ingest_run(
            source=payload.source,
            external_run_id=payload.external_run_id,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return JobOut(**job)
