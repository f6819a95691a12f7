from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from bidscout_api.core.config import Settings, get_settings
from bidscout_api.core.security import get_machine_principal
from bidscout_api.schemas.matches import MatchingRunOut, MatchOut
from bidscout_api.services.alerts import get_alert_dispatcher
from bidscout_api.services.repository import (
    RepositoryConflictError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from bidscout_api.services.spec_matching import run_spec_matching

router = APIRouter()


@router.post("/matching/run", response_model=MatchingRunOut)
async def trigger_matching_run(
    background_tasks: BackgroundTasks,
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    dispatcher=Depends(get_alert_dispatcher),
    settings: Settings = Depends(get_settings),
) -> MatchingRunOut:
    try:
        principal.require_scopes({"matching:run"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        result = await run_spec_matching(repository, settings)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    if result.alerts:
        background_tasks.add_task(dispatcher.dispatch, result.alerts)
    return MatchingRunOut(**result.as_dict())


@router.get("/matches", response_model=list[MatchOut])
async def get_matches(
    principal=Depends(get_machine_principal),
    repository=Depends(get_repository),
    lane: str | None = Query(default=None),
    action: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
) -> list[MatchOut]:
    try:
        principal.require_scopes({"matches:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_matches(lane=lane, action=action, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return [MatchOut(**row) for row in rows]
