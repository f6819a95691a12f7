import logging

from fastapi import APIRouter, Depends, HTTPException, status

from bidscout_api.core.security import get_ingest_principal
from bidscout_api.schemas.ingest import StubBatchIn, StubBatchOut
from bidscout_api.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from bidscout_api.services.stubs import partition_stubs

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{source}/stubs", response_model=StubBatchOut)
async def ingest_stubs(
    source: str,
    payload: StubBatchIn,
    principal=Depends(get_ingest_principal),
    repository=Depends(get_repository),
) -> StubBatchOut:
    try:
        principal.require_scopes({"ingest:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    stubs, exceptions = partition_stubs(payload.items)
    try:
        result = await repository.upsert_stub_batch(source=source, stubs=stubs, exceptions=exceptions)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc

    logger.info(
        "stub batch ingested source=%s created=%s updated=%s exceptions=%s",
        source,
        result.created,
        result.updated,
        result.exceptions,
    )
    return StubBatchOut(created=result.created, updated=result.updated, exceptions=result.exceptions)
