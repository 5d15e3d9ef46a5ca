from fastapi import APIRouter, Depends, Query, status

from app.api.errors import http_error
from app.core.security import get_operator_principal
from app.schemas.sources import SourceCreateRequest, SourceOut, SourcePatchRequest
from app.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.get("", response_model=list[SourceOut])
async def list_sources(
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[SourceOut]:
    try:
        records = await repository.list_sources(limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [SourceOut.model_validate(record) for record in records]


@router.post("", response_model=SourceOut, status_code=status.HTTP_201_CREATED)
async def create_source(
    payload: SourceCreateRequest,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> SourceOut:
    try:
        record = await repository.create_source(**payload.model_dump())
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SourceOut.model_validate(record)


@router.patch("/{source_id}", response_model=SourceOut)
async def patch_source(
    source_id: str,
    payload: SourcePatchRequest,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> SourceOut:
    # Only fields the caller sent are changed; an explicit null clears extraction_config.
    changes = payload.model_dump(exclude_unset=True)
    try:
        record = await repository.update_source(source_id, changes)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SourceOut.model_validate(record)
