from fastapi import APIRouter, Depends, status

from app.api.errors import http_error
from app.core.security import get_operator_principal
from app.schemas.series import EditionOut, SeriesCreateRequest, SeriesOut
from app.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.post("", response_model=SeriesOut, status_code=status.HTTP_201_CREATED)
async def create_series(
    payload: SeriesCreateRequest,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> SeriesOut:
    try:
        record = await repository.create_series(
            name=payload.name,
            canonical_name=payload.canonical_name,
            website_url=payload.website_url,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SeriesOut.model_validate(record)


@router.get("/{series_id}/editions", response_model=list[EditionOut])
async def list_series_editions(
    series_id: str,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> list[EditionOut]:
    try:
        await repository.get_series(series_id)
        records = await repository.list_editions(series_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [EditionOut.from_record(record) for record in records]
