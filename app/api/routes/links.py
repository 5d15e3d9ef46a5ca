from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.errors import http_error
from app.core.security import get_operator_principal
from app.core.urls import is_http_url
from app.schemas.series import LinkCreateRequest, LinkOut
from app.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.get("", response_model=list[LinkOut])
async def list_links(
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    source_id: str | None = Query(default=None, min_length=1),
    series_id: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[LinkOut]:
    try:
        records = await repository.list_links(source_id=source_id, series_id=series_id, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [LinkOut.model_validate(record) for record in records]


@router.post("", response_model=LinkOut, status_code=status.HTTP_201_CREATED)
async def create_link(
    payload: LinkCreateRequest,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> LinkOut:
    # An empty URL is allowed; the sync falls back to the series website.
    if payload.url.strip() and not is_http_url(payload.url):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="url must be an http(s) URL")
    try:
        record = await repository.create_link(
            series_id=payload.series_id,
            source_id=payload.source_id,
            url=payload.url,
            is_primary=payload.is_primary,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return LinkOut.model_validate(record)
