from fastapi import APIRouter, Depends, Query

from app.api.errors import http_error
from app.core.security import get_operator_principal
from app.jobs.scheduler import get_scheduler
from app.schemas.sync import SyncRunOut, SyncRunStatus, SyncTriggerOut, SyncTriggerRequest
from app.services.repository import RepositoryError, get_repository

router = APIRouter()


@router.post("/sync", response_model=SyncTriggerOut)
async def trigger_sync(
    payload: SyncTriggerRequest | None = None,
    _principal=Depends(get_operator_principal),
    scheduler=Depends(get_scheduler),
) -> SyncTriggerOut:
    link_id = payload.link_id if payload is not None else None
    if link_id is None:
        pass_id, trigger_status = scheduler.trigger_all()
        return SyncTriggerOut(run_id=pass_id, status=trigger_status)

    try:
        outcome = await scheduler.trigger_link(link_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SyncTriggerOut(run_id=outcome.run_id, status=outcome.status)


@router.get("/sync-runs", response_model=list[SyncRunOut])
async def list_sync_runs(
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    run_status: SyncRunStatus | None = Query(default=None, alias="status"),
    link_id: str | None = Query(default=None, min_length=1),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SyncRunOut]:
    try:
        rows = await repository.list_sync_runs(status=run_status, link_id=link_id, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [SyncRunOut(**row) for row in rows]
