from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.errors import http_error
from app.core.auth import Principal
from app.core.dates import normalize_date
from app.core.security import get_operator_principal
from app.core.urls import resolve_url
from app.schemas.review import (
    CorrectionOut,
    CorrectionRequest,
    SnapshotOut,
    SnapshotStatus,
    SnapshotStatusPatchRequest,
    SnapshotSummaryOut,
)
from app.services.merge import MergeConflict, MergeSource, plan_edition_merge
from app.services.records import EditionFields
from app.services.repository import RepositoryError, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = {"processed", "ignored"}


@router.get("", response_model=list[SnapshotSummaryOut])
async def list_snapshots(
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    snapshot_status: SnapshotStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[SnapshotSummaryOut]:
    try:
        rows = await repository.list_raw_snapshots(status=snapshot_status, limit=limit, offset=offset)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return [SnapshotSummaryOut(**row) for row in rows]


@router.get("/{snapshot_id}", response_model=SnapshotOut)
async def get_snapshot(
    snapshot_id: str,
    _principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> SnapshotOut:
    try:
        row = await repository.get_raw_snapshot(snapshot_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SnapshotOut(**row)


@router.patch("/{snapshot_id}", response_model=SnapshotSummaryOut)
async def patch_snapshot_status(
    snapshot_id: str,
    payload: SnapshotStatusPatchRequest,
    principal: Principal = Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> SnapshotSummaryOut:
    review = {"by": principal.subject, "status": payload.status, "note": payload.note}
    try:
        row = await repository.update_raw_snapshot(
            snapshot_id,
            status=payload.status,
            metadata={"review": review},
            processed_at=datetime.now(timezone.utc),
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc
    return SnapshotSummaryOut(**row)


@router.post("/{snapshot_id}/corrections", response_model=CorrectionOut)
async def submit_correction(
    snapshot_id: str,
    payload: CorrectionRequest,
    principal: Principal = Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> CorrectionOut:
    try:
        snapshot = await repository.get_raw_snapshot(snapshot_id)
    except RepositoryError as exc:
        raise http_error(exc) from exc

    if snapshot["status"] in _TERMINAL_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"snapshot is already {snapshot['status']}",
        )

    race_date = None
    if payload.race_date:
        race_date = normalize_date(payload.race_date)
        if race_date is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail="race_date is not a valid date")
    year = payload.year or (int(race_date[:4]) if race_date else _merged_year(snapshot["metadata"]))
    if year is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="year is required when race_date is not supplied",
        )

    registration_url = (
        resolve_url(payload.registration_url, snapshot["source_url"]) if payload.registration_url else None
    )
    incoming = EditionFields(
        race_date=race_date,
        registration_status=(payload.registration_status or "").strip() or None,
        registration_url=registration_url,
    )
    source = MergeSource(source_id=principal.manual_source_id, source_type="manual", priority=0)

    now = datetime.now(timezone.utc)
    try:
        existing = await repository.get_edition(snapshot["series_id"], year)
        planned = plan_edition_merge(existing=existing, year=year, incoming=incoming, source=source, now=now)
        if planned.conflicts:
            raise _rejected_correction(snapshot_id, planned.conflicts)
        merge = await repository.upsert_edition_with_merge(
            series_id=snapshot["series_id"],
            year=year,
            incoming=incoming,
            source=source,
            now=now,
        )
        if merge.conflicts:
            raise _rejected_correction(snapshot_id, merge.conflicts)
        correction = {
            "by": principal.subject,
            "note": payload.note,
            "merge": merge.to_json(),
        }
        if snapshot["status"] == "failed":
            await repository.update_raw_snapshot(snapshot_id, status="needs_review")
        row = await repository.update_raw_snapshot(
            snapshot_id,
            status="processed",
            metadata={"correction": correction},
            processed_at=now,
        )
    except RepositoryError as exc:
        raise http_error(exc) from exc

    logger.info(
        "manual correction applied snapshot_id=%s year=%s action=%s by=%s",
        snapshot_id,
        year,
        merge.action,
        principal.subject,
    )
    return CorrectionOut(snapshot=SnapshotSummaryOut(**row), merge=merge.to_json())


def _rejected_correction(snapshot_id: str, conflicts: list[MergeConflict]) -> HTTPException:
    # Manual values share one rank, so a stored manual value can only be matched, never replaced.
    logger.warning(
        "manual correction rejected snapshot_id=%s fields=%s",
        snapshot_id,
        ",".join(conflict.field for conflict in conflicts),
    )
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={
            "message": "correction conflicts with a stored manual value",
            "conflicts": [conflict.to_json() for conflict in conflicts],
        },
    )


def _merged_year(metadata: dict) -> int | None:
    merge = metadata.get("merge") if isinstance(metadata, dict) else None
    year = merge.get("year") if isinstance(merge, dict) else None
    return year if isinstance(year, int) else None
