from __future__ import annotations

import asyncio
from copy import deepcopy
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from app.services.locks import InMemoryLock, SchedulerLock
from app.services.merge import MergeResult, MergeSource, plan_edition_merge
from app.services.records import EditionFields, EditionRecord, EventSeriesRecord, LinkRecord, SourceRecord
from app.services.repository import (
    SNAPSHOT_STATUSES,
    SYNC_RUN_STATUSES,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    normalize_source_fields,
    validate_snapshot_transition,
    validate_sync_run_transition,
)


class InMemoryRepository:
    """Process-local repository used by tests and `RACESYNC_STORAGE_BACKEND=memory` runs."""

    def __init__(self) -> None:
        self.sources: dict[str, SourceRecord] = {}
        self.series: dict[str, EventSeriesRecord] = {}
        self.links: dict[str, LinkRecord] = {}
        self.sync_runs: dict[str, dict[str, Any]] = {}
        self.snapshots: dict[str, dict[str, Any]] = {}
        self.editions: dict[tuple[str, int], EditionRecord] = {}
        self._edition_lock = asyncio.Lock()
        self._locks: dict[int, InMemoryLock] = {}
        self._link_order: dict[str, int] = {}

    async def close(self) -> None:
        return None

    def create_scheduler_lock(self, key: int) -> SchedulerLock:
        return self._locks.setdefault(key, InMemoryLock())

    async def list_active_sources(self) -> list[SourceRecord]:
        active = [source for source in self.sources.values() if source.is_active]
        return sorted(active, key=lambda source: (-source.priority, source.name))

    async def list_sources(self, *, limit: int = 100, offset: int = 0) -> list[SourceRecord]:
        ordered = sorted(self.sources.values(), key=lambda source: (-source.priority, source.name))
        return ordered[offset : offset + limit]

    async def get_source(self, source_id: str) -> SourceRecord:
        source = self.sources.get(source_id)
        if source is None:
            raise RepositoryNotFoundError("source not found")
        return source

    async def create_source(self, **fields: Any) -> SourceRecord:
        normalized = normalize_source_fields(fields, partial=False)
        self._ensure_unique_source_name(normalized["name"])
        source = SourceRecord(id=str(uuid4()), **normalized)
        self.sources[source.id] = source
        return source

    async def update_source(self, source_id: str, changes: dict[str, Any]) -> SourceRecord:
        source = await self.get_source(source_id)
        normalized = normalize_source_fields(changes, partial=True)
        if "name" in normalized and normalized["name"] != source.name:
            self._ensure_unique_source_name(normalized["name"])
        updated = replace(source, **normalized)
        self.sources[source_id] = updated
        return updated

    async def mark_source_run(self, source_id: str, *, at: datetime) -> None:
        source = self.sources.get(source_id)
        if source is not None:
            source.last_run_at = at

    async def create_series(self, *, name: str, canonical_name: str, website_url: str | None = None) -> EventSeriesRecord:
        if not name.strip() or not canonical_name.strip():
            raise RepositoryValidationError("name and canonical_name must be non-empty")
        if any(series.canonical_name == canonical_name.strip() for series in self.series.values()):
            raise RepositoryConflictError("series canonical_name already exists")
        series = EventSeriesRecord(
            id=str(uuid4()),
            name=name.strip(),
            canonical_name=canonical_name.strip(),
            website_url=website_url,
        )
        self.series[series.id] = series
        return series

    async def get_series(self, series_id: str) -> EventSeriesRecord:
        series = self.series.get(series_id)
        if series is None:
            raise RepositoryNotFoundError("series not found")
        return series

    async def create_link(self, *, series_id: str, source_id: str, url: str, is_primary: bool = False) -> LinkRecord:
        if series_id not in self.series or source_id not in self.sources:
            raise RepositoryNotFoundError("series or source not found")
        if any(link.series_id == series_id and link.source_id == source_id for link in self.links.values()):
            raise RepositoryConflictError("link already exists for series and source")
        link = LinkRecord(
            id=str(uuid4()),
            series_id=series_id,
            source_id=source_id,
            url=url.strip(),
            is_primary=is_primary,
            created_at=datetime.now(timezone.utc),
        )
        self.links[link.id] = link
        self._link_order[link.id] = len(self._link_order)
        return await self.get_link(link.id)

    async def get_link(self, link_id: str) -> LinkRecord:
        link = self.links.get(link_id)
        if link is None:
            raise RepositoryNotFoundError("link not found")
        series = self.series.get(link.series_id)
        return replace(link, series_website_url=series.website_url if series else None)

    async def list_links(
        self,
        *,
        source_id: str | None = None,
        series_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LinkRecord]:
        matched = [
            await self.get_link(link.id)
            for link in self._ordered_links()
            if (source_id is None or link.source_id == source_id)
            and (series_id is None or link.series_id == series_id)
        ]
        return matched[offset : offset + limit]

    async def list_due_links(self, source_id: str, *, now: datetime) -> list[LinkRecord]:
        return [
            await self.get_link(link.id)
            for link in self._ordered_links()
            if link.source_id == source_id and link.is_due(now)
        ]

    async def record_link_success(
        self,
        link_id: str,
        *,
        checked_at: datetime,
        content_hash: str,
        http_status: int,
        next_check_at: datetime | None,
    ) -> None:
        link = self.links[link_id]
        link.last_checked_at = checked_at
        link.last_hash = content_hash
        link.last_http_status = http_status
        link.last_error = None
        link.next_check_at = next_check_at

    async def record_link_failure(
        self,
        link_id: str,
        *,
        checked_at: datetime,
        error: str,
        next_check_at: datetime | None,
    ) -> None:
        link = self.links[link_id]
        link.last_checked_at = checked_at
        link.last_http_status = None
        link.last_error = error
        link.next_check_at = next_check_at

    async def create_sync_run(
        self,
        *,
        series_id: str,
        source_id: str,
        link_id: str | None,
        strategy: str,
        started_at: datetime,
    ) -> str:
        run_id = str(uuid4())
        self.sync_runs[run_id] = {
            "id": run_id,
            "series_id": series_id,
            "source_id": source_id,
            "link_id": link_id,
            "status": "running",
            "strategy_used": strategy,
            "attempt": 1,
            "message": None,
            "error_message": None,
            "new_count": 0,
            "updated_count": 0,
            "unchanged_count": 0,
            "started_at": started_at,
            "finished_at": None,
        }
        return run_id

    async def transition_sync_run(
        self,
        run_id: str,
        *,
        status: str,
        attempt: int,
        message: str | None = None,
        error_message: str | None = None,
        new_count: int | None = None,
        updated_count: int | None = None,
        unchanged_count: int | None = None,
        finished_at: datetime | None = None,
    ) -> dict[str, Any]:
        run = self.sync_runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("sync run not found")
        validate_sync_run_transition(from_status=run["status"], to_status=status)
        run["status"] = status
        run["attempt"] = attempt
        for key, value in (
            ("message", message),
            ("error_message", error_message),
            ("new_count", new_count),
            ("updated_count", updated_count),
            ("unchanged_count", unchanged_count),
            ("finished_at", finished_at),
        ):
            if value is not None:
                run[key] = value
        return dict(run)

    async def get_sync_run(self, run_id: str) -> dict[str, Any]:
        run = self.sync_runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("sync run not found")
        return dict(run)

    async def list_sync_runs(
        self,
        *,
        status: str | None = None,
        link_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if status is not None and status not in SYNC_RUN_STATUSES:
            raise RepositoryValidationError(f"unsupported sync run status: {status}")
        runs = [
            dict(run)
            for run in self.sync_runs.values()
            if (status is None or run["status"] == status) and (link_id is None or run["link_id"] == link_id)
        ]
        runs.sort(key=lambda run: run["started_at"], reverse=True)
        return runs[offset : offset + limit]

    async def create_raw_snapshot(
        self,
        *,
        series_id: str,
        source_id: str,
        link_id: str | None,
        source_url: str,
        content_type: str | None,
        http_status: int,
        raw_content: str,
        content_hash: str,
        metadata: dict[str, Any],
        fetched_at: datetime,
    ) -> str:
        snapshot_id = str(uuid4())
        self.snapshots[snapshot_id] = {
            "id": snapshot_id,
            "series_id": series_id,
            "source_id": source_id,
            "link_id": link_id,
            "source_url": source_url,
            "content_type": content_type,
            "http_status": http_status,
            "raw_content": raw_content,
            "content_hash": content_hash,
            "metadata": deepcopy(metadata),
            "status": "pending",
            "fetched_at": fetched_at,
            "processed_at": None,
        }
        return snapshot_id

    async def update_raw_snapshot(
        self,
        snapshot_id: str,
        *,
        status: str,
        metadata: dict[str, Any] | None = None,
        processed_at: datetime | None = None,
    ) -> dict[str, Any]:
        snapshot = self.snapshots.get(snapshot_id)
        if snapshot is None:
            raise RepositoryNotFoundError("snapshot not found")
        validate_snapshot_transition(from_status=snapshot["status"], to_status=status)
        snapshot["status"] = status
        if metadata:
            snapshot["metadata"].update(deepcopy(metadata))
        if processed_at is not None:
            snapshot["processed_at"] = processed_at
        return deepcopy(snapshot)

    async def get_raw_snapshot(self, snapshot_id: str) -> dict[str, Any]:
        snapshot = self.snapshots.get(snapshot_id)
        if snapshot is None:
            raise RepositoryNotFoundError("snapshot not found")
        return deepcopy(snapshot)

    async def list_raw_snapshots(
        self,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if status is not None and status not in SNAPSHOT_STATUSES:
            raise RepositoryValidationError(f"unsupported snapshot status: {status}")
        snapshots = [
            deepcopy(snapshot)
            for snapshot in self.snapshots.values()
            if status is None or snapshot["status"] == status
        ]
        snapshots.sort(key=lambda snapshot: snapshot["fetched_at"], reverse=True)
        return snapshots[offset : offset + limit]

    async def upsert_edition_with_merge(
        self,
        *,
        series_id: str,
        year: int,
        incoming: EditionFields,
        source: MergeSource,
        now: datetime | None = None,
    ) -> MergeResult:
        current_time = now or datetime.now(timezone.utc)
        async with self._edition_lock:
            existing = self.editions.get((series_id, year))
            plan = plan_edition_merge(
                existing=existing,
                year=year,
                incoming=incoming,
                source=source,
                now=current_time,
            )
            edition_id = existing.id if existing is not None else str(uuid4())
            self.editions[(series_id, year)] = EditionRecord(
                id=edition_id,
                series_id=series_id,
                year=year,
                fields=plan.fields,
                field_sources=plan.field_sources,
                last_synced_at=current_time,
            )
        return MergeResult(
            edition_id=edition_id,
            action=plan.action,
            year=year,
            changed_fields=plan.changed_fields,
            conflicts=plan.conflicts,
            reasons=plan.reasons,
        )

    async def get_edition(self, series_id: str, year: int) -> EditionRecord | None:
        return self.editions.get((series_id, year))

    async def list_editions(self, series_id: str) -> list[EditionRecord]:
        matched = [edition for (owner, _), edition in self.editions.items() if owner == series_id]
        return sorted(matched, key=lambda edition: edition.year, reverse=True)

    def _ordered_links(self) -> list[LinkRecord]:
        # Insertion order stands in for created_at, which can tie within one clock tick.
        return sorted(self.links.values(), key=lambda link: (not link.is_primary, self._link_order[link.id]))

    def _ensure_unique_source_name(self, name: str) -> None:
        if any(source.name == name for source in self.sources.values()):
            raise RepositoryConflictError("source name already exists")
