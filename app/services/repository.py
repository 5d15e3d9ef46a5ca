from __future__ import annotations

import json
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from app.core.config import get_settings
from app.services.extraction_config import ExtractionConfigError, dump_extraction_config, parse_extraction_config
from app.services.merge import MergeResult, MergeSource, plan_edition_merge
from app.services.records import (
    SOURCE_STRATEGIES,
    SOURCE_TYPES,
    EditionFields,
    EditionRecord,
    EventSeriesRecord,
    FieldSources,
    LinkRecord,
    SourceRecord,
)

if TYPE_CHECKING:
    from app.services.locks import SchedulerLock


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


SYNC_RUN_STATUSES = {"running", "retrying", "success", "failed"}
SYNC_RUN_TRANSITIONS: dict[str, set[str]] = {
    "running": {"retrying", "success", "failed"},
    "retrying": {"retrying", "success", "failed"},
    "success": set(),
    "failed": set(),
}
SNAPSHOT_STATUSES = {"pending", "needs_review", "processed", "ignored", "failed"}
SNAPSHOT_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"needs_review", "processed", "ignored", "failed"},
    "needs_review": {"processed", "ignored"},
    "failed": {"needs_review", "ignored"},
    "processed": set(),
    "ignored": set(),
}
SOURCE_MUTABLE_FIELDS = {
    "name",
    "type",
    "strategy",
    "base_url",
    "priority",
    "is_active",
    "retry_max",
    "retry_backoff_seconds",
    "request_timeout_ms",
    "min_interval_seconds",
    "extraction_config",
    "notes",
}
SOURCE_NULLABLE_FIELDS = {"base_url", "extraction_config", "notes"}


def validate_sync_run_transition(*, from_status: str, to_status: str) -> None:
    if to_status not in SYNC_RUN_STATUSES:
        raise RepositoryValidationError(f"unsupported sync run status: {to_status}")
    if to_status not in SYNC_RUN_TRANSITIONS.get(from_status, set()):
        raise RepositoryConflictError(f"invalid sync run transition: {from_status} -> {to_status}")


def validate_snapshot_transition(*, from_status: str, to_status: str) -> None:
    if to_status not in SNAPSHOT_STATUSES:
        raise RepositoryValidationError(f"unsupported snapshot status: {to_status}")
    if to_status not in SNAPSHOT_TRANSITIONS.get(from_status, set()):
        raise RepositoryConflictError(f"invalid snapshot transition: {from_status} -> {to_status}")


def normalize_source_fields(fields: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    """Validate source attributes shared by both repository backends."""
    unknown = sorted(set(fields) - SOURCE_MUTABLE_FIELDS)
    if unknown:
        raise RepositoryValidationError(f"unsupported source fields: {', '.join(unknown)}")

    normalized = dict(fields)
    cleared = sorted(key for key, value in normalized.items() if value is None and key not in SOURCE_NULLABLE_FIELDS)
    if cleared:
        raise RepositoryValidationError(f"fields cannot be null: {', '.join(cleared)}")
    if not partial or "name" in normalized:
        name = normalized.get("name")
        if not isinstance(name, str) or not name.strip():
            raise RepositoryValidationError("name must be a non-empty string")
        normalized["name"] = name.strip()
    if "type" in normalized and normalized["type"] not in SOURCE_TYPES:
        raise RepositoryValidationError(f"type must be one of: {', '.join(SOURCE_TYPES)}")
    if "strategy" in normalized and normalized["strategy"] not in SOURCE_STRATEGIES:
        raise RepositoryValidationError(f"strategy must be one of: {', '.join(SOURCE_STRATEGIES)}")
    if "retry_max" in normalized and int(normalized["retry_max"]) < 1:
        raise RepositoryValidationError("retry_max must be at least 1")
    for key in ("retry_backoff_seconds", "min_interval_seconds"):
        if key in normalized and int(normalized[key]) < 0:
            raise RepositoryValidationError(f"{key} must not be negative")
    if "request_timeout_ms" in normalized and int(normalized["request_timeout_ms"]) <= 0:
        raise RepositoryValidationError("request_timeout_ms must be positive")
    if "extraction_config" in normalized:
        try:
            config = parse_extraction_config(normalized["extraction_config"])
        except ExtractionConfigError as exc:
            raise RepositoryValidationError(f"extraction_config: {exc}") from exc
        normalized["extraction_config"] = dump_extraction_config(config)
    return normalized


_SOURCE_COLUMNS = """
  id::text as id,
  name,
  type,
  strategy,
  base_url,
  priority,
  is_active,
  retry_max,
  retry_backoff_seconds,
  request_timeout_ms,
  min_interval_seconds,
  extraction_config,
  notes,
  last_run_at
"""

_LINK_COLUMNS = """
  l.id::text as id,
  l.series_id::text as series_id,
  l.source_id::text as source_id,
  l.url,
  l.is_primary,
  l.last_hash,
  l.last_http_status,
  l.last_error,
  l.last_checked_at,
  l.next_check_at,
  l.created_at,
  s.website_url as series_website_url
"""

_EDITION_COLUMNS = """
  id::text as id,
  series_id::text as series_id,
  year,
  race_date,
  registration_status,
  registration_url,
  field_sources,
  last_synced_at
"""

_RUN_COLUMNS = """
  id::text as id,
  series_id::text as series_id,
  source_id::text as source_id,
  link_id::text as link_id,
  status,
  strategy_used,
  attempt,
  message,
  error_message,
  new_count,
  updated_count,
  unchanged_count,
  started_at,
  finished_at
"""

_SNAPSHOT_COLUMNS = """
  id::text as id,
  series_id::text as series_id,
  source_id::text as source_id,
  link_id::text as link_id,
  source_url,
  content_type,
  http_status,
  raw_content,
  content_hash,
  metadata,
  status,
  fetched_at,
  processed_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def create_scheduler_lock(self, key: int) -> SchedulerLock:
        from app.services.locks import PostgresAdvisoryLock

        return PostgresAdvisoryLock(pool_factory=self._get_pool, key=key)

    async def list_active_sources(self) -> list[SourceRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SOURCE_COLUMNS}
            from sources
            where is_active = true
            order by priority desc, name asc
            """
        )
        return [self._source_row_to_record(row) for row in rows]

    async def list_sources(self, *, limit: int = 100, offset: int = 0) -> list[SourceRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SOURCE_COLUMNS}
            from sources
            order by priority desc, name asc
            limit $1 offset $2
            """,
            limit,
            offset,
        )
        return [self._source_row_to_record(row) for row in rows]

    async def get_source(self, source_id: str) -> SourceRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_SOURCE_COLUMNS} from sources where id = $1::uuid", source_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        if not row:
            raise RepositoryNotFoundError("source not found")
        return self._source_row_to_record(row)

    async def create_source(self, **fields: Any) -> SourceRecord:
        normalized = normalize_source_fields(fields, partial=False)
        columns = sorted(normalized)
        placeholders = [self._placeholder(column, index) for index, column in enumerate(columns, start=1)]
        values = [self._encode_source_value(column, normalized[column]) for column in columns]
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into sources ({", ".join(columns)})
                values ({", ".join(placeholders)})
                returning {_SOURCE_COLUMNS}
                """,
                *values,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("source name already exists") from exc
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return self._source_row_to_record(row)

    async def update_source(self, source_id: str, changes: dict[str, Any]) -> SourceRecord:
        normalized = normalize_source_fields(changes, partial=True)
        if not normalized:
            return await self.get_source(source_id)
        columns = sorted(normalized)
        assignments = [
            f"{column} = {self._placeholder(column, index)}" for index, column in enumerate(columns, start=2)
        ]
        values = [self._encode_source_value(column, normalized[column]) for column in columns]
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update sources
                set {", ".join(assignments)}, updated_at = now()
                where id = $1::uuid
                returning {_SOURCE_COLUMNS}
                """,
                source_id,
                *values,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("source name already exists") from exc
        except pg_exc.CheckViolationError as exc:
            raise RepositoryValidationError(str(exc)) from exc
        if not row:
            raise RepositoryNotFoundError("source not found")
        return self._source_row_to_record(row)

    async def mark_source_run(self, source_id: str, *, at: datetime) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update sources set last_run_at = $2, updated_at = $2 where id = $1::uuid",
            source_id,
            at,
        )

    async def create_series(self, *, name: str, canonical_name: str, website_url: str | None = None) -> EventSeriesRecord:
        if not name.strip() or not canonical_name.strip():
            raise RepositoryValidationError("name and canonical_name must be non-empty")
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                insert into event_series (name, canonical_name, website_url)
                values ($1, $2, $3)
                returning id::text as id, name, canonical_name, website_url
                """,
                name.strip(),
                canonical_name.strip(),
                website_url,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("series canonical_name already exists") from exc
        return EventSeriesRecord(**dict(row))

    async def get_series(self, series_id: str) -> EventSeriesRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                "select id::text as id, name, canonical_name, website_url from event_series where id = $1::uuid",
                series_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("series not found") from exc
        if not row:
            raise RepositoryNotFoundError("series not found")
        return EventSeriesRecord(**dict(row))

    async def create_link(self, *, series_id: str, source_id: str, url: str, is_primary: bool = False) -> LinkRecord:
        pool = await self._get_pool()
        try:
            link_id = await pool.fetchval(
                """
                insert into links (series_id, source_id, url, is_primary)
                values ($1::uuid, $2::uuid, $3, $4)
                returning id::text
                """,
                series_id,
                source_id,
                url.strip(),
                is_primary,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("link already exists for series and source") from exc
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("series or source not found") from exc
        return await self.get_link(link_id)

    async def get_link(self, link_id: str) -> LinkRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                select {_LINK_COLUMNS}
                from links l
                join event_series s on s.id = l.series_id
                where l.id = $1::uuid
                """,
                link_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("link not found") from exc
        if not row:
            raise RepositoryNotFoundError("link not found")
        return LinkRecord(**dict(row))

    async def list_links(
        self,
        *,
        source_id: str | None = None,
        series_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LinkRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_LINK_COLUMNS}
            from links l
            join event_series s on s.id = l.series_id
            where ($1::uuid is null or l.source_id = $1::uuid)
              and ($2::uuid is null or l.series_id = $2::uuid)
            order by l.is_primary desc, l.created_at asc
            limit $3 offset $4
            """,
            source_id,
            series_id,
            limit,
            offset,
        )
        return [LinkRecord(**dict(row)) for row in rows]

    async def list_due_links(self, source_id: str, *, now: datetime) -> list[LinkRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_LINK_COLUMNS}
            from links l
            join event_series s on s.id = l.series_id
            where l.source_id = $1::uuid
              and (l.next_check_at is null or l.next_check_at <= $2)
            order by l.is_primary desc, l.created_at asc
            """,
            source_id,
            now,
        )
        return [LinkRecord(**dict(row)) for row in rows]

    async def record_link_success(
        self,
        link_id: str,
        *,
        checked_at: datetime,
        content_hash: str,
        http_status: int,
        next_check_at: datetime | None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update links
            set
              last_checked_at = $2,
              last_hash = $3,
              last_http_status = $4,
              last_error = null,
              next_check_at = $5
            where id = $1::uuid
            """,
            link_id,
            checked_at,
            content_hash,
            http_status,
            next_check_at,
        )

    async def record_link_failure(
        self,
        link_id: str,
        *,
        checked_at: datetime,
        error: str,
        next_check_at: datetime | None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update links
            set
              last_checked_at = $2,
              last_http_status = null,
              last_error = $3,
              next_check_at = $4
            where id = $1::uuid
            """,
            link_id,
            checked_at,
            error,
            next_check_at,
        )

    async def create_sync_run(
        self,
        *,
        series_id: str,
        source_id: str,
        link_id: str | None,
        strategy: str,
        started_at: datetime,
    ) -> str:
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into sync_runs (series_id, source_id, link_id, status, strategy_used, attempt, started_at)
            values ($1::uuid, $2::uuid, $3::uuid, 'running', $4, 1, $5)
            returning id::text
            """,
            series_id,
            source_id,
            link_id,
            strategy,
            started_at,
        )

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchval("select status from sync_runs where id = $1::uuid for update", run_id)
                if current is None:
                    raise RepositoryNotFoundError("sync run not found")
                validate_sync_run_transition(from_status=current, to_status=status)
                row = await conn.fetchrow(
                    f"""
                    update sync_runs
                    set
                      status = $2,
                      attempt = $3,
                      message = coalesce($4, message),
                      error_message = coalesce($5, error_message),
                      new_count = coalesce($6, new_count),
                      updated_count = coalesce($7, updated_count),
                      unchanged_count = coalesce($8, unchanged_count),
                      finished_at = coalesce($9, finished_at)
                    where id = $1::uuid
                    returning {_RUN_COLUMNS}
                    """,
                    run_id,
                    status,
                    attempt,
                    message,
                    error_message,
                    new_count,
                    updated_count,
                    unchanged_count,
                    finished_at,
                )
        return dict(row)

    async def get_sync_run(self, run_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_RUN_COLUMNS} from sync_runs where id = $1::uuid", run_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("sync run not found") from exc
        if not row:
            raise RepositoryNotFoundError("sync run not found")
        return dict(row)

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
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_RUN_COLUMNS}
            from sync_runs
            where ($1::text is null or status = $1)
              and ($2::uuid is null or link_id = $2::uuid)
            order by started_at desc
            limit $3 offset $4
            """,
            status,
            link_id,
            limit,
            offset,
        )
        return [dict(row) for row in rows]

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
        pool = await self._get_pool()
        return await pool.fetchval(
            """
            insert into raw_snapshots (
              series_id, source_id, link_id, source_url, content_type, http_status,
              raw_content, content_hash, metadata, status, fetched_at
            )
            values ($1::uuid, $2::uuid, $3::uuid, $4, $5, $6, $7, $8, $9::jsonb, 'pending', $10)
            returning id::text
            """,
            series_id,
            source_id,
            link_id,
            source_url,
            content_type,
            http_status,
            raw_content,
            content_hash,
            json.dumps(metadata),
            fetched_at,
        )

    async def update_raw_snapshot(
        self,
        snapshot_id: str,
        *,
        status: str,
        metadata: dict[str, Any] | None = None,
        processed_at: datetime | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await conn.fetchrow(
                        "select status, metadata from raw_snapshots where id = $1::uuid for update",
                        snapshot_id,
                    )
                    if current is None:
                        raise RepositoryNotFoundError("snapshot not found")
                    validate_snapshot_transition(from_status=current["status"], to_status=status)
                    merged = self._coerce_json_dict(current["metadata"])
                    if metadata:
                        merged.update(metadata)
                    row = await conn.fetchrow(
                        f"""
                        update raw_snapshots
                        set status = $2, metadata = $3::jsonb, processed_at = coalesce($4, processed_at)
                        where id = $1::uuid
                        returning {_SNAPSHOT_COLUMNS}
                        """,
                        snapshot_id,
                        status,
                        json.dumps(merged),
                        processed_at,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("snapshot not found") from exc
        return self._snapshot_row_to_dict(row)

    async def get_raw_snapshot(self, snapshot_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_SNAPSHOT_COLUMNS} from raw_snapshots where id = $1::uuid", snapshot_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("snapshot not found") from exc
        if not row:
            raise RepositoryNotFoundError("snapshot not found")
        return self._snapshot_row_to_dict(row)

    async def list_raw_snapshots(
        self,
        *,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        if status is not None and status not in SNAPSHOT_STATUSES:
            raise RepositoryValidationError(f"unsupported snapshot status: {status}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SNAPSHOT_COLUMNS}
            from raw_snapshots
            where ($1::text is null or status = $1)
            order by fetched_at desc
            limit $2 offset $3
            """,
            status,
            limit,
            offset,
        )
        return [self._snapshot_row_to_dict(row) for row in rows]

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await self._lock_edition(conn, series_id, year)
                plan = plan_edition_merge(
                    existing=existing,
                    year=year,
                    incoming=incoming,
                    source=source,
                    now=current_time,
                )

                edition_id: str | None = None
                if existing is None:
                    edition_id = await conn.fetchval(
                        """
                        insert into editions (
                          series_id, year, race_date, registration_status, registration_url,
                          field_sources, last_synced_at, updated_at
                        )
                        values ($1::uuid, $2, $3, $4, $5, $6::jsonb, $7, $7)
                        on conflict (series_id, year) do nothing
                        returning id::text
                        """,
                        series_id,
                        year,
                        self._to_date(plan.fields.race_date),
                        plan.fields.registration_status,
                        plan.fields.registration_url,
                        self._encode_field_sources(plan.field_sources),
                        current_time,
                    )
                    if edition_id is None:
                        # A concurrent writer created the row first; merge against it.
                        existing = await self._lock_edition(conn, series_id, year)
                        if existing is None:
                            raise RepositoryConflictError("edition was inserted concurrently")
                        plan = plan_edition_merge(
                            existing=existing,
                            year=year,
                            incoming=incoming,
                            source=source,
                            now=current_time,
                        )

                if edition_id is None and existing is not None:
                    edition_id = existing.id
                    await conn.execute(
                        """
                        update editions
                        set
                          race_date = $2,
                          registration_status = $3,
                          registration_url = $4,
                          field_sources = $5::jsonb,
                          last_synced_at = $6,
                          updated_at = $6
                        where id = $1::uuid
                        """,
                        edition_id,
                        self._to_date(plan.fields.race_date),
                        plan.fields.registration_status,
                        plan.fields.registration_url,
                        self._encode_field_sources(plan.field_sources),
                        current_time,
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
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_EDITION_COLUMNS}
            from editions
            where series_id = $1::uuid and year = $2
            """,
            series_id,
            year,
        )
        return self._edition_row_to_record(row) if row else None

    async def list_editions(self, series_id: str) -> list[EditionRecord]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {_EDITION_COLUMNS}
                from editions
                where series_id = $1::uuid
                order by year desc
                """,
                series_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("series not found") from exc
        return [self._edition_row_to_record(row) for row in rows]

    async def _lock_edition(self, conn: asyncpg.Connection, series_id: str, year: int) -> EditionRecord | None:
        row = await conn.fetchrow(
            f"""
            select {_EDITION_COLUMNS}
            from editions
            where series_id = $1::uuid and year = $2
            for update
            """,
            series_id,
            year,
        )
        return self._edition_row_to_record(row) if row else None

    @staticmethod
    def _encode_field_sources(field_sources: FieldSources) -> str | None:
        payload = field_sources.to_json()
        return json.dumps(payload) if payload else None

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RACESYNC_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _placeholder(column: str, index: int) -> str:
        return f"${index}::jsonb" if column == "extraction_config" else f"${index}"

    @staticmethod
    def _encode_source_value(column: str, value: Any) -> Any:
        if column == "extraction_config":
            return json.dumps(value) if value is not None else None
        return value

    def _source_row_to_record(self, row: asyncpg.Record) -> SourceRecord:
        payload = dict(row)
        config = payload.get("extraction_config")
        payload["extraction_config"] = self._coerce_json_dict(config) or None
        return SourceRecord(**payload)

    def _edition_row_to_record(self, row: asyncpg.Record) -> EditionRecord:
        race_date = row["race_date"]
        return EditionRecord(
            id=row["id"],
            series_id=row["series_id"],
            year=row["year"],
            fields=EditionFields(
                race_date=race_date.isoformat() if isinstance(race_date, date) else race_date,
                registration_status=row["registration_status"],
                registration_url=row["registration_url"],
            ),
            field_sources=FieldSources.from_json(self._coerce_json_dict(row["field_sources"])),
            last_synced_at=row["last_synced_at"],
        )

    def _snapshot_row_to_dict(self, row: asyncpg.Record) -> dict[str, Any]:
        payload = dict(row)
        payload["metadata"] = self._coerce_json_dict(payload.get("metadata"))
        return payload

    @staticmethod
    def _to_date(value: str | None) -> date | None:
        if not value:
            return None
        return date.fromisoformat(value)

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from app.services.store import InMemoryRepository

        return InMemoryRepository()  # type: ignore[return-value]
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
