from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

import httpx
from opentelemetry import trace

from app.core.telemetry import sync_run_log_context
from app.services.extraction_config import load_extraction_config
from app.services.extractor import extract_edition
from app.services.fetcher import (
    DEFAULT_MAX_BODY_BYTES,
    DEFAULT_USER_AGENT,
    RETRYABLE_FETCH_ERRORS,
    FetchResult,
    content_hash,
    fetch_page,
    is_unchanged,
)
from app.services.merge import MergeResult, MergeSource
from app.services.records import LinkRecord, SourceRecord

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SyncStatus = Literal["success", "failed"]
Sleeper = Callable[[float], Awaitable[Any]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SyncCounts:
    new: int = 0
    updated: int = 0
    unchanged: int = 0


@dataclass(slots=True)
class SyncOutcome:
    run_id: str
    status: SyncStatus
    attempt: int
    snapshot_id: str | None = None
    unchanged: bool = False
    merge: MergeResult | None = None
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "attempt": self.attempt,
            "snapshot_id": self.snapshot_id,
            "unchanged": self.unchanged,
            "merge": self.merge.to_json() if self.merge else None,
            "error": self.error,
        }


async def sync_link_once(
    repository: Any,
    *,
    source: SourceRecord,
    link: LinkRecord,
    client: httpx.AsyncClient,
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
    user_agent: str = DEFAULT_USER_AGENT,
    sleep: Sleeper = asyncio.sleep,
    clock: Clock = _utcnow,
) -> SyncOutcome:
    """Fetch one link with retries, archive changed content, extract and merge into its edition.

    Transport failures are retried up to ``source.retry_max`` attempts with a linear
    backoff. Any other error while handling a fetched page fails the run at once.
    """
    with tracer.start_as_current_span("sync.link") as span:
        span.set_attribute("sync.link_id", link.id)
        span.set_attribute("sync.source_id", source.id)

        run_id = await repository.create_sync_run(
            series_id=link.series_id,
            source_id=source.id,
            link_id=link.id,
            strategy=source.strategy,
            started_at=clock(),
        )
        span.set_attribute("sync.run_id", run_id)
        with sync_run_log_context(run_id):
            return await _sync_run(
                repository,
                run_id=run_id,
                source=source,
                link=link,
                client=client,
                max_body_bytes=max_body_bytes,
                user_agent=user_agent,
                sleep=sleep,
                clock=clock,
                span=span,
            )


async def _sync_run(
    repository: Any,
    *,
    run_id: str,
    source: SourceRecord,
    link: LinkRecord,
    client: httpx.AsyncClient,
    max_body_bytes: int,
    user_agent: str,
    sleep: Sleeper,
    clock: Clock,
    span: Any,
) -> SyncOutcome:
    url = link.fetch_url
    if not url:
        message = "link has no URL and its series has no website"
        await repository.transition_sync_run(
            run_id,
            status="failed",
            attempt=1,
            message=message,
            error_message=message,
            finished_at=clock(),
        )
        logger.warning("sync skipped link_id=%s: %s", link.id, message)
        return SyncOutcome(run_id=run_id, status="failed", attempt=1, error=message)

    retry_max = max(1, source.retry_max)
    timeout_seconds = source.request_timeout_ms / 1000
    attempt = 0
    while True:
        attempt += 1
        try:
            with tracer.start_as_current_span("sync.fetch_attempt") as attempt_span:
                attempt_span.set_attribute("sync.attempt", attempt)
                result = await fetch_page(
                    client,
                    url,
                    timeout_seconds=timeout_seconds,
                    max_body_bytes=max_body_bytes,
                    user_agent=user_agent,
                )
                attempt_span.set_attribute("http.status_code", result.status_code)
        except RETRYABLE_FETCH_ERRORS as exc:
            message = describe_error(exc)
            now = clock()
            backoff_seconds = source.retry_backoff_seconds * attempt
            await repository.record_link_failure(
                link.id,
                checked_at=now,
                error=message,
                next_check_at=failure_next_check_at(source, attempt=attempt, now=now),
            )
            if attempt < retry_max:
                await repository.transition_sync_run(run_id, status="retrying", attempt=attempt, message=message)
                logger.warning(
                    "fetch attempt %s/%s failed link_id=%s: %s; retry in %ss",
                    attempt,
                    retry_max,
                    link.id,
                    message,
                    backoff_seconds,
                )
                await sleep(backoff_seconds)
                continue

            await repository.transition_sync_run(
                run_id,
                status="failed",
                attempt=attempt,
                message=message,
                error_message=message,
                finished_at=clock(),
            )
            span.set_attribute("sync.status", "failed")
            logger.error("sync failed after %s attempt(s) link_id=%s: %s", attempt, link.id, message)
            return SyncOutcome(run_id=run_id, status="failed", attempt=attempt, error=message)
        except Exception as exc:
            message = describe_error(exc)
            now = clock()
            logger.exception("fetch failed without retry link_id=%s", link.id)
            await repository.record_link_failure(
                link.id,
                checked_at=now,
                error=message,
                next_check_at=failure_next_check_at(source, attempt=attempt, now=now),
            )
            await repository.transition_sync_run(
                run_id,
                status="failed",
                attempt=attempt,
                message=message,
                error_message=message,
                finished_at=now,
            )
            span.set_attribute("sync.status", "failed")
            return SyncOutcome(run_id=run_id, status="failed", attempt=attempt, error=message)
        break

    return await _finish_fetched(
        repository,
        source=source,
        link=link,
        url=url,
        result=result,
        run_id=run_id,
        attempt=attempt,
        clock=clock,
        span=span,
    )


async def _finish_fetched(
    repository: Any,
    *,
    source: SourceRecord,
    link: LinkRecord,
    url: str,
    result: FetchResult,
    run_id: str,
    attempt: int,
    clock: Clock,
    span: Any,
) -> SyncOutcome:
    digest = content_hash(result.text)
    snapshot_id: str | None = None
    merge: MergeResult | None = None
    unchanged = is_unchanged(link.last_hash, digest)
    try:
        if unchanged:
            counts = SyncCounts(unchanged=1)
        else:
            fetched_at = clock()
            snapshot_id = await archive_snapshot(
                repository,
                source=source,
                link=link,
                url=url,
                result=result,
                digest=digest,
                fetched_at=fetched_at,
            )
            counts, merge = await extract_and_merge(
                repository,
                source=source,
                link=link,
                url=url,
                result=result,
                snapshot_id=snapshot_id,
                fetched_at=fetched_at,
                clock=clock,
            )
    except Exception as exc:
        message = describe_error(exc)
        logger.exception("sync processing failed link_id=%s", link.id)
        now = clock()
        if snapshot_id is not None:
            await _mark_snapshot_failed(repository, snapshot_id, message=message, now=now)
        await repository.record_link_failure(
            link.id,
            checked_at=now,
            error=message,
            next_check_at=failure_next_check_at(source, attempt=attempt, now=now),
        )
        await repository.transition_sync_run(
            run_id,
            status="failed",
            attempt=attempt,
            message=message,
            error_message=message,
            finished_at=now,
        )
        span.set_attribute("sync.status", "failed")
        return SyncOutcome(run_id=run_id, status="failed", attempt=attempt, snapshot_id=snapshot_id, error=message)

    now = clock()
    await repository.record_link_success(
        link.id,
        checked_at=now,
        content_hash=digest,
        http_status=result.status_code,
        next_check_at=success_next_check_at(source, now=now),
    )
    await repository.transition_sync_run(
        run_id,
        status="success",
        attempt=attempt,
        message="content unchanged" if unchanged else None,
        new_count=counts.new,
        updated_count=counts.updated,
        unchanged_count=counts.unchanged,
        finished_at=now,
    )
    span.set_attribute("sync.status", "success")
    logger.info(
        "sync ok link_id=%s attempt=%s unchanged=%s new=%s updated=%s",
        link.id,
        attempt,
        unchanged,
        counts.new,
        counts.updated,
    )
    return SyncOutcome(
        run_id=run_id,
        status="success",
        attempt=attempt,
        snapshot_id=snapshot_id,
        unchanged=unchanged,
        merge=merge,
    )


async def archive_snapshot(
    repository: Any,
    *,
    source: SourceRecord,
    link: LinkRecord,
    url: str,
    result: FetchResult,
    digest: str,
    fetched_at: datetime,
) -> str:
    return await repository.create_raw_snapshot(
        series_id=link.series_id,
        source_id=source.id,
        link_id=link.id,
        source_url=url,
        content_type=result.content_type,
        http_status=result.status_code,
        raw_content=result.text,
        content_hash=digest,
        metadata={
            "fetched_at": fetched_at.isoformat(),
            "final_url": result.final_url,
            "truncated": result.truncated,
        },
        fetched_at=fetched_at,
    )


async def extract_and_merge(
    repository: Any,
    *,
    source: SourceRecord,
    link: LinkRecord,
    url: str,
    result: FetchResult,
    snapshot_id: str,
    fetched_at: datetime,
    clock: Clock,
) -> tuple[SyncCounts, MergeResult | None]:
    if source.strategy != "HTML":
        # RSS and API sources are archived for review but have no extractor yet.
        return SyncCounts(), None

    config = load_extraction_config(source.extraction_config, source_id=source.id)
    extracted = extract_edition(result.text, page_url=result.final_url or url, config=config)

    if extracted is None or not extracted.race_date:
        await repository.update_raw_snapshot(
            snapshot_id,
            status="needs_review",
            metadata={"extraction": extracted.to_json() if extracted else {"method": "none"}},
            processed_at=clock(),
        )
        return SyncCounts(unchanged=1), None

    merge = await repository.upsert_edition_with_merge(
        series_id=link.series_id,
        year=int(extracted.race_date[:4]),
        incoming=extracted.as_fields(),
        source=MergeSource(source_id=source.id, source_type=source.type, priority=source.priority),
        now=fetched_at,
    )
    counts = SyncCounts()
    if merge.action == "inserted":
        counts.new = 1
    elif merge.action == "updated":
        counts.updated = 1
    else:
        counts.unchanged = 1

    await repository.update_raw_snapshot(
        snapshot_id,
        status="needs_review" if merge.conflicts else "processed",
        metadata={
            "extraction": extracted.to_json(),
            "merge": {
                "action": merge.action,
                "year": merge.year,
                "edition_id": merge.edition_id,
                "changed_fields": list(merge.changed_fields),
                "conflicts": [conflict.to_json() for conflict in merge.conflicts],
            },
        },
        processed_at=clock(),
    )
    return counts, merge


def success_next_check_at(source: SourceRecord, *, now: datetime) -> datetime | None:
    if source.min_interval_seconds > 0:
        return now + timedelta(seconds=source.min_interval_seconds)
    return None


def failure_next_check_at(source: SourceRecord, *, attempt: int, now: datetime) -> datetime | None:
    delay = max(source.retry_backoff_seconds * attempt, source.min_interval_seconds)
    if delay > 0:
        return now + timedelta(seconds=delay)
    return None


def describe_error(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or exc.__class__.__name__


async def _mark_snapshot_failed(repository: Any, snapshot_id: str, *, message: str, now: datetime) -> None:
    try:
        await repository.update_raw_snapshot(
            snapshot_id,
            status="failed",
            metadata={"error": message},
            processed_at=now,
        )
    except Exception:
        # The snapshot may already have left pending before the failure.
        logger.warning("could not mark snapshot failed snapshot_id=%s", snapshot_id, exc_info=True)
