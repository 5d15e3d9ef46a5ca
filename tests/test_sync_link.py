from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest

import app.jobs.sync_link as sync_link_module
from app.jobs.sync_link import SyncOutcome, sync_link_once
from app.services.records import LinkRecord, SourceRecord
from app.services.store import InMemoryRepository

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
PAGE = "<html><body><h1>Example Marathon</h1><p>Race day 2026-03-07</p></body></html>"


class Harness:
    def __init__(self, **source_fields: Any) -> None:
        self.repository = InMemoryRepository()
        self.sleeps: list[float] = []
        self.source_fields = {"name": "official-site", "type": "official", "priority": 95, **source_fields}
        self.source: SourceRecord | None = None
        self.link: LinkRecord | None = None

    async def setup(self, *, url: str = "https://race.example.com/2026") -> None:
        self.source = await self.repository.create_source(**self.source_fields)
        series = await self.repository.create_series(name="Example Marathon", canonical_name="example-marathon")
        self.link = await self.repository.create_link(series_id=series.id, source_id=self.source.id, url=url)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    async def sync(self, handler) -> SyncOutcome:
        assert self.source is not None and self.link is not None
        link = await self.repository.get_link(self.link.id)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await sync_link_once(
                self.repository,
                source=self.source,
                link=link,
                client=client,
                sleep=self.sleep,
                clock=lambda: NOW,
            )


def _html(body: str = PAGE, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, headers={"content-type": "text/html"}, content=body.encode("utf-8"))

    return handler


def test_new_page_is_archived_extracted_and_merged() -> None:
    harness = Harness(min_interval_seconds=3600)

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(_html())

    outcome = asyncio.run(run())
    repo = harness.repository

    assert outcome.status == "success"
    assert outcome.attempt == 1
    assert outcome.merge is not None and outcome.merge.action == "inserted"

    run_row = repo.sync_runs[outcome.run_id]
    assert run_row["status"] == "success"
    assert run_row["new_count"] == 1
    assert run_row["finished_at"] == NOW

    snapshot = repo.snapshots[outcome.snapshot_id]
    assert snapshot["status"] == "processed"
    assert snapshot["metadata"]["extraction"]["method"] == "regex"
    assert snapshot["metadata"]["merge"]["action"] == "inserted"
    assert snapshot["metadata"]["merge"]["year"] == 2026

    edition = asyncio.run(repo.get_edition(harness.link.series_id, 2026))
    assert edition is not None
    assert edition.fields.race_date == "2026-03-07"
    assert edition.field_sources.race_date is not None
    assert edition.field_sources.race_date.source_id == harness.source.id

    link = repo.links[harness.link.id]
    assert link.last_hash == snapshot["content_hash"]
    assert link.last_http_status == 200
    assert link.last_checked_at == NOW
    assert link.next_check_at == NOW + timedelta(seconds=3600)


def test_identical_content_produces_exactly_one_snapshot() -> None:
    harness = Harness()

    async def run() -> tuple[SyncOutcome, SyncOutcome]:
        await harness.setup()
        first = await harness.sync(_html())
        second = await harness.sync(_html())
        return first, second

    first, second = asyncio.run(run())

    assert len(harness.repository.snapshots) == 1
    assert first.snapshot_id is not None
    assert second.unchanged
    assert second.snapshot_id is None
    second_run = harness.repository.sync_runs[second.run_id]
    assert second_run["status"] == "success"
    assert second_run["unchanged_count"] == 1
    assert harness.repository.links[harness.link.id].next_check_at is None


def test_transport_failures_are_retried_with_linear_backoff() -> None:
    harness = Harness(retry_max=3, retry_backoff_seconds=30)
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=PAGE.encode("utf-8"))

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(handler)

    outcome = asyncio.run(run())

    assert outcome.status == "success"
    assert outcome.attempt == 3
    assert harness.sleeps == [30, 60]
    run_row = harness.repository.sync_runs[outcome.run_id]
    assert run_row["status"] == "success"
    assert run_row["attempt"] == 3
    assert run_row["message"] == "connection refused"
    assert harness.repository.links[harness.link.id].last_error is None


def test_fetch_that_outlives_the_source_timeout_is_retried() -> None:
    harness = Harness(retry_max=2, retry_backoff_seconds=30, request_timeout_ms=50)
    calls: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            await asyncio.sleep(5)
        return httpx.Response(200, headers={"content-type": "text/html"}, content=PAGE.encode("utf-8"))

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(handler)

    outcome = asyncio.run(run())

    assert outcome.status == "success"
    assert outcome.attempt == 2
    assert len(calls) == 2
    assert harness.sleeps == [30]
    run_row = harness.repository.sync_runs[outcome.run_id]
    assert run_row["status"] == "success"
    assert run_row["message"] == "TimeoutError"


def test_exhausted_retries_fail_the_run_and_schedule_backoff() -> None:
    harness = Harness(retry_max=3, retry_backoff_seconds=30, min_interval_seconds=60)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(handler)

    outcome = asyncio.run(run())

    assert outcome.status == "failed"
    assert outcome.attempt == 3
    assert harness.sleeps == [30, 60]
    run_row = harness.repository.sync_runs[outcome.run_id]
    assert run_row["status"] == "failed"
    assert run_row["error_message"] == "timed out"
    assert run_row["finished_at"] == NOW
    assert harness.repository.snapshots == {}

    link = harness.repository.links[harness.link.id]
    assert link.last_error == "timed out"
    assert link.last_http_status is None
    assert link.next_check_at == NOW + timedelta(seconds=90)


def test_page_without_date_goes_to_review_and_run_succeeds() -> None:
    harness = Harness()

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(_html("<html><body>Registration opens soon</body></html>"))

    outcome = asyncio.run(run())

    assert outcome.status == "success"
    snapshot = harness.repository.snapshots[outcome.snapshot_id]
    assert snapshot["status"] == "needs_review"
    assert snapshot["metadata"]["extraction"] == {"method": "none"}
    assert harness.repository.sync_runs[outcome.run_id]["unchanged_count"] == 1
    assert harness.repository.editions == {}


def test_non_2xx_page_is_still_processed() -> None:
    harness = Harness()

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(_html(status_code=404))

    outcome = asyncio.run(run())

    assert outcome.status == "success"
    assert harness.repository.snapshots[outcome.snapshot_id]["http_status"] == 404
    assert harness.repository.links[harness.link.id].last_http_status == 404


def test_conflicting_lower_rank_source_sends_snapshot_to_review() -> None:
    harness = Harness()

    async def run() -> SyncOutcome:
        await harness.setup()
        await harness.sync(_html())
        platform = await harness.repository.create_source(name="platform", type="platform", priority=99)
        link = await harness.repository.create_link(
            series_id=harness.link.series_id,
            source_id=platform.id,
            url="https://tickets.example.com/example-marathon",
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(_html(PAGE.replace("03-07", "03-08")))) as client:
            return await sync_link_once(
                harness.repository,
                source=platform,
                link=link,
                client=client,
                sleep=harness.sleep,
                clock=lambda: NOW,
            )

    outcome = asyncio.run(run())

    assert outcome.status == "success"
    assert outcome.merge is not None
    assert outcome.merge.action == "unchanged"
    snapshot = harness.repository.snapshots[outcome.snapshot_id]
    assert snapshot["status"] == "needs_review"
    conflicts = snapshot["metadata"]["merge"]["conflicts"]
    assert len(conflicts) == 1
    assert conflicts[0]["field"] == "race_date"
    edition = asyncio.run(harness.repository.get_edition(harness.link.series_id, 2026))
    assert edition.fields.race_date == "2026-03-07"


def test_processing_error_fails_immediately_without_retry(monkeypatch: pytest.MonkeyPatch) -> None:
    harness = Harness(retry_max=3)
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, content=PAGE.encode("utf-8"))

    def _broken_extract(*_: Any, **__: Any) -> None:
        raise RuntimeError("extractor exploded")

    monkeypatch.setattr(sync_link_module, "extract_edition", _broken_extract)

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(handler)

    outcome = asyncio.run(run())

    assert outcome.status == "failed"
    assert calls["count"] == 1
    assert harness.sleeps == []
    assert harness.repository.snapshots[outcome.snapshot_id]["status"] == "failed"
    assert harness.repository.sync_runs[outcome.run_id]["error_message"] == "extractor exploded"
    assert harness.repository.links[harness.link.id].last_hash is None


def test_non_html_strategy_archives_without_extraction() -> None:
    harness = Harness(strategy="RSS")

    async def run() -> SyncOutcome:
        await harness.setup()
        return await harness.sync(_html("<rss><item>2026-03-07</item></rss>"))

    outcome = asyncio.run(run())

    assert outcome.status == "success"
    assert harness.repository.snapshots[outcome.snapshot_id]["status"] == "pending"
    run_row = harness.repository.sync_runs[outcome.run_id]
    assert (run_row["new_count"], run_row["updated_count"], run_row["unchanged_count"]) == (0, 0, 0)
    assert harness.repository.editions == {}


def test_link_without_any_url_fails_the_run() -> None:
    harness = Harness()

    async def run() -> SyncOutcome:
        await harness.setup(url="")
        return await harness.sync(_html())

    outcome = asyncio.run(run())

    assert outcome.status == "failed"
    assert harness.repository.sync_runs[outcome.run_id]["status"] == "failed"
