from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Literal
from uuid import uuid4

import httpx
from opentelemetry import trace

from app.core.config import Settings, get_settings
from app.jobs.sync_link import Clock, Sleeper, SyncOutcome, sync_link_once
from app.services.fetcher import DEFAULT_MAX_BODY_BYTES, DEFAULT_USER_AGENT
from app.services.locks import SchedulerLock
from app.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PassStatus = Literal["completed", "skipped"]
TriggerStatus = Literal["started", "skipped"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PassReport:
    pass_id: str
    status: PassStatus
    reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    sources: int = 0
    links: int = 0
    succeeded: int = 0
    failed: int = 0
    run_ids: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, Any]:
        return {
            "pass_id": self.pass_id,
            "status": self.status,
            "reason": self.reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "sources": self.sources,
            "links": self.links,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


class SyncScheduler:
    """Periodic sync passes over every active source's due links.

    Within a process an in-flight flag prevents overlapping passes; across processes the
    scheduler lock makes at most one instance run a pass at a time.
    """

    def __init__(
        self,
        repository: Any,
        *,
        lock: SchedulerLock,
        interval_seconds: float = 300.0,
        client_factory: Callable[[], httpx.AsyncClient] = httpx.AsyncClient,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        user_agent: str = DEFAULT_USER_AGENT,
        sleep: Sleeper = asyncio.sleep,
        clock: Clock = _utcnow,
    ) -> None:
        self.repository = repository
        self.lock = lock
        self.interval_seconds = interval_seconds
        self.client_factory = client_factory
        self.max_body_bytes = max_body_bytes
        self.user_agent = user_agent
        self.sleep = sleep
        self.clock = clock
        self.last_report: PassReport | None = None
        self._in_flight = False
        self._timer: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings) -> SyncScheduler:
        return cls(
            repository,
            lock=repository.create_scheduler_lock(settings.scheduler_lock_key),
            interval_seconds=settings.scheduler_interval_seconds,
            max_body_bytes=settings.fetch_max_body_bytes,
            user_agent=settings.fetch_user_agent,
        )

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.create_task(self._loop(), name="sync-scheduler")
        logger.info("sync scheduler started interval=%ss", self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the timer, then let any dispatched pass run to completion."""
        if self._timer is not None:
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None
        if self._background:
            logger.info("waiting for %s in-flight sync pass(es) before stopping", len(self._background))
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        logger.info("sync scheduler stopped")

    async def tick(self) -> PassReport | None:
        """One timer tick; a pass that raises is logged and never stops the timer."""
        if self._in_flight:
            logger.info("sync already running, skipping interval tick")
            return None
        try:
            return await self.run_pass()
        except Exception:
            logger.exception("sync scheduler pass failed")
            return None

    async def run_pass(self, *, pass_id: str | None = None) -> PassReport:
        pass_id = pass_id or str(uuid4())
        if self._in_flight:
            return PassReport(pass_id=pass_id, status="skipped", reason="in_flight")
        self._in_flight = True
        try:
            return await self._execute_pass(pass_id)
        finally:
            self._in_flight = False

    def trigger_all(self) -> tuple[str, TriggerStatus]:
        """Start a pass in the background unless one is already running in this process."""
        pass_id = str(uuid4())
        if self._in_flight:
            logger.info("manual sync skipped; a pass is already in flight")
            return pass_id, "skipped"
        self._in_flight = True
        self._track(asyncio.create_task(self._background_pass(pass_id), name=f"sync-pass-{pass_id}"))
        return pass_id, "started"

    async def trigger_link(self, link_id: str) -> SyncOutcome:
        """Sync a single link immediately, outside the scheduler lock."""
        link = await self.repository.get_link(link_id)
        source = await self.repository.get_source(link.source_id)
        async with self.client_factory() as client:
            return await sync_link_once(
                self.repository,
                source=source,
                link=link,
                client=client,
                max_body_bytes=self.max_body_bytes,
                user_agent=self.user_agent,
                sleep=self.sleep,
                clock=self.clock,
            )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            # stop() cancels only this loop; the tick task runs on until stop() awaits it
            await asyncio.shield(self._track(asyncio.create_task(self.tick(), name="sync-scheduler-tick")))

    def _track(self, task: asyncio.Task[Any]) -> asyncio.Task[Any]:
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _background_pass(self, pass_id: str) -> PassReport:
        try:
            return await self._execute_pass(pass_id)
        except Exception:
            logger.exception("background sync pass failed pass_id=%s", pass_id)
            return PassReport(pass_id=pass_id, status="skipped", reason="error")
        finally:
            self._in_flight = False

    async def _execute_pass(self, pass_id: str) -> PassReport:
        with tracer.start_as_current_span("sync.pass") as span:
            span.set_attribute("sync.pass_id", pass_id)
            guard = await self.lock.try_acquire()
            if guard is None:
                logger.info("sync scheduler lock is held by another instance; skipping pass")
                span.set_attribute("sync.skipped", True)
                report = PassReport(pass_id=pass_id, status="skipped", reason="locked")
                self.last_report = report
                return report

            report = PassReport(pass_id=pass_id, status="completed", started_at=self.clock())
            try:
                await self._sync_sources(report)
            finally:
                await guard.release()
            report.finished_at = self.clock()
            span.set_attribute("sync.links", report.links)
            span.set_attribute("sync.failed", report.failed)
            self.last_report = report
            logger.info(
                "sync pass done pass_id=%s sources=%s links=%s succeeded=%s failed=%s",
                pass_id,
                report.sources,
                report.links,
                report.succeeded,
                report.failed,
            )
            return report

    async def _sync_sources(self, report: PassReport) -> None:
        now = self.clock()
        sources = await self.repository.list_active_sources()
        async with self.client_factory() as client:
            for source in sources:
                report.sources += 1
                logger.info("syncing source name=%s", source.name)
                await self.repository.mark_source_run(source.id, at=now)
                links = await self.repository.list_due_links(source.id, now=now)
                for link in links:
                    if not link.fetch_url:
                        continue
                    report.links += 1
                    try:
                        outcome = await sync_link_once(
                            self.repository,
                            source=source,
                            link=link,
                            client=client,
                            max_body_bytes=self.max_body_bytes,
                            user_agent=self.user_agent,
                            sleep=self.sleep,
                            clock=self.clock,
                        )
                    except Exception:
                        # a failing link never aborts the pass
                        logger.exception("link sync raised link_id=%s", link.id)
                        report.failed += 1
                        continue
                    report.run_ids.append(outcome.run_id)
                    if outcome.status == "success":
                        report.succeeded += 1
                    else:
                        report.failed += 1


@lru_cache
def get_scheduler() -> SyncScheduler:
    return SyncScheduler.from_settings(get_repository(), get_settings())
