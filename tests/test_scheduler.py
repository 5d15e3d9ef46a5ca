from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import httpx

from app.jobs.scheduler import PassReport, SyncScheduler
from app.services.locks import InMemoryLock
from app.services.store import InMemoryRepository

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
PAGE = b"<p>Race day 2026-03-07</p>"


def _scheduler(
    repository: InMemoryRepository,
    handler,
    *,
    lock: InMemoryLock | None = None,
    interval_seconds: float = 300.0,
) -> SyncScheduler:
    async def no_sleep(_: float) -> None:
        return None

    return SyncScheduler(
        repository,
        lock=lock or repository.create_scheduler_lock(0x6D635F73),
        interval_seconds=interval_seconds,
        client_factory=lambda: httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=no_sleep,
        clock=lambda: NOW,
    )


async def _seed(repository: InMemoryRepository) -> dict[str, str]:
    low = await repository.create_source(name="b-platform", type="platform", priority=10)
    high = await repository.create_source(name="a-official", type="official", priority=90)
    await repository.create_source(name="z-disabled", type="official", priority=99, is_active=False)
    first = await repository.create_series(name="First Marathon", canonical_name="first")
    second = await repository.create_series(name="Second Marathon", canonical_name="second")
    await repository.create_link(series_id=first.id, source_id=low.id, url="https://platform.example.com/first")
    await repository.create_link(series_id=first.id, source_id=high.id, url="https://official.example.com/first")
    await repository.create_link(
        series_id=second.id,
        source_id=high.id,
        url="https://official.example.com/second",
        is_primary=True,
    )
    return {"low": low.id, "high": high.id}


def test_pass_visits_sources_by_priority_and_primary_links_first() -> None:
    repository = InMemoryRepository()
    fetched: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        fetched.append(str(request.url))
        return httpx.Response(200, content=PAGE)

    async def run() -> PassReport:
        await _seed(repository)
        return await _scheduler(repository, handler).run_pass()

    report = asyncio.run(run())

    assert report.status == "completed"
    assert fetched == [
        "https://official.example.com/second",
        "https://official.example.com/first",
        "https://platform.example.com/first",
    ]
    assert report.sources == 2
    assert report.succeeded == 3
    assert all(source.last_run_at == NOW for source in repository.sources.values() if source.is_active)


def test_pass_is_skipped_when_lock_is_held_elsewhere() -> None:
    repository = InMemoryRepository()
    lock = InMemoryLock()
    fetched: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        fetched.append(str(request.url))
        return httpx.Response(200, content=PAGE)

    async def run() -> PassReport:
        await _seed(repository)
        held = await lock.try_acquire()
        assert held is not None
        return await _scheduler(repository, handler, lock=lock).run_pass()

    report = asyncio.run(run())

    assert report.status == "skipped"
    assert report.reason == "locked"
    assert fetched == []
    assert repository.sync_runs == {}


def test_lock_is_released_after_a_pass() -> None:
    repository = InMemoryRepository()
    lock = InMemoryLock()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PAGE)

    async def run() -> None:
        await _seed(repository)
        await _scheduler(repository, handler, lock=lock).run_pass()

    asyncio.run(run())
    assert not lock.held


def test_links_not_yet_due_are_skipped() -> None:
    repository = InMemoryRepository()
    fetched: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        fetched.append(str(request.url))
        return httpx.Response(200, content=PAGE)

    async def run() -> None:
        await _seed(repository)
        for link in repository.links.values():
            if "platform" in link.url:
                link.next_check_at = NOW + timedelta(minutes=5)
        await _scheduler(repository, handler).run_pass()

    asyncio.run(run())
    assert "https://platform.example.com/first" not in fetched
    assert len(fetched) == 2


def test_one_failing_link_does_not_abort_the_pass() -> None:
    repository = InMemoryRepository()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "platform.example.com":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, content=PAGE)

    async def run() -> PassReport:
        ids = await _seed(repository)
        await repository.update_source(ids["low"], {"retry_max": 1})
        return await _scheduler(repository, handler).run_pass()

    report = asyncio.run(run())

    assert report.status == "completed"
    assert report.succeeded == 2
    assert report.failed == 1
    statuses = sorted(run["status"] for run in repository.sync_runs.values())
    assert statuses == ["failed", "success", "success"]


def test_overlapping_passes_in_one_process_are_skipped() -> None:
    repository = InMemoryRepository()
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        await release.wait()
        return httpx.Response(200, content=PAGE)

    async def run() -> tuple[PassReport, PassReport | None, tuple[str, str], PassReport]:
        await _seed(repository)
        scheduler = _scheduler(repository, handler)
        first = asyncio.create_task(scheduler.run_pass())
        await asyncio.sleep(0)
        while not scheduler.in_flight:
            await asyncio.sleep(0)
        overlapping = await scheduler.run_pass()
        ticked = await scheduler.tick()
        triggered = scheduler.trigger_all()
        release.set()
        return overlapping, ticked, triggered, await first

    overlapping, ticked, triggered, first = asyncio.run(run())

    assert overlapping.status == "skipped"
    assert overlapping.reason == "in_flight"
    assert ticked is None
    assert triggered[1] == "skipped"
    assert first.status == "completed"


def test_trigger_all_runs_in_background() -> None:
    repository = InMemoryRepository()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PAGE)

    async def run() -> tuple[str, str, PassReport | None]:
        await _seed(repository)
        scheduler = _scheduler(repository, handler)
        pass_id, status = scheduler.trigger_all()
        while scheduler.in_flight:
            await asyncio.sleep(0)
        return pass_id, status, scheduler.last_report

    pass_id, status, report = asyncio.run(run())

    assert status == "started"
    assert report is not None
    assert report.pass_id == pass_id
    assert report.succeeded == 3


def test_single_link_trigger_ignores_the_scheduler_lock() -> None:
    repository = InMemoryRepository()
    lock = InMemoryLock()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PAGE)

    async def run() -> str:
        await _seed(repository)
        await lock.try_acquire()
        link_id = next(iter(repository.links))
        outcome = await _scheduler(repository, handler, lock=lock).trigger_link(link_id)
        return outcome.status

    assert asyncio.run(run()) == "success"
    assert lock.held


def test_stop_before_first_tick_cancels_only_the_timer() -> None:
    repository = InMemoryRepository()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=PAGE)

    async def run() -> tuple[bool, bool]:
        await _seed(repository)
        scheduler = _scheduler(repository, handler)
        scheduler.start()
        scheduler.start()
        started = scheduler.running
        await scheduler.stop()
        return started, scheduler.running

    assert asyncio.run(run()) == (True, False)
    assert repository.sync_runs == {}


def test_stop_lets_the_dispatched_pass_finish_its_runs() -> None:
    repository = InMemoryRepository()

    async def run() -> tuple[SyncScheduler, bool]:
        fetch_started = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            fetch_started.set()
            await asyncio.sleep(0.2)
            return httpx.Response(200, content=PAGE)

        await _seed(repository)
        scheduler = _scheduler(repository, handler, interval_seconds=0.01)
        scheduler.start()
        await asyncio.wait_for(fetch_started.wait(), timeout=5)
        await scheduler.stop()
        return scheduler, scheduler.in_flight

    scheduler, in_flight = asyncio.run(run())

    assert not in_flight
    assert not scheduler.running
    assert scheduler.last_report is not None
    assert scheduler.last_report.succeeded == 3
    runs = list(repository.sync_runs.values())
    assert len(runs) == 3
    assert all(run["status"] == "success" for run in runs)
    assert all(run["finished_at"] == NOW for run in runs)
