from __future__ import annotations

import asyncio
import logging

from app.core.config import get_settings
from app.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from app.jobs.scheduler import SyncScheduler
from app.services.repository import get_repository

logger = logging.getLogger(__name__)


async def run_worker(*, once: bool = False) -> None:
    """Run sync passes on the configured interval without the HTTP surface."""
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings, component="worker")
    repository = get_repository()
    scheduler = SyncScheduler.from_settings(repository, settings)

    try:
        if once:
            report = await scheduler.run_pass()
            logger.info("sync pass finished: %s", report.to_json())
            return
        while True:
            await scheduler.tick()
            await asyncio.sleep(settings.scheduler_interval_seconds)
    finally:
        await scheduler.stop()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    import sys

    asyncio.run(run_worker(once="--once" in sys.argv[1:]))
