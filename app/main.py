from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from app.api.router import api_router
from app.core.config import Settings, get_settings
from app.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from app.jobs.scheduler import get_scheduler
from app.services.repository import get_repository

logger = logging.getLogger(__name__)
_QUIET_PATHS = frozenset({"/healthz"})


def create_app(settings: Settings) -> FastAPI:
    """Admin API; when enabled, the sync scheduler runs inside the same event loop."""
    telemetry: TelemetryRuntime | None = None

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        if settings.scheduler_enabled:
            get_scheduler().start()
        else:
            logger.info("in-process sync scheduler disabled; run app.worker to sync links")
        try:
            yield
        finally:
            if get_scheduler.cache_info().currsize:
                await get_scheduler().stop()
                get_scheduler.cache_clear()
            if telemetry is not None:
                shutdown_telemetry(telemetry)
            await get_repository().close()
            get_repository.cache_clear()

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    telemetry = setup_telemetry(settings, component="api", app=application)

    @application.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        if request.url.path not in _QUIET_PATHS:
            logger.info(
                "http request method=%s path=%s status=%s duration_ms=%.2f",
                request.method,
                request.url.path,
                response.status_code,
                (time.perf_counter() - started_at) * 1000.0,
            )
        return response

    application.include_router(api_router)
    return application


configure_logging(get_settings().log_level)
app = create_app(get_settings())
