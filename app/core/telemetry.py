from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
import logging
import os
from typing import Literal

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from app.core.config import Settings

Component = Literal["api", "worker"]
LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "trace_id=%(trace_id)s span_id=%(span_id)s sync_run=%(sync_run)s %(message)s"
)

_BASE_LOG_RECORD_FACTORY = logging.getLogRecordFactory()
_LOG_CORRELATION_INSTALLED = False
_HTTPX_INSTRUMENTOR = HTTPXClientInstrumentor()
_CURRENT_SYNC_RUN: ContextVar[str] = ContextVar("racesync_sync_run", default="-")
_NULL_TRACE_ID = "0" * 32
_NULL_SPAN_ID = "0" * 16


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    component: Component
    provider: TracerProvider | None = None
    app: FastAPI | None = None


def configure_logging(level: str = "INFO") -> None:
    """Install trace/sync-run correlation on log records and a root handler if none exists."""
    _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


@contextmanager
def sync_run_log_context(run_id: str) -> Iterator[None]:
    """Tag every log record emitted inside the block with the sync run id."""
    token = _CURRENT_SYNC_RUN.set(run_id)
    try:
        yield
    finally:
        _CURRENT_SYNC_RUN.reset(token)


def current_sync_run() -> str:
    return _CURRENT_SYNC_RUN.get()


def setup_telemetry(
    settings: Settings,
    *,
    component: Component,
    app: FastAPI | None = None,
) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, component=component)

    if settings.otel_log_correlation:
        _install_log_correlation()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            "racesync.component": component,
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    exporter = build_span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    # Outbound page fetches and AI calls both go through httpx.
    _HTTPX_INSTRUMENTOR.instrument(tracer_provider=provider)
    if app is not None:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="healthz")
    return TelemetryRuntime(enabled=True, component=component, provider=provider, app=app)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    if _HTTPX_INSTRUMENTOR.is_instrumented_by_opentelemetry:
        _HTTPX_INSTRUMENTOR.uninstrument()
    if runtime.app is not None:
        FastAPIInstrumentor.uninstrument_app(runtime.app)
    if runtime.provider is not None:
        runtime.provider.force_flush()
        runtime.provider.shutdown()


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = (
        settings.otel_exporter_otlp_endpoint
        or os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
        or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    )
    if not endpoint:
        logging.getLogger(__name__).info(
            "no OTLP endpoint configured; sync spans stay in-process for service=%s",
            settings.otel_service_name,
        )
        return None

    headers = parse_headers(settings.otel_exporter_otlp_headers or os.getenv("OTEL_EXPORTER_OTLP_HEADERS"))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2`` exporter headers, skipping malformed pairs."""
    if not raw:
        return {}
    pairs = (item.partition("=") for item in raw.split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}


def _install_log_correlation() -> None:
    global _LOG_CORRELATION_INSTALLED
    if _LOG_CORRELATION_INSTALLED:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _BASE_LOG_RECORD_FACTORY(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _NULL_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _NULL_SPAN_ID
        record.sync_run = _CURRENT_SYNC_RUN.get()
        return record

    logging.setLogRecordFactory(record_factory)
    _LOG_CORRELATION_INSTALLED = True
