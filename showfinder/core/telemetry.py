from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import logging
import os
from typing import Any, Iterator

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.trace import Span, Status, StatusCode

from showfinder.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
COMPONENT_ATTRIBUTE = "showfinder.component"
_NO_TRACE_ID = "0" * 32
_NO_SPAN_ID = "0" * 16

_base_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TelemetryRuntime:
    enabled: bool
    provider: TracerProvider | None
    component: str = "api"


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install trace-aware log records and a root handler if none exists.

    Every record gets ``trace_id`` and ``span_id`` so ``LOG_FORMAT`` works
    whether or not tracing is enabled.
    """
    _install_log_correlation()
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    if logging.getLogger().handlers:
        return
    logging.basicConfig(level=level, format=LOG_FORMAT)


def setup_telemetry(settings: Settings, *, component: str = "api") -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime(enabled=False, provider=None, component=component)

    if settings.otel_log_correlation:
        _install_log_correlation()

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            DEPLOYMENT_ENVIRONMENT: settings.environment,
            COMPONENT_ATTRIBUTE: component,
        }
    )
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.otel_trace_sample_ratio))
    exporter = build_span_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    _httpx_instrumentor.instrument()
    logger.info("telemetry ready component=%s exporter=%s", component, exporter is not None)
    return TelemetryRuntime(enabled=True, provider=provider, component=component)


def shutdown_telemetry(runtime: TelemetryRuntime) -> None:
    if not runtime.enabled:
        return
    _httpx_instrumentor.uninstrument()
    if runtime.provider is None:
        return
    runtime.provider.force_flush()
    runtime.provider.shutdown()


@contextmanager
def traced(tracer: trace.Tracer, name: str, attributes: dict[str, Any] | None = None) -> Iterator[Span]:
    """Run a block inside a span; ``None`` attributes are dropped.

    Exceptions are recorded on the span and re-raised.
    """
    with tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise


def build_span_exporter(settings: Settings) -> OTLPSpanExporter | None:
    endpoint = _first_set(
        settings.otel_exporter_otlp_endpoint,
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT"),
        os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
    )
    if endpoint is None:
        logger.info("no OTLP endpoint configured; spans stay in-process service=%s", settings.otel_service_name)
        return None

    headers = parse_headers(_first_set(settings.otel_exporter_otlp_headers, os.getenv("OTEL_EXPORTER_OTLP_HEADERS")))
    return OTLPSpanExporter(endpoint=endpoint, headers=headers or None)


def parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value`` pairs separated by commas; malformed pairs are skipped."""
    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, separator, value in pairs if separator and key.strip()}


def _first_set(*values: str | None) -> str | None:
    for value in values:
        if value and value.strip():
            return value.strip()
    return None


def _correlated_record(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_record_factory(*args, **kwargs)
    context = trace.get_current_span().get_span_context()
    record.trace_id = format(context.trace_id, "032x") if context.is_valid else _NO_TRACE_ID
    record.span_id = format(context.span_id, "016x") if context.is_valid else _NO_SPAN_ID
    return record


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return
    logging.setLogRecordFactory(_correlated_record)
    _correlation_installed = True
