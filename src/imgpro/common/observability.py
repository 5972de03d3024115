"""Logging and tracing setup shared by the edge service and the usage aggregator."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars

if TYPE_CHECKING:
    from .settings import EdgeSettings

LOG_FORMATS = ("json", "console")

_logging_configured = False
_tracer_configured = False
_httpx_instrumented = False


def _numeric_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if level:
        value = logging.getLevelName(level.strip().upper())
        if isinstance(value, int):
            return value
    return logging.INFO


def configure_logging(service_name: str, level: str | int | None = None, log_format: str = "json") -> None:
    """Send structlog events through stdlib logging, one rendered line per event.

    ``json`` output keys the event name as ``message``; ``console`` is meant
    for local runs. Every event carries the ``service`` name.
    """

    global _logging_configured
    numeric_level = _numeric_level(level)
    if _logging_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if log_format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    else:
        processors.extend(
            [
                structlog.processors.dict_tracebacks,
                structlog.processors.EventRenamer("message"),
                structlog.processors.JSONRenderer(),
            ]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``key=value,key2=value2`` exporter headers, skipping malformed items."""
    parsed: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip() and value.strip():
            parsed[key.strip()] = value.strip()
    return parsed


def build_tracer_provider(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
    service_version: Optional[str] = None,
) -> TracerProvider:
    """Create a provider that exports to an OTLP/HTTP collector when ``endpoint`` is set.

    Without an endpoint no span processor is attached, so finished spans are
    dropped instead of accumulating in the process.
    """
    attributes = {"service.name": service_name}
    if service_version:
        attributes["service.version"] = service_version
    provider = TracerProvider(
        resource=Resource.create(attributes),
        sampler=TraceIdRatioBased(max(0.0, min(1.0, sampler_ratio))),
    )
    if endpoint:
        exporter = OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers))
        provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
    service_version: Optional[str] = None,
) -> None:
    """Install a tracer provider once per process.

    Outbound httpx calls (origin fetches) are instrumented alongside.
    """

    global _tracer_configured, _httpx_instrumented
    if _tracer_configured:
        return
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    trace.set_tracer_provider(build_tracer_provider(service_name, endpoint, headers, sampler_ratio, service_version))
    _tracer_configured = True

    if not _httpx_instrumented:
        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True


def configure_observability(settings: "EdgeSettings", service_name: str, service_version: Optional[str] = None) -> None:
    configure_logging(service_name, settings.log_level, settings.log_format)
    configure_tracing(
        service_name,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
        service_version=service_version,
    )


def instrument_fastapi_app(app) -> None:
    """Attach OpenTelemetry request spans to a FastAPI app."""

    FastAPIInstrumentor.instrument_app(app, tracer_provider=trace.get_tracer_provider())
