"""Logging and tracing setup for the gateway.

Log events are JSON lines routed through stdlib logging. Events emitted while
a span is active carry its ``trace_id`` and ``span_id`` so a slow or failed
asset response can be followed from the log into the trace backend.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import unquote

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import format_span_id, format_trace_id
from structlog.contextvars import bind_contextvars

from .settings import GatewaySettings


_logging_configured = False
_tracer_configured = False


def _log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        numeric = logging.getLevelName(level.strip().upper())
        if isinstance(numeric, int):
            return numeric
    return logging.INFO


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor stamping the active span onto the event."""
    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        event_dict.setdefault("trace_id", format_trace_id(span_context.trace_id))
        event_dict.setdefault("span_id", format_span_id(span_context.span_id))
    return event_dict


def configure_logging(service_name: str, level: str | int | None = None) -> None:
    global _logging_configured
    numeric_level = _log_level(level)
    if _logging_configured:
        logging.getLogger().setLevel(numeric_level)
    else:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    bind_contextvars(service=service_name)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Parse ``OTEL_EXPORTER_OTLP_HEADERS`` style ``k=v,k2=v2`` pairs.

    Values are percent-decoded; pairs missing a key or value are dropped.
    """
    result: Dict[str, str] = {}
    for item in (headers or "").split(","):
        key, _, value = item.partition("=")
        key, value = key.strip(), unquote(value.strip())
        if key and value:
            result[key] = value
    return result


def _span_processor(endpoint: Optional[str], headers: Optional[str]) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    # without a collector spans stay in memory so requests never wait on export
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
) -> None:
    """Install the process tracer provider unless one is already installed.

    Sampling follows the caller's decision when an incoming request carries
    a sampled trace context; root spans are sampled at ``sampler_ratio``.
    """
    global _tracer_configured
    if _tracer_configured or isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    sampler = ParentBased(TraceIdRatioBased(max(0.0, min(1.0, sampler_ratio))))
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}), sampler=sampler)
    provider.add_span_processor(_span_processor(endpoint, headers))
    trace.set_tracer_provider(provider)
    _tracer_configured = True


def configure_observability(service_name: str, settings: GatewaySettings) -> None:
    configure_logging(service_name, settings.log_level)
    configure_tracing(
        service_name=service_name,
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )


def instrument_fastapi_app(app, excluded_urls: Optional[str] = None) -> None:
    """Attach OpenTelemetry server spans to every route except ``excluded_urls``."""
    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=excluded_urls,
    )
