"""Log and trace plumbing for the provisioning API, the admin CLI and the discovery watcher.

Every log line is one JSON object carrying ``service`` and, when known, the
``deployment_mode`` so Docker and Kubernetes installs can be told apart in a
shared log sink. Remote access API calls made through httpx become child spans
of the inbound provisioning request.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from structlog.contextvars import bind_contextvars

# Request paths that never open a server span.
UNTRACED_PATHS = ("/healthz", "/metrics")

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


def configure_logging(
    service_name: str,
    level: str | int | None = None,
    deployment_mode: Optional[str] = None,
) -> None:
    """Emit accessglue events as JSON lines through the root stdlib logger.

    Safe to call again (the CLI and the API both call it); later calls only
    adjust the level and the bound context.
    """

    global _logging_configured
    numeric_level = _log_level(level)
    if not _logging_configured:
        logging.basicConfig(level=numeric_level, format="%(message)s")
        _logging_configured = True
    else:
        logging.getLogger().setLevel(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
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
    context = {"service": service_name}
    if deployment_mode:
        context["deployment_mode"] = deployment_mode
    bind_contextvars(**context)


def parse_otlp_headers(headers: str | None) -> Dict[str, str]:
    """Turn ``ACCESSGLUE_OTEL_EXPORTER_HEADERS`` (``k=v,k2=v2``) into exporter headers.

    Entries without a key or a value are dropped.
    """

    if not headers:
        return {}
    result: Dict[str, str] = {}
    for item in headers.split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            result[key.strip()] = value.strip()
    return result


def _span_processor(endpoint: Optional[str], headers: Optional[str]) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, headers=parse_otlp_headers(headers)))
    # No collector configured: spans stay in process memory.
    return SimpleSpanProcessor(InMemorySpanExporter())


def configure_tracing(
    service_name: str,
    endpoint: Optional[str] = None,
    headers: Optional[str] = None,
    sampler_ratio: float = 1.0,
    deployment_mode: Optional[str] = None,
) -> None:
    """Install the process tracer provider and trace calls to the remote access API.

    A provider installed earlier (by the API lifespan or a test) is left in place.
    """

    global _tracer_configured
    if _tracer_configured:
        return
    if isinstance(trace.get_tracer_provider(), TracerProvider):
        _tracer_configured = True
        return

    attributes = {"service.name": service_name}
    if deployment_mode:
        attributes["accessglue.deployment_mode"] = deployment_mode
    provider = TracerProvider(
        resource=Resource.create(attributes),
        sampler=TraceIdRatioBased(max(0.0, min(1.0, sampler_ratio))),
    )
    provider.add_span_processor(_span_processor(endpoint, headers))
    trace.set_tracer_provider(provider)
    HTTPXClientInstrumentor().instrument()
    _tracer_configured = True


def instrument_fastapi_app(app) -> None:
    """Open a server span per provisioning request, skipping health and metrics scrapes."""

    FastAPIInstrumentor.instrument_app(
        app,
        tracer_provider=trace.get_tracer_provider(),
        excluded_urls=",".join(UNTRACED_PATHS),
    )
