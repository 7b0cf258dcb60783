"""Logging, tracing and metrics shared by all adapters.

Structured logs go through structlog; per-phase timings are exported as
Prometheus histograms; spans follow the OpenTelemetry GenAI conventions.
The host application opts in to exporting with :func:`configure_logging` and
:func:`configure_tracing`; until then spans and log lines go to the library
defaults.
"""

import logging

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor, SpanExporter
from prometheus_client import Counter, Histogram

from llmbridge.providers.errors import ProviderError

_LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)

CONNECT_SECONDS = Histogram(
    "llmbridge_connect_seconds",
    "Time from request start until the provider answered (headers or full body).",
    ["provider", "mode"],
    buckets=_LATENCY_BUCKETS,
)
FIRST_CHUNK_SECONDS = Histogram(
    "llmbridge_first_chunk_seconds",
    "Time from request start until the first streamed chunk was decoded.",
    ["provider"],
    buckets=_LATENCY_BUCKETS,
)
REQUEST_SECONDS = Histogram(
    "llmbridge_request_seconds",
    "Total time of a chat completion call, including the whole stream.",
    ["provider", "mode"],
    buckets=_LATENCY_BUCKETS,
)
ERRORS_TOTAL = Counter(
    "llmbridge_errors_total",
    "Failed chat completion calls by error kind and category.",
    ["provider", "kind", "category"],
)


def record_error(provider: str, error: ProviderError) -> None:
    ERRORS_TOTAL.labels(
        provider=provider, kind=error.kind.value, category=error.category.value
    ).inc()


def mask_secret(value: str | None) -> str:
    """Return *value* with everything but its first and last 4 characters hidden."""
    if not value:
        return ""
    if len(value) <= 12:
        return "*" * len(value)
    return f"{value[:4]}{'*' * 8}{value[-4:]}"


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog for the process.

    Args:
        level: Minimum level name (``"DEBUG"``, ``"INFO"``, ...).
        fmt: ``"json"`` for machine-readable lines, ``"console"`` for a
            human-friendly renderer during development.
    """
    renderer: structlog.types.Processor
    if fmt == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # httpx logs every request at INFO; we emit our own structured events.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def configure_tracing(
    service_name: str = "llm-bridge",
    otlp_endpoint: str | None = None,
    exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Install a global tracer provider.

    Spans are batched to an OTLP/HTTP collector at *otlp_endpoint* (for
    example ``http://localhost:4318``) and, when *exporter* is given, also
    handed to it synchronously.
    """
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    if otlp_endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{otlp_endpoint.rstrip('/')}/v1/traces"))
        )
    if exporter is not None:
        provider.add_span_processor(SimpleSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    return provider
