"""Observability helpers for tracing, metrics, and logging."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from time import perf_counter

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Histogram

from .config import settings

logger = logging.getLogger("grc_rag")
logging.basicConfig(
    level=getattr(logging, settings.observability.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s | %(message)s",
)

if settings.observability.enable_tracing:
    resource = Resource.create({"service.name": "grc-rag"})
    provider = TracerProvider(resource=resource)
    processor = BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.observability.otlp_endpoint))
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
tracer = trace.get_tracer(__name__)

OPERATION_LATENCY = Histogram(
    "grc_rag_operation_latency_ms",
    "Latency of retrieval, indexing and RAG operations",
    labelnames=("operation",),
    buckets=(5, 25, 50, 100, 250, 500, 1000, 2000, 5000),
)
CACHE_LOOKUPS = Counter("grc_rag_cache_lookups", "Query cache lookups", labelnames=("namespace", "outcome"))
INDEXING_JOBS = Counter("grc_rag_indexing_jobs", "Indexing job outcomes", labelnames=("namespace", "status"))
BRANCH_FAILURES = Counter("grc_rag_branch_failures", "Failed or timed out search branches", labelnames=("branch",))


@contextmanager
def traced_span(name: str, **attributes: str | int | float | bool) -> Iterator[trace.Span]:
    start = perf_counter()
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        try:
            yield span
        finally:
            duration_ms = (perf_counter() - start) * 1000
            OPERATION_LATENCY.labels(name).observe(duration_ms)


def record_cache_lookup(namespace: str, hit: bool) -> None:
    CACHE_LOOKUPS.labels(namespace, "hit" if hit else "miss").inc()


def record_indexing_outcome(namespace: str, status: str) -> None:
    INDEXING_JOBS.labels(namespace, status).inc()


def record_branch_failure(branch: str) -> None:
    BRANCH_FAILURES.labels(branch).inc()
