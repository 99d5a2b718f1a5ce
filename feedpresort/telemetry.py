"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for the request path, the segment cache and presort jobs

Both are initialised once at startup (API and presort worker).
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Histogram

from feedpresort.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
FEED_LATENCY = Histogram(
    "feed_latency_seconds",
    "End-to-end latency of GET /feed",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

FEED_SERVED_TOTAL = Counter(
    "feed_served_total",
    "Feed responses by the path that produced them",
    ["path"],  # 'segment' | 'phase1' | 'live' | 'relationship-only' | 'empty'
)

FEED_CANDIDATES_TOTAL = Counter(
    "feed_candidates_total",
    "Candidates fetched for live feed requests",
    ["kind"],  # 'post' | 'suggestion' | 'question'
)

SEGMENT_LOOKUPS_TOTAL = Counter(
    "feed_segment_lookups_total",
    "Segment 0 reads on the request path by outcome",
    ["result"],  # 'hit' | 'missing' | 'expired' | 'version_mismatch' | 'thin' | 'corrupt'
)

HYDRATION_FAILURES_TOTAL = Counter(
    "feed_hydration_failures_total",
    "Enrichment fetches that failed and degraded to empty",
    ["source"],
)

PRESORT_USERS_TOTAL = Counter(
    "feed_presort_users_total",
    "Per-user presort outcomes",
    ["outcome"],  # 'written' | 'fresh' | 'empty' | 'failed'
)

PRESORT_SEGMENTS_WRITTEN = Counter(
    "feed_presort_segments_written_total",
    "Segments written by the presort job",
)

PRESORT_USER_DURATION = Histogram(
    "feed_presort_user_duration_seconds",
    "Duration of a single user's presort pipeline",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

JOB_RUNS_TOTAL = Counter(
    "job_runs_total",
    "Job executions by name and final status",
    ["job_name", "status"],
)

PRESORT_REFRESH_REQUESTS = Counter(
    "feed_presort_refresh_requests_total",
    "Presort refresh requests from the request path by outcome",
    ["outcome"],  # 'enqueued' | 'deduped' | 'error'
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Auto-instrument popular libraries so their spans appear in traces
    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
