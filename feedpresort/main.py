"""
Feed Presort API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Initialise DB connection pool and create tables if not present
  3. Start Kafka producer
  4. Connect to Redis
  5. Initialise MinIO client & bucket
  6. Start the compatibility service HTTP client
  7. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from feedpresort.config import settings
from feedpresort.database import init_db
from feedpresort.telemetry import setup_tracing, instrument_app
from feedpresort.clients.kafka_producer import init_kafka, stop_kafka
from feedpresort.clients.redis_client import close_redis, init_redis
from feedpresort.clients.minio_client import init_minio
from feedpresort.clients.compatibility_client import compatibility_client
from feedpresort.routers import feed, posts

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Feed Presort API (env=%s)", settings.environment)

    await init_db()
    await init_kafka()
    await init_redis()
    init_minio()                    # sync — boto3 is not async
    await compatibility_client.start()

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    await stop_kafka()
    await close_redis()
    await compatibility_client.stop()


app = FastAPI(
    title="Feed Presort API",
    description=(
        "Sequence-driven feed: relationship tiers, presorted segments and "
        "live ranking with graceful degradation."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(feed.router, prefix="/feed", tags=["Feed"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
