"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Database (MySQL-protocol compatible) ───────────────────────────────
    db_host: str = "tidb"
    db_port: int = 4000
    db_user: str = "root"
    db_password: str = ""
    db_database: str = "social_feed"
    # Full SQLAlchemy URL; wins over the db_* parts when set (tests use sqlite)
    database_url: Optional[str] = None
    db_pool_size: int = 20
    db_max_overflow: int = 10

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    # At-most-once enqueue window for presort refresh requests
    presort_dedupe_ttl_seconds: int = 300

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_new_posts: str = "new-posts"
    kafka_topic_feed_presort: str = "feed-presort"
    kafka_consumer_group: str = "presort-worker"

    # ── MinIO (S3-compatible) ──────────────────────────────────────────────
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "media"
    minio_url_expiry: int = 3600

    # ── Compatibility Service ──────────────────────────────────────────────
    compatibility_service_url: str = "http://compatibility-service:8002"
    compatibility_timeout: float = 2.0

    # ── Feed (request path) ────────────────────────────────────────────────
    feed_page_size: int = 20             # default `take`
    feed_max_take: int = 50
    feed_lite_limit: int = 2
    feed_post_lookback_days: int = 30    # 0 disables the lookback cutoff
    feed_post_candidate_limit: int = 200
    feed_suggestion_limit: int = 60
    feed_match_limit: int = 20
    feed_question_limit: int = 20
    feed_self_max_items: int = 3
    feed_following_max_items: int = 10
    feed_followers_max_items: int = 5
    # JSON override of the slot sequence / caps / weights (camelCase accepted)
    feed_config_json: Optional[str] = None

    # ── Presort job ────────────────────────────────────────────────────────
    presort_batch_size: int = 100
    presort_segment_size: int = 20
    presort_max_segments: int = 3
    presort_min_candidate_count: int = 100
    presort_min_segment_items: int = 5
    presort_ttl_minutes: int = 30
    presort_max_concurrent: int = 10
    presort_max_jitter_seconds: float = 180.0
    job_runner: str = "worker"           # "cli" disables batch jitter
    job_full: bool = False               # force recompute, ignore freshness
    job_force: bool = False

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "feed-presort"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
