"""
Presort Worker — Kafka consumer and batch entry point.

Topics:
  feed-presort  { user_id, reason }
                Run the single-user presort job, then release the user's
                dedupe key so the next refresh can be enqueued.
  new-posts     { post_id, user_id }
                Delete the author's and followers' segments in one batched
                delete, then request a refresh for each affected feed.

CLI:
  python -m feedpresort.workers.presort_worker              # consume forever
  python -m feedpresort.workers.presort_worker --batch      # one batch pass (cron)
  python -m feedpresort.workers.presort_worker --user-id U  # one user
"""
import argparse
import asyncio
import json
import logging

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace
from sqlalchemy.ext.asyncio import async_sessionmaker

from feedpresort.clients.kafka_producer import init_kafka, stop_kafka
from feedpresort.clients.redis_client import close_redis, init_redis, release_presort_slot
from feedpresort.config import settings
from feedpresort.database import get_session_factory, init_db
from feedpresort.feed.config import FeedConfig, load_feed_config
from feedpresort.feed.segments import invalidate_user_and_follower_feeds
from feedpresort.jobs.dispatch import PresortDispatcher
from feedpresort.jobs.presort import PresortOptions, run_feed_presort_job
from feedpresort.telemetry import setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


# ─────────────────────────── Message Handlers ────────────────────────────

async def handle_presort_request(
    msg: dict,
    session_factory: async_sessionmaker,
    config: FeedConfig,
) -> None:
    user_id = msg.get("user_id")
    if not user_id:
        logger.warning("Malformed presort request: %s", msg)
        return

    with tracer.start_as_current_span("presort_request") as span:
        span.set_attribute("user.id", user_id)
        span.set_attribute("presort.reason", msg.get("reason") or "")
        try:
            await run_feed_presort_job(
                session_factory,
                PresortOptions(user_id=user_id, trigger="EVENT"),
                config,
            )
        finally:
            await release_presort_slot(user_id)


async def handle_new_post(
    msg: dict,
    session_factory: async_sessionmaker,
    dispatcher: PresortDispatcher,
) -> list[str]:
    post_id = msg.get("post_id")
    user_id = msg.get("user_id")
    if not post_id or not user_id:
        logger.warning("Malformed NewPost event: %s", msg)
        return []

    with tracer.start_as_current_span("invalidate_feeds") as span:
        span.set_attribute("post.id", post_id)
        span.set_attribute("post.user_id", user_id)

        async with session_factory() as db:
            affected = await invalidate_user_and_follower_feeds(db, user_id)
            await db.commit()
        span.set_attribute("invalidate.feed_count", len(affected))

        for affected_user in affected:
            await dispatcher.request_refresh(affected_user, "new-post")
        logger.info("Post %s invalidated %d feeds", post_id, len(affected))
        return affected


# ─────────────────────────── Main Loop ───────────────────────────────────

async def consume() -> None:
    setup_tracing()
    await init_db()
    await init_redis()
    await init_kafka()

    session_factory = get_session_factory()
    config = load_feed_config(settings.feed_config_json)
    dispatcher = PresortDispatcher()

    consumer = AIOKafkaConsumer(
        settings.kafka_topic_feed_presort,
        settings.kafka_topic_new_posts,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        auto_offset_reset="earliest",
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
    )
    await consumer.start()
    logger.info(
        "Presort worker listening on topics '%s', '%s'",
        settings.kafka_topic_feed_presort, settings.kafka_topic_new_posts,
    )

    try:
        async for msg in consumer:
            try:
                if msg.topic == settings.kafka_topic_feed_presort:
                    await handle_presort_request(msg.value, session_factory, config)
                else:
                    await handle_new_post(msg.value, session_factory, dispatcher)
            except Exception as exc:
                logger.error("Presort worker error on %s for %s: %s", msg.topic, msg.value, exc)
    finally:
        await consumer.stop()
        await stop_kafka()
        await close_redis()


async def run_once(args: argparse.Namespace) -> None:
    setup_tracing()
    await init_db()
    options = PresortOptions(
        user_id=args.user_id,
        incremental=True if args.incremental else None,
        no_jitter=args.no_jitter,
        trigger="MANUAL" if args.user_id else "CRON",
    )
    if args.batch_size:
        options.batch_size = args.batch_size
    summary = await run_feed_presort_job(get_session_factory(), options)
    logger.info("Presort run complete: %s", summary.to_metadata())


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Feed presort worker")
    parser.add_argument("--batch", action="store_true", help="run one batch pass and exit")
    parser.add_argument("--user-id", help="presort a single user and exit")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--incremental", action="store_true", help="refresh segment 0 only")
    parser.add_argument("--no-jitter", action="store_true", help="skip the batch start jitter")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    if args.batch or args.user_id:
        asyncio.run(run_once(args))
    else:
        asyncio.run(consume())


if __name__ == "__main__":
    main()
