"""
Async Kafka producer.

Publishes two event types:
  new-posts     — emitted by POST /posts after a post is persisted.
                  Consumed by: presort-worker (segment invalidation).
  feed-presort  — emitted by the feed endpoint when a user's presorted
                  segments are missing, stale or thin.
                  Consumed by: presort-worker (single-user presort job).
"""
import json
import logging
from typing import Optional

from aiokafka import AIOKafkaProducer

from feedpresort.config import settings

logger = logging.getLogger(__name__)

_producer: Optional[AIOKafkaProducer] = None


async def init_kafka() -> None:
    global _producer
    _producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        acks="all",          # wait for all in-sync replicas
        enable_idempotence=True,
    )
    await _producer.start()
    logger.info(
        "Kafka producer started → %s", settings.kafka_bootstrap_servers
    )


async def stop_kafka() -> None:
    global _producer
    if _producer:
        await _producer.stop()
        _producer = None


def get_producer() -> AIOKafkaProducer:
    if _producer is None:
        raise RuntimeError("Kafka producer not initialised")
    return _producer


async def publish_new_post(post_id: str, user_id: str) -> None:
    """
    Emit a NewPost event to the 'new-posts' topic.

    Schema:
      { post_id, user_id }
    """
    producer = get_producer()
    payload = {"post_id": post_id, "user_id": user_id}
    await producer.send_and_wait(settings.kafka_topic_new_posts, payload)
    logger.debug("Published NewPost event for post_id=%s", post_id)


async def publish_presort_request(user_id: str, reason: str) -> None:
    """
    Emit a presort refresh request to the 'feed-presort' topic.

    Schema:
      { user_id, reason }

    Keyed by user id so one user's requests land on a single partition.
    """
    producer = get_producer()
    payload = {"user_id": user_id, "reason": reason}
    await producer.send_and_wait(
        settings.kafka_topic_feed_presort, payload, key=user_id.encode("utf-8")
    )
    logger.debug("Published presort request for user_id=%s (%s)", user_id, reason)
