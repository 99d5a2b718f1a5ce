"""
Presort refresh dispatcher.

The request path asks for a user's segments to be recomputed by publishing
a `feed-presort` message. A Redis key claimed with SET NX EX makes the
enqueue at-most-once per user inside the dedupe window; the worker deletes
the key once the job is done. The request never waits on the job itself,
and enqueue failures are logged and swallowed.
"""
import logging
from typing import Awaitable, Callable, Optional

from feedpresort.clients.kafka_producer import publish_presort_request
from feedpresort.clients.redis_client import acquire_presort_slot, release_presort_slot
from feedpresort.config import settings
from feedpresort.telemetry import PRESORT_REFRESH_REQUESTS

logger = logging.getLogger(__name__)


class PresortDispatcher:
    def __init__(
        self,
        redis=None,
        publish: Optional[Callable[[str, str], Awaitable[None]]] = None,
        dedupe_ttl_seconds: Optional[int] = None,
    ) -> None:
        # None means the process-wide clients initialised at startup
        self._redis = redis
        self._publish = publish or publish_presort_request
        self._ttl = dedupe_ttl_seconds or settings.presort_dedupe_ttl_seconds

    async def request_refresh(self, user_id: str, reason: str) -> bool:
        """True when a new request was enqueued."""
        try:
            acquired = await acquire_presort_slot(user_id, self._ttl, redis=self._redis)
        except Exception as exc:
            logger.warning("Presort dedupe check failed for %s: %s — skipping refresh", user_id, exc)
            PRESORT_REFRESH_REQUESTS.labels(outcome="error").inc()
            return False

        if not acquired:
            PRESORT_REFRESH_REQUESTS.labels(outcome="deduped").inc()
            return False

        try:
            await self._publish(user_id, reason)
        except Exception as exc:
            logger.warning("Presort enqueue failed for %s: %s — releasing dedupe key", user_id, exc)
            PRESORT_REFRESH_REQUESTS.labels(outcome="error").inc()
            try:
                await release_presort_slot(user_id, redis=self._redis)
            except Exception as release_exc:
                logger.warning("Could not release dedupe key for %s: %s", user_id, release_exc)
            return False

        PRESORT_REFRESH_REQUESTS.labels(outcome="enqueued").inc()
        logger.info("Presort refresh enqueued for %s (%s)", user_id, reason)
        return True
