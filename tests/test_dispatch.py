from unittest.mock import AsyncMock

import pytest

from feedpresort.clients.redis_client import PRESORT_PENDING_KEY
from feedpresort.jobs.dispatch import PresortDispatcher


def make_redis(set_result=True):
    redis = AsyncMock()
    redis.set.return_value = set_result
    return redis


@pytest.mark.asyncio
async def test_first_request_claims_key_and_publishes():
    redis = make_redis()
    publish = AsyncMock()
    dispatcher = PresortDispatcher(redis=redis, publish=publish, dedupe_ttl_seconds=60)

    assert await dispatcher.request_refresh("u1", "missing")

    redis.set.assert_awaited_once_with(
        PRESORT_PENDING_KEY.format(user_id="u1"), "1", nx=True, ex=60
    )
    publish.assert_awaited_once_with("u1", "missing")


@pytest.mark.asyncio
async def test_pending_request_is_deduped():
    redis = make_redis(set_result=None)
    publish = AsyncMock()
    dispatcher = PresortDispatcher(redis=redis, publish=publish)

    assert not await dispatcher.request_refresh("u1", "live")
    publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_failure_releases_the_key():
    redis = make_redis()
    publish = AsyncMock(side_effect=ConnectionError("broker down"))
    dispatcher = PresortDispatcher(redis=redis, publish=publish)

    assert not await dispatcher.request_refresh("u1", "expired")
    redis.delete.assert_awaited_once_with(PRESORT_PENDING_KEY.format(user_id="u1"))


@pytest.mark.asyncio
async def test_redis_failure_never_raises():
    redis = AsyncMock()
    redis.set.side_effect = ConnectionError("redis down")
    publish = AsyncMock()
    dispatcher = PresortDispatcher(redis=redis, publish=publish)

    assert not await dispatcher.request_refresh("u1", "thin")
    publish.assert_not_awaited()
