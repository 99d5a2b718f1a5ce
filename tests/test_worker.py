from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from feedpresort.database import utcnow
from feedpresort.feed.config import DEFAULT_FEED_CONFIG
from feedpresort.feed.presorted import PresortedLeafItem, epoch_ms
from feedpresort.feed.segments import store_segment
from feedpresort.models import JobRun, PresortedFeedSegment
from feedpresort.workers import presort_worker
from feedpresort.workers.presort_worker import handle_new_post, handle_presort_request, parse_args


def leaves(count=5):
    now_ms = epoch_ms(utcnow())
    return [
        PresortedLeafItem(type="post", id=f"p{i}", actor_id=f"a{i}", source="post", created_at=now_ms)
        for i in range(count)
    ]


@pytest.fixture
def release(monkeypatch):
    mock = AsyncMock()
    monkeypatch.setattr(presort_worker, "release_presort_slot", mock)
    return mock


def test_parse_args():
    args = parse_args(["--user-id", "u1", "--incremental", "--no-jitter"])
    assert args.user_id == "u1"
    assert args.incremental
    assert args.no_jitter
    assert not args.batch
    assert parse_args(["--batch", "--batch-size", "25"]).batch_size == 25


@pytest.mark.asyncio
async def test_presort_request_runs_job_and_releases_key(session_factory, db, make, release):
    viewer = await make.user()
    for a in range(4):
        author = await make.user()
        for p in range(2):
            await make.post(author, minutes_ago=a * 10 + p)
    await make.commit()

    await handle_presort_request(
        {"user_id": viewer, "reason": "missing"}, session_factory, DEFAULT_FEED_CONFIG
    )

    run = (await db.execute(select(JobRun))).scalar_one()
    assert run.trigger == "EVENT"
    assert run.status == "SUCCESS"
    rows = await db.execute(
        select(PresortedFeedSegment.segment_index).where(PresortedFeedSegment.user_id == viewer)
    )
    assert list(rows.scalars()) == [0]
    release.assert_awaited_once_with(viewer)


@pytest.mark.asyncio
async def test_presort_request_releases_key_on_failure(session_factory, release, monkeypatch):
    monkeypatch.setattr(
        presort_worker, "run_feed_presort_job", AsyncMock(side_effect=RuntimeError("boom"))
    )

    with pytest.raises(RuntimeError):
        await handle_presort_request({"user_id": "u1"}, session_factory, DEFAULT_FEED_CONFIG)

    release.assert_awaited_once_with("u1")


@pytest.mark.asyncio
async def test_malformed_messages_are_ignored(session_factory, release):
    dispatcher = AsyncMock()

    await handle_presort_request({}, session_factory, DEFAULT_FEED_CONFIG)
    assert await handle_new_post({"post_id": "p1"}, session_factory, dispatcher) == []

    release.assert_not_awaited()
    dispatcher.request_refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_new_post_invalidates_author_and_followers(session_factory, db, make):
    author = await make.user()
    fan = await make.user()
    stranger = await make.user()
    await make.follow(fan, author)
    for user_id in (author, fan, stranger):
        await store_segment(db, user_id, 0, leaves(), DEFAULT_FEED_CONFIG.version)
    await make.commit()
    dispatcher = AsyncMock()

    affected = await handle_new_post(
        {"post_id": "p-new", "user_id": author}, session_factory, dispatcher
    )

    assert affected == [author, fan]
    rows = await db.execute(select(PresortedFeedSegment.user_id))
    assert list(rows.scalars()) == [stranger]
    assert [c.args for c in dispatcher.request_refresh.await_args_list] == [
        (author, "new-post"), (fan, "new-post"),
    ]
