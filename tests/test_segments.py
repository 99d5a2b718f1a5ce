from datetime import timedelta

import pytest
from sqlalchemy import select

from feedpresort.database import utcnow
from feedpresort.exceptions import ThinSegmentError
from feedpresort.feed.presorted import PresortedLeafItem, epoch_ms
from feedpresort.feed.segments import (
    SegmentStatus,
    SegmentWrite,
    cleanup_expired_segments,
    get_segment,
    invalidate_all_segments_for_user,
    invalidate_user_and_follower_feeds,
    min_segment_items,
    read_segment,
    store_segment,
    store_segments,
)
from feedpresort.models import PresortedFeedSegment

VERSION = "v9"


def leaves(count, prefix="p"):
    now_ms = epoch_ms(utcnow())
    return [
        PresortedLeafItem(
            type="post", id=f"{prefix}{i}", actor_id=f"a{i}", source="post", created_at=now_ms
        )
        for i in range(count)
    ]


async def _indices(db, user_id):
    rows = await db.execute(
        select(PresortedFeedSegment.segment_index)
        .where(PresortedFeedSegment.user_id == user_id)
        .order_by(PresortedFeedSegment.segment_index)
    )
    return list(rows.scalars())


def test_min_segment_items_only_guards_the_first_segment():
    assert min_segment_items(0, 20) == 5
    assert min_segment_items(0, 3) == 3
    assert min_segment_items(1, 20) == 1


@pytest.mark.asyncio
async def test_store_and_read_hit(db):
    await store_segment(db, "u1", 0, leaves(5), VERSION, phase1_json='{"items":[]}')
    await db.commit()

    read = await read_segment(db, "u1", 0, VERSION)

    assert read.status == SegmentStatus.HIT
    assert [item.id for item in read.items] == [f"p{i}" for i in range(5)]
    assert read.segment.phase1_json == '{"items":[]}'


@pytest.mark.asyncio
async def test_read_statuses(db):
    now = utcnow()
    assert (await read_segment(db, "nobody", 0, VERSION)).status == SegmentStatus.MISSING

    await store_segment(db, "old", 0, leaves(5), "v1", now=now)
    assert (await read_segment(db, "old", 0, VERSION)).status == SegmentStatus.VERSION_MISMATCH

    await store_segment(db, "stale", 0, leaves(5), VERSION, ttl_minutes=1, now=now - timedelta(hours=1))
    stale = await read_segment(db, "stale", 0, VERSION, now=now)
    assert stale.status == SegmentStatus.EXPIRED
    assert len(stale.items) == 5
    assert await get_segment(db, "stale", 0, now=now) is None

    db.add(
        PresortedFeedSegment(
            user_id="broken", segment_index=0, items={"schemaVersion": 99, "items": []},
            algorithm_version=VERSION, computed_at=now, expires_at=now + timedelta(hours=1),
        )
    )
    await db.flush()
    assert (await read_segment(db, "broken", 0, VERSION)).status == SegmentStatus.CORRUPT


@pytest.mark.asyncio
async def test_thin_first_segment_is_rejected_on_write_and_read(db):
    with pytest.raises(ThinSegmentError) as exc_info:
        await store_segment(db, "u1", 0, leaves(2), VERSION)
    assert exc_info.value.item_count == 2

    with pytest.raises(ValueError):
        await store_segment(db, "u1", 1, [], VERSION)

    # A tail segment may be small
    await store_segment(db, "u1", 1, leaves(1), VERSION)
    assert (await read_segment(db, "u1", 1, VERSION)).status == SegmentStatus.HIT

    # Settings can change after a write; the read path re-checks
    await store_segment(db, "u2", 0, leaves(3), VERSION, segment_size=3)
    assert (await read_segment(db, "u2", 0, VERSION, segment_size=20)).status == SegmentStatus.THIN


@pytest.mark.asyncio
async def test_store_segments_replaces_stale_tail(db):
    writes = [SegmentWrite(i, leaves(5, prefix=f"s{i}-")) for i in range(3)]
    await store_segments(db, "u1", writes, VERSION)
    await db.commit()
    assert await _indices(db, "u1") == [0, 1, 2]

    await store_segments(db, "u1", writes[:2], VERSION)
    await db.commit()
    assert await _indices(db, "u1") == [0, 1]

    # Incremental writes leave the tail alone
    await store_segments(db, "u1", writes[:1], VERSION, replace_all=False)
    assert await _indices(db, "u1") == [0, 1]


@pytest.mark.asyncio
async def test_phase1_only_kept_on_first_segment(db):
    await store_segment(db, "u1", 1, leaves(2), VERSION, phase1_json='{"items":[]}')
    segment = await get_segment(db, "u1", 1)
    assert segment.phase1_json is None


@pytest.mark.asyncio
async def test_invalidate_user_and_follower_feeds(db, make):
    author = await make.user()
    fan = await make.user()
    stranger = await make.user()
    await make.follow(fan, author)
    for user_id in (author, fan, stranger):
        await store_segment(db, user_id, 0, leaves(5), VERSION)
    await db.commit()

    affected = await invalidate_user_and_follower_feeds(db, author)
    await db.commit()

    assert affected == [author, fan]
    assert await _indices(db, author) == []
    assert await _indices(db, fan) == []
    assert await _indices(db, stranger) == [0]

    assert await invalidate_all_segments_for_user(db, stranger) == 1


@pytest.mark.asyncio
async def test_cleanup_expired_segments(db):
    now = utcnow()
    await store_segment(db, "old", 0, leaves(5), VERSION, ttl_minutes=5, now=now - timedelta(hours=1))
    await store_segment(db, "new", 0, leaves(5), VERSION, now=now)

    removed = await cleanup_expired_segments(db, now=now)

    assert removed == 1
    assert await _indices(db, "new") == [0]
