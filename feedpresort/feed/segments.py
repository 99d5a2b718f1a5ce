"""
Presorted segment store.

Segments are keyed by (user_id, segment_index) and hold a page of ranked,
presorted items stamped with the algorithm version that produced them.

  store_segment / store_segments   upsert (all indices of one user in the
                                   caller's transaction)
  get_segment                      live segment or None
  read_segment                     segment plus a status the request path
                                   acts on (hit / missing / expired /
                                   version_mismatch / thin / corrupt)
  invalidate_*                     hard deletes on upstream changes
  cleanup_expired_segments         housekeeping

Functions here never commit; the caller owns the transaction.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from feedpresort.config import settings
from feedpresort.database import utcnow
from feedpresort.exceptions import SegmentDecodeError, ThinSegmentError
from feedpresort.feed.presorted import decode_segment_items, encode_segment_items
from feedpresort.feed.relationships import get_follower_ids
from feedpresort.models import PresortedFeedSegment

logger = logging.getLogger(__name__)


class SegmentStatus(str, enum.Enum):
    HIT = "hit"
    MISSING = "missing"
    EXPIRED = "expired"
    VERSION_MISMATCH = "version_mismatch"
    THIN = "thin"
    CORRUPT = "corrupt"


@dataclass
class SegmentRead:
    status: SegmentStatus
    segment: Optional[PresortedFeedSegment] = None
    items: list = field(default_factory=list)


@dataclass
class SegmentWrite:
    segment_index: int
    items: list
    phase1_json: Optional[str] = None


def min_segment_items(segment_index: int, segment_size: Optional[int] = None) -> int:
    """Items required for a segment to be stored or served."""
    if segment_index != 0:
        return 1
    size = segment_size or settings.presort_segment_size
    return max(1, min(settings.presort_min_segment_items, size))


async def _load(db: AsyncSession, user_id: str, segment_index: int) -> Optional[PresortedFeedSegment]:
    result = await db.execute(
        select(PresortedFeedSegment).where(
            PresortedFeedSegment.user_id == user_id,
            PresortedFeedSegment.segment_index == segment_index,
        )
    )
    return result.scalar_one_or_none()


async def get_segment(
    db: AsyncSession,
    user_id: str,
    segment_index: int,
    now: Optional[datetime] = None,
) -> Optional[PresortedFeedSegment]:
    """Return the segment if present and not expired."""
    now = now or utcnow()
    segment = await _load(db, user_id, segment_index)
    if segment is None or segment.expires_at <= now:
        return None
    return segment


async def read_segment(
    db: AsyncSession,
    user_id: str,
    segment_index: int,
    algorithm_version: str,
    segment_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SegmentRead:
    now = now or utcnow()
    segment = await _load(db, user_id, segment_index)
    if segment is None:
        return SegmentRead(SegmentStatus.MISSING)

    if segment.algorithm_version != algorithm_version:
        logger.info(
            "Segment %d for user %s has version %s, running %s",
            segment_index, user_id, segment.algorithm_version, algorithm_version,
        )
        return SegmentRead(SegmentStatus.VERSION_MISMATCH, segment)

    try:
        items = decode_segment_items(segment.items)
    except SegmentDecodeError as exc:
        logger.warning("Segment %d for user %s is unreadable: %s", segment_index, user_id, exc)
        return SegmentRead(SegmentStatus.CORRUPT, segment)

    if segment.expires_at <= now:
        return SegmentRead(SegmentStatus.EXPIRED, segment, items)
    if len(items) < min_segment_items(segment_index, segment_size):
        return SegmentRead(SegmentStatus.THIN, segment, items)
    return SegmentRead(SegmentStatus.HIT, segment, items)


async def store_segment(
    db: AsyncSession,
    user_id: str,
    segment_index: int,
    items: list,
    algorithm_version: str,
    ttl_minutes: Optional[int] = None,
    phase1_json: Optional[str] = None,
    segment_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PresortedFeedSegment:
    """Upsert one segment; a thin segment 0 raises ThinSegmentError."""
    required = min_segment_items(segment_index, segment_size)
    if len(items) < required:
        if segment_index == 0:
            raise ThinSegmentError(user_id, len(items), required)
        raise ValueError(f"segment {segment_index} for user {user_id} is empty")

    now = now or utcnow()
    ttl = ttl_minutes if ttl_minutes is not None else settings.presort_ttl_minutes
    payload = encode_segment_items(items)
    expires_at = now + timedelta(minutes=ttl)

    segment = await _load(db, user_id, segment_index)
    if segment is None:
        segment = PresortedFeedSegment(user_id=user_id, segment_index=segment_index)
        db.add(segment)
    segment.items = payload
    segment.phase1_json = phase1_json if segment_index == 0 else None
    segment.algorithm_version = algorithm_version
    segment.computed_at = now
    segment.expires_at = expires_at
    await db.flush()
    return segment


async def store_segments(
    db: AsyncSession,
    user_id: str,
    segments: list[SegmentWrite],
    algorithm_version: str,
    ttl_minutes: Optional[int] = None,
    replace_all: bool = True,
    segment_size: Optional[int] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Write all segments of one user, index-ascending. With `replace_all`,
    stored indices outside the new set are deleted so old and new pages
    never mix. Nothing is committed here.
    """
    now = now or utcnow()
    ordered = sorted(segments, key=lambda s: s.segment_index)
    for write in ordered:
        await store_segment(
            db,
            user_id,
            write.segment_index,
            write.items,
            algorithm_version,
            ttl_minutes=ttl_minutes,
            phase1_json=write.phase1_json,
            segment_size=segment_size,
            now=now,
        )
    if replace_all:
        indices = [write.segment_index for write in ordered]
        stmt = delete(PresortedFeedSegment).where(PresortedFeedSegment.user_id == user_id)
        if indices:
            stmt = stmt.where(PresortedFeedSegment.segment_index.not_in(indices))
        await db.execute(stmt)
    return len(ordered)


async def invalidate_all_segments_for_user(db: AsyncSession, user_id: str) -> int:
    result = await db.execute(
        delete(PresortedFeedSegment).where(PresortedFeedSegment.user_id == user_id)
    )
    logger.info("Invalidated %d segments for user %s", result.rowcount, user_id)
    return result.rowcount


async def batch_invalidate_segments(db: AsyncSession, user_ids: list[str]) -> int:
    if not user_ids:
        return 0
    result = await db.execute(
        delete(PresortedFeedSegment).where(PresortedFeedSegment.user_id.in_(set(user_ids)))
    )
    return result.rowcount


async def invalidate_user_and_follower_feeds(db: AsyncSession, user_id: str) -> list[str]:
    """
    New content by `user_id` changes their own feed and every follower's.
    Returns the affected user ids.
    """
    follower_ids = await get_follower_ids(db, user_id)
    affected = [user_id] + [fid for fid in follower_ids if fid != user_id]
    removed = await batch_invalidate_segments(db, affected)
    logger.info(
        "Invalidated %d segments across %d feeds after new content by %s",
        removed, len(affected), user_id,
    )
    return affected


async def cleanup_expired_segments(db: AsyncSession, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await db.execute(
        delete(PresortedFeedSegment).where(PresortedFeedSegment.expires_at <= now)
    )
    if result.rowcount:
        logger.info("Removed %d expired segments", result.rowcount)
    return result.rowcount
