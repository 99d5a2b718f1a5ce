"""
Relationship provider.

Builds the tiered part of the feed: the viewer's own posts, posts by people
they follow and posts by followers they don't follow back. These items are
merged ahead of the ranked pool on every request.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from feedpresort.config import settings
from feedpresort.database import utcnow
from feedpresort.feed.types import FeedItem, PostCandidate
from feedpresort.models import Follow, Post, Profile, User

logger = logging.getLogger(__name__)


@dataclass
class RelationshipIds:
    following_ids: list[str] = field(default_factory=list)
    follower_ids: list[str] = field(default_factory=list)


@dataclass
class CursorCutoff:
    id: str
    created_at: object  # datetime


async def get_following_ids(db: AsyncSession, user_id: str) -> list[str]:
    rows = await db.execute(select(Follow.followee_id).where(Follow.follower_id == user_id))
    return list(rows.scalars())


async def get_follower_ids(db: AsyncSession, user_id: str) -> list[str]:
    rows = await db.execute(select(Follow.follower_id).where(Follow.followee_id == user_id))
    return list(rows.scalars())


async def get_relationship_ids(db: AsyncSession, user_id: str) -> RelationshipIds:
    """Followers that the viewer also follows only count as following."""
    following = await get_following_ids(db, user_id)
    followers = await get_follower_ids(db, user_id)
    following_set = set(following)
    return RelationshipIds(
        following_ids=following,
        follower_ids=[fid for fid in followers if fid not in following_set],
    )


def post_window_filters(cursor: Optional[CursorCutoff]) -> list:
    """Lookback cutoff and keyset-cursor predicates shared by post queries."""
    filters = [Post.deleted_at.is_(None)]
    if settings.feed_post_lookback_days > 0:
        filters.append(
            Post.created_at >= utcnow() - timedelta(days=settings.feed_post_lookback_days)
        )
    if cursor is not None:
        filters.append(
            or_(
                Post.created_at < cursor.created_at,
                and_(Post.created_at == cursor.created_at, Post.post_id < cursor.id),
            )
        )
    return filters


def post_candidate_query():
    return (
        select(Post.post_id, Post.user_id, Post.content, Post.created_at, Profile.display_name)
        .join(User, User.user_id == Post.user_id)
        .outerjoin(Profile, Profile.user_id == Post.user_id)
        .where(User.deleted_at.is_(None))
        .order_by(Post.created_at.desc(), Post.post_id.desc())
    )


def rows_to_post_candidates(rows) -> list[PostCandidate]:
    return [
        PostCandidate(
            id=post_id,
            actor_id=user_id,
            text=content,
            created_at=created_at,
            actor_name=display_name,
        )
        for post_id, user_id, content, created_at, display_name in rows
    ]


async def get_relationship_posts(
    db: AsyncSession,
    user_id: str,
    ids: RelationshipIds,
    cursor: Optional[CursorCutoff] = None,
) -> dict[str, list[PostCandidate]]:
    window = post_window_filters(cursor)
    following_ids = [fid for fid in ids.following_ids if fid != user_id]
    follower_ids = [fid for fid in ids.follower_ids if fid != user_id]

    self_rows = await db.execute(
        post_candidate_query()
        .where(Post.user_id == user_id, *window)
        .limit(settings.feed_self_max_items)
    )
    tiers = {"self": rows_to_post_candidates(self_rows.all()), "following": [], "followers": []}

    if following_ids:
        rows = await db.execute(
            post_candidate_query()
            .where(
                Post.user_id.in_(following_ids),
                Post.visibility.in_(["PUBLIC", "PRIVATE"]),
                *window,
            )
            .limit(settings.feed_following_max_items)
        )
        tiers["following"] = rows_to_post_candidates(rows.all())

    if follower_ids:
        rows = await db.execute(
            post_candidate_query()
            .where(Post.user_id.in_(follower_ids), Post.visibility == "PUBLIC", *window)
            .limit(settings.feed_followers_max_items)
        )
        tiers["followers"] = rows_to_post_candidates(rows.all())

    return tiers


def build_relationship_items(tiers: dict[str, list[PostCandidate]]) -> list[FeedItem]:
    items: list[FeedItem] = []
    for tier in ("self", "following", "followers"):
        items.extend(FeedItem(candidate=post, tier=tier) for post in tiers.get(tier, []))
    return items
