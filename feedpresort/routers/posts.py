"""
Post endpoints (trigger sources for segment invalidation):
  POST /posts             — create a post, publish NewPost
  POST /posts/{id}/like   — like a post
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feedpresort.clients.kafka_producer import publish_new_post
from feedpresort.database import get_db
from feedpresort.feed.segments import invalidate_user_and_follower_feeds
from feedpresort.models import LikedPost, Media, Post, PostMedia, PostStats, User
from feedpresort.schemas import LikeRequest, PostCreate, PostResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
async def create_post(body: PostCreate, db: AsyncSession = Depends(get_db)):
    """
    1. Validate the author exists.
    2. Persist the post, its stats row and media attachments.
    3. Emit a 'NewPost' Kafka event → presort-worker invalidates the
       author's and followers' segments. If the event can't be published
       the invalidation runs inline.
    """
    with tracer.start_as_current_span("create_post") as span:
        user = await db.get(User, body.user_id)
        if not user or user.deleted_at is not None:
            raise HTTPException(status_code=404, detail="Author not found")

        post = Post(user_id=body.user_id, content=body.content, visibility=body.visibility)
        db.add(post)
        await db.flush()     # materialise post_id
        db.add(PostStats(post_id=post.post_id))

        if body.media_ids:
            rows = await db.execute(
                select(Media.media_id).where(
                    Media.media_id.in_(body.media_ids),
                    Media.owner_user_id == body.user_id,
                    Media.deleted_at.is_(None),
                )
            )
            owned = set(rows.scalars())
            for position, media_id in enumerate(m for m in body.media_ids if m in owned):
                db.add(PostMedia(post_id=post.post_id, media_id=media_id, position=position))

        await db.flush()
        await db.refresh(post)  # load server-generated fields (created_at)
        span.set_attribute("post.id", post.post_id)

        try:
            await publish_new_post(post_id=post.post_id, user_id=post.user_id)
        except Exception as exc:
            logger.warning("NewPost publish failed for %s: %s — invalidating inline", post.post_id, exc)
            await invalidate_user_and_follower_feeds(db, post.user_id)

        logger.info("Post created: %s by user %s", post.post_id, post.user_id)
        return PostResponse.model_validate(post)


@router.post("/{post_id}/like", status_code=status.HTTP_204_NO_CONTENT)
async def like_post(post_id: str, body: LikeRequest, db: AsyncSession = Depends(get_db)):
    """Like a post — idempotent. Changes the liker's presort input hash."""
    with tracer.start_as_current_span("like_post"):
        post = await db.get(Post, post_id)
        if not post or post.deleted_at is not None:
            raise HTTPException(status_code=404, detail="Post not found")

        existing = await db.execute(
            select(LikedPost).where(LikedPost.user_id == body.user_id, LikedPost.post_id == post_id)
        )
        if existing.scalar_one_or_none():
            return  # already liked

        db.add(LikedPost(user_id=body.user_id, post_id=post_id))
        stats = await db.get(PostStats, post_id)
        if stats is None:
            db.add(PostStats(post_id=post_id, like_count=1))
        else:
            stats.like_count += 1
