"""
Hydration: ranked items → API payloads.

Enrichment runs as settled parallel fetches, each on its own session:

  post stats          like / comment counts
  post media          public + ready attachments, in position order
  suggestion media    latest public + ready media per suggested profile
  actor profiles      display name / avatar for authors and suggestions
  compatibility       viewer ↔ profile summaries (HTTP service)

A failed fetch is logged and counted, and its enrichment comes back empty;
it never fails the response. Presorted items are first re-materialised
from the store, and items whose row has vanished are dropped.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedpresort.clients.minio_client import resolve_media_url
from feedpresort.feed.candidates import question_candidate
from feedpresort.feed.presorted import PresortedGridItem, PresortedLeafItem
from feedpresort.feed.scoring import classify_media
from feedpresort.feed.types import (
    FeedItem,
    GridItem,
    PostCandidate,
    Presentation,
    SuggestionCandidate,
    ViewerContext,
    iter_leaves,
)
from feedpresort.models import Media, Post, PostMedia, PostStats, Profile, QuizQuestion, User
from feedpresort.schemas import (
    CompatibilityOut,
    FeedActor,
    FeedItemOut,
    FeedMediaOut,
    FeedStatsOut,
    HydratedPost,
    HydratedQuestion,
    HydratedSuggestion,
    PresentationOut,
    QuestionOptionOut,
)
from feedpresort.telemetry import HYDRATION_FAILURES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SUGGESTION_MEDIA_LIMIT = 6


@dataclass
class Enrichment:
    stats: dict[str, FeedStatsOut] = field(default_factory=dict)
    post_media: dict[str, list[FeedMediaOut]] = field(default_factory=dict)
    suggestion_media: dict[str, list[FeedMediaOut]] = field(default_factory=dict)
    actors: dict[str, tuple[Optional[str], Optional[str]]] = field(default_factory=dict)
    compatibility: dict[str, CompatibilityOut] = field(default_factory=dict)


# ─────────────────────────── Enrichment fetches ──────────────────────────

def _media_out(media: Media, order: int) -> FeedMediaOut:
    return FeedMediaOut(
        id=media.media_id,
        type=media.type,
        url=resolve_media_url(media.url, media.storage_key),
        thumb_url=media.thumb_url,
        width=media.width,
        height=media.height,
        duration_sec=media.duration_sec,
        order=order,
    )


def _servable_media():
    return (
        Media.deleted_at.is_(None),
        Media.visibility == "PUBLIC",
        Media.status == "READY",
    )


async def fetch_post_stats(db: AsyncSession, post_ids: list[str]) -> dict[str, FeedStatsOut]:
    if not post_ids:
        return {}
    rows = await db.execute(select(PostStats).where(PostStats.post_id.in_(post_ids)))
    return {
        row.post_id: FeedStatsOut(like_count=row.like_count, comment_count=row.comment_count)
        for row in rows.scalars()
    }


async def fetch_post_media(db: AsyncSession, post_ids: list[str]) -> dict[str, list[FeedMediaOut]]:
    if not post_ids:
        return {}
    rows = await db.execute(
        select(PostMedia.post_id, PostMedia.position, Media)
        .join(Media, Media.media_id == PostMedia.media_id)
        .where(PostMedia.post_id.in_(post_ids), *_servable_media())
        .order_by(PostMedia.post_id, PostMedia.position)
    )
    by_post: dict[str, list[FeedMediaOut]] = {}
    for post_id, position, media in rows.all():
        by_post.setdefault(post_id, []).append(_media_out(media, position))
    return by_post


async def fetch_suggestion_media(
    db: AsyncSession, user_ids: list[str]
) -> dict[str, list[FeedMediaOut]]:
    if not user_ids:
        return {}
    rows = await db.execute(
        select(Media)
        .where(Media.owner_user_id.in_(user_ids), *_servable_media())
        .order_by(Media.owner_user_id, Media.created_at.desc())
    )
    by_owner: dict[str, list[FeedMediaOut]] = {}
    for media in rows.scalars():
        owned = by_owner.setdefault(media.owner_user_id, [])
        if len(owned) < SUGGESTION_MEDIA_LIMIT:
            owned.append(_media_out(media, len(owned)))
    return by_owner


async def fetch_actor_profiles(
    db: AsyncSession, user_ids: list[str]
) -> dict[str, tuple[Optional[str], Optional[str]]]:
    """user id → (display name, avatar url)."""
    if not user_ids:
        return {}
    rows = await db.execute(
        select(Profile.user_id, Profile.display_name, Profile.avatar_url).where(
            Profile.user_id.in_(set(user_ids)), Profile.deleted_at.is_(None)
        )
    )
    return {user_id: (name, avatar) for user_id, name, avatar in rows.all()}


async def _with_session(session_factory: async_sessionmaker, fetch, ids):
    async with session_factory() as db:
        return await fetch(db, ids)


async def _fetch_compatibility(compatibility, viewer_id: Optional[str], user_ids: list[str]):
    if compatibility is None or not viewer_id or not user_ids:
        return {}
    return await compatibility.get_compatibility_map(viewer_id, user_ids)


async def fetch_enrichment(
    session_factory: async_sessionmaker,
    ctx: ViewerContext,
    items: list,
    compatibility=None,
) -> Enrichment:
    leaves = iter_leaves(items)
    post_ids = list(dict.fromkeys(leaf.candidate.id for leaf in leaves if leaf.type == "post"))
    suggestion_ids = list(
        dict.fromkeys(leaf.candidate.user_id for leaf in leaves if leaf.type == "suggestion")
    )
    # Suggestions need their avatar too
    actor_ids = list(
        dict.fromkeys([leaf.actor_id for leaf in leaves if leaf.type == "post"] + suggestion_ids)
    )

    fetches = {
        "post_stats": _with_session(session_factory, fetch_post_stats, post_ids),
        "post_media": _with_session(session_factory, fetch_post_media, post_ids),
        "suggestion_media": _with_session(session_factory, fetch_suggestion_media, suggestion_ids),
        "actor_profiles": _with_session(session_factory, fetch_actor_profiles, actor_ids),
        "compatibility": _fetch_compatibility(compatibility, ctx.user_id, suggestion_ids),
    }
    results = await asyncio.gather(*fetches.values(), return_exceptions=True)

    settled: dict[str, dict] = {}
    for source, result in zip(fetches, results):
        if isinstance(result, Exception):
            logger.warning("Hydration fetch '%s' failed: %s — serving without it", source, result)
            HYDRATION_FAILURES_TOTAL.labels(source=source).inc()
            settled[source] = {}
        else:
            settled[source] = result

    return Enrichment(
        stats=settled["post_stats"],
        post_media=settled["post_media"],
        suggestion_media=settled["suggestion_media"],
        actors=settled["actor_profiles"],
        compatibility=settled["compatibility"],
    )


# ─────────────────────────── Payload building ────────────────────────────

def resolve_compatibility(
    viewer_id: Optional[str], user_id: str, summaries: dict[str, CompatibilityOut]
) -> Optional[CompatibilityOut]:
    if not viewer_id or user_id == viewer_id:
        return None
    return summaries.get(user_id) or CompatibilityOut(status="INSUFFICIENT_DATA")


def _presentation_out(presentation: Optional[Presentation]) -> Optional[PresentationOut]:
    if presentation is None:
        return None
    return PresentationOut(mode=presentation.mode, accent=presentation.accent)


def _leaf_out(item: FeedItem, ctx: ViewerContext, enrichment: Enrichment) -> FeedItemOut:
    candidate = item.candidate
    out = FeedItemOut(
        type=candidate.kind,
        actor_id=item.actor_id,
        source=item.source,
        tier=item.tier,
        presentation=_presentation_out(item.presentation),
    )
    if candidate.kind == "post":
        name, avatar = enrichment.actors.get(candidate.actor_id, (None, None))
        media = enrichment.post_media.get(candidate.id, [])
        media_type = candidate.media_type
        if media_type == "text" and media:
            media_type = classify_media({m.type for m in media})
        out.post = HydratedPost(
            id=candidate.id,
            text=candidate.text,
            created_at=candidate.created_at,
            actor=FeedActor(
                id=candidate.actor_id,
                name=name or candidate.actor_name or "User",
                avatar_url=avatar,
            ),
            media_type=media_type,
            media=media,
            stats=enrichment.stats.get(candidate.id, FeedStatsOut()),
        )
    elif candidate.kind == "suggestion":
        media = enrichment.suggestion_media.get(candidate.user_id, [])
        out.suggestion = HydratedSuggestion(
            user_id=candidate.user_id,
            display_name=candidate.display_name,
            bio=candidate.bio,
            location_text=candidate.location_text,
            intent=candidate.intent,
            avatar_url=enrichment.actors.get(candidate.user_id, (None, None))[1],
            media=media,
            compatibility=resolve_compatibility(
                ctx.user_id, candidate.user_id, enrichment.compatibility
            ),
        )
    else:
        out.question = HydratedQuestion(
            id=candidate.id,
            quiz_id=candidate.quiz_id,
            quiz_title=candidate.quiz_title,
            prompt=candidate.prompt,
            order=candidate.order,
            options=[
                QuestionOptionOut(id=o.id, label=o.label, value=o.value, order=o.order)
                for o in candidate.options
            ],
        )
    return out


def build_item_payloads(
    items: list, ctx: ViewerContext, enrichment: Enrichment
) -> list[FeedItemOut]:
    payloads: list[FeedItemOut] = []
    for item in items:
        if isinstance(item, GridItem):
            payloads.append(
                FeedItemOut(
                    type="grid",
                    actor_id=item.actor_id,
                    source="grid",
                    tier=item.tier,
                    presentation=_presentation_out(item.presentation),
                    items=[_leaf_out(child, ctx, enrichment) for child in item.items],
                )
            )
        else:
            payloads.append(_leaf_out(item, ctx, enrichment))
    return payloads


async def hydrate_feed_items(
    session_factory: async_sessionmaker,
    ctx: ViewerContext,
    items: list,
    compatibility=None,
) -> list[FeedItemOut]:
    if not items:
        return []
    with tracer.start_as_current_span("hydrate") as span:
        span.set_attribute("hydrate.items", len(items))
        enrichment = await fetch_enrichment(session_factory, ctx, items, compatibility)
        return build_item_payloads(items, ctx, enrichment)


# ─────────────────────────── Presorted items ─────────────────────────────

async def materialize_presorted_items(db: AsyncSession, items: list) -> list:
    """
    Rebuild FeedItems / GridItems from stored presorted items by loading the
    current rows. Leaves whose row vanished (deleted post, hidden profile,
    retired quiz) are dropped; a grid left below its minimum size is dropped.
    """
    leaves = [
        leaf
        for item in items
        for leaf in (item.items if isinstance(item, PresortedGridItem) else [item])
    ]
    post_ids = [leaf.id for leaf in leaves if leaf.type == "post"]
    user_ids = [leaf.id for leaf in leaves if leaf.type == "suggestion"]
    question_ids = [leaf.id for leaf in leaves if leaf.type == "question"]

    posts: dict[str, tuple] = {}
    if post_ids:
        rows = await db.execute(
            select(Post.post_id, Post.user_id, Post.content, Post.created_at, Profile.display_name)
            .join(User, User.user_id == Post.user_id)
            .outerjoin(Profile, Profile.user_id == Post.user_id)
            .where(
                Post.post_id.in_(post_ids),
                Post.deleted_at.is_(None),
                User.deleted_at.is_(None),
            )
        )
        posts = {row[0]: row for row in rows.all()}

    profiles: dict[str, Profile] = {}
    if user_ids:
        rows = await db.execute(
            select(Profile)
            .join(User, User.user_id == Profile.user_id)
            .where(
                Profile.user_id.in_(user_ids),
                Profile.deleted_at.is_(None),
                Profile.is_visible.is_(True),
                User.deleted_at.is_(None),
            )
        )
        profiles = {row.user_id: row for row in rows.scalars()}

    questions: dict[str, QuizQuestion] = {}
    if question_ids:
        rows = await db.execute(select(QuizQuestion).where(QuizQuestion.question_id.in_(question_ids)))
        questions = {
            row.question_id: row
            for row in rows.scalars().unique()
            if row.quiz is not None and row.quiz.is_active
        }

    def rebuild(leaf: PresortedLeafItem) -> Optional[FeedItem]:
        presentation = None
        if leaf.presentation is not None:
            presentation = Presentation(mode=leaf.presentation.mode, accent=leaf.presentation.accent)
        if leaf.type == "post":
            row = posts.get(leaf.id)
            if row is None:
                return None
            post_id, user_id, content, created_at, display_name = row
            candidate = PostCandidate(
                id=post_id,
                actor_id=user_id,
                created_at=created_at,
                text=content,
                actor_name=display_name or leaf.actor_name,
                media_type=leaf.media_type or "text",
                score=leaf.score,
            )
        elif leaf.type == "suggestion":
            profile = profiles.get(leaf.id)
            if profile is None:
                return None
            candidate = SuggestionCandidate(
                user_id=profile.user_id,
                display_name=profile.display_name,
                bio=profile.bio,
                location_text=profile.location_text,
                intent=profile.intent,
                source="match" if leaf.source == "match" else "suggested",
                score=leaf.score,
            )
        else:
            question = questions.get(leaf.id)
            if question is None:
                return None
            candidate = question_candidate(question)
        return FeedItem(candidate=candidate, presentation=presentation)

    rebuilt: list = []
    dropped = 0
    for item in items:
        if isinstance(item, PresortedGridItem):
            children = [child for child in (rebuild(leaf) for leaf in item.items) if child]
            if len(children) < max(1, item.min_size):
                dropped += len(item.items)
                continue
            dropped += len(item.items) - len(children)
            rebuilt.append(
                GridItem(
                    items=children,
                    presentation=Presentation(mode=item.presentation.mode, accent=item.presentation.accent),
                    min_size=item.min_size,
                )
            )
        else:
            leaf = rebuild(item)
            if leaf is None:
                dropped += 1
            else:
                rebuilt.append(leaf)
    if dropped:
        logger.info("Dropped %d presorted items whose source rows are gone", dropped)
    return rebuilt
