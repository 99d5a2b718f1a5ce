"""
Candidate scoring.

    final = clamp(recency·w_r + affinity·w_a + quality·w_q − seen·w_s, 0, 1)

  recency   posts only: 1 / ln(2 + hours since creation), bounded at t=0
  affinity  suggestions only: 1.0 for a mutual match, else the precomputed
            match score (0 when absent)
  quality   reserved, always 0
  seen      1 when shown to the viewer inside the seen window; request-time
            scoring only, presort scoring leaves it out because seen-state
            is re-evaluated when the cached segment is served

`Scorer` is pure over its inputs. `score_candidates` is the async wrapper
that batch-fetches media types and seen maps once per call.
"""
import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feedpresort.database import utcnow
from feedpresort.feed.config import FeedConfig
from feedpresort.feed.seen import fetch_seen
from feedpresort.feed.types import CandidateSet, MediaType, SeenStats, ViewerContext
from feedpresort.models import Media, PostMedia

logger = logging.getLogger(__name__)


def clamp_score(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(1.0, value))


def recency_score(created_at: datetime, now: datetime) -> float:
    hours = max(0.0, (now - created_at).total_seconds() / 3600)
    return clamp_score(1 / math.log(2 + hours))


def classify_media(media_types: set[str]) -> MediaType:
    has_video = bool(media_types & {"VIDEO", "EMBED"})
    has_image = "IMAGE" in media_types
    if has_video and has_image:
        return "mixed"
    if has_video:
        return "video"
    if has_image:
        return "image"
    return "text"


class Scorer:
    """Applies the weighted scoring formula; holds no state besides config."""

    def __init__(self, config: FeedConfig) -> None:
        self.config = config

    def is_seen(self, seen_at: Optional[datetime], now: datetime) -> bool:
        if seen_at is None:
            return False
        return seen_at >= now - timedelta(hours=self.config.seen_window_hours)

    def combine(
        self,
        recency: float = 0.0,
        affinity: float = 0.0,
        quality: float = 0.0,
        seen_penalty: float = 0.0,
    ) -> float:
        w = self.config.weights
        return clamp_score(
            recency * w.recency
            + affinity * w.affinity
            + quality * w.quality
            - seen_penalty * w.seen_penalty
        )

    def score(
        self,
        candidates: CandidateSet,
        now: datetime,
        media_types: Optional[dict[str, MediaType]] = None,
        post_seen: Optional[dict[str, datetime]] = None,
        suggestion_seen: Optional[dict[str, datetime]] = None,
        include_seen: bool = True,
    ) -> tuple[CandidateSet, SeenStats]:
        """
        Return a new CandidateSet with scored copies of every candidate,
        posts and suggestions sorted by score descending (stable).
        """
        media_types = media_types or {}
        post_seen = post_seen or {}
        suggestion_seen = suggestion_seen or {}
        stats = SeenStats(window_hours=self.config.seen_window_hours)

        posts = []
        for post in candidates.posts:
            seen = include_seen and self.is_seen(post_seen.get(post.id), now)
            if seen:
                stats.demoted_posts += 1
            posts.append(
                replace(
                    post,
                    media_type=media_types.get(post.id, post.media_type),
                    score=self.combine(
                        recency=recency_score(post.created_at, now),
                        seen_penalty=1.0 if seen else 0.0,
                    ),
                )
            )

        suggestions = []
        for suggestion in candidates.suggestions:
            seen = include_seen and self.is_seen(suggestion_seen.get(suggestion.user_id), now)
            if seen:
                stats.demoted_suggestions += 1
            affinity = 1.0 if suggestion.source == "match" else (suggestion.match_score or 0.0)
            suggestions.append(
                replace(
                    suggestion,
                    score=self.combine(affinity=affinity, seen_penalty=1.0 if seen else 0.0),
                )
            )

        posts.sort(key=lambda c: c.score, reverse=True)
        suggestions.sort(key=lambda c: c.score, reverse=True)

        scored = CandidateSet(
            posts=posts,
            suggestions=suggestions,
            questions=[replace(q, score=0.0) for q in candidates.questions],
            next_cursor_id=candidates.next_cursor_id,
        )
        return scored, stats


async def fetch_post_media_types(
    db: AsyncSession, post_ids: list[str]
) -> dict[str, MediaType]:
    """One query for all posts; posts without attachments are text."""
    if not post_ids:
        return {}
    rows = await db.execute(
        select(PostMedia.post_id, Media.type)
        .join(Media, Media.media_id == PostMedia.media_id)
        .where(PostMedia.post_id.in_(post_ids), Media.deleted_at.is_(None))
    )
    types_by_post: dict[str, set[str]] = {}
    for post_id, media_type in rows.all():
        types_by_post.setdefault(post_id, set()).add(media_type)
    return {pid: classify_media(types_by_post.get(pid, set())) for pid in post_ids}


async def score_candidates(
    db: AsyncSession,
    ctx: ViewerContext,
    candidates: CandidateSet,
    config: FeedConfig,
    include_seen: bool = True,
    now: Optional[datetime] = None,
) -> tuple[CandidateSet, SeenStats]:
    now = now or utcnow()
    media_types = await fetch_post_media_types(db, [p.id for p in candidates.posts])

    post_seen: dict[str, datetime] = {}
    suggestion_seen: dict[str, datetime] = {}
    if include_seen and ctx.user_id:
        post_seen = await fetch_seen(db, ctx.user_id, "POST", [p.id for p in candidates.posts])
        suggestion_seen = await fetch_seen(
            db, ctx.user_id, "SUGGESTION", [s.user_id for s in candidates.suggestions]
        )

    return Scorer(config).score(
        candidates,
        now=now,
        media_types=media_types,
        post_seen=post_seen,
        suggestion_seen=suggestion_seen,
        include_seen=include_seen,
    )
