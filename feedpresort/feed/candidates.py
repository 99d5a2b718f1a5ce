"""
Candidate source: raw eligible posts, profile suggestions and quiz
question cards for one viewer. No ranking happens here.
"""
import logging
import random
from datetime import timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from feedpresort.config import settings
from feedpresort.database import utcnow
from feedpresort.feed.relationships import (
    CursorCutoff,
    post_candidate_query,
    post_window_filters,
    rows_to_post_candidates,
)
from feedpresort.feed.types import (
    CandidateSet,
    PostCandidate,
    QuestionCandidate,
    QuestionOption,
    SuggestionCandidate,
    ViewerContext,
)
from feedpresort.models import Match, MatchScore, Post, Profile, Quiz, QuizQuestion, User

logger = logging.getLogger(__name__)

# Compatibility scores older than this are ignored
MATCH_SCORE_MAX_AGE = timedelta(hours=24)


async def resolve_cursor(db: AsyncSession, cursor_id: Optional[str]) -> Optional[CursorCutoff]:
    """An unknown or malformed cursor is treated as no cursor."""
    if not cursor_id:
        return None
    cursor_id = str(cursor_id).strip()
    if not cursor_id or len(cursor_id) > 36:
        return None
    row = await db.execute(
        select(Post.post_id, Post.created_at).where(Post.post_id == cursor_id)
    )
    found = row.first()
    if found is None:
        logger.debug("Ignoring unknown feed cursor %s", cursor_id)
        return None
    return CursorCutoff(id=found[0], created_at=found[1])


async def fetch_post_candidates(
    db: AsyncSession,
    ctx: ViewerContext,
    cursor: Optional[CursorCutoff] = None,
) -> tuple[list[PostCandidate], Optional[str]]:
    limit = max(ctx.take, settings.feed_post_candidate_limit)
    rows = await db.execute(
        post_candidate_query()
        .where(Post.visibility == "PUBLIC", *post_window_filters(cursor))
        .limit(limit)
    )
    posts = rows_to_post_candidates(rows.all())
    next_cursor_id = posts[min(ctx.take, len(posts)) - 1].id if posts and len(posts) >= ctx.take else None
    return posts, next_cursor_id


def _profile_query(viewer_id: str):
    return (
        select(
            Profile.user_id,
            Profile.display_name,
            Profile.bio,
            Profile.location_text,
            Profile.intent,
        )
        .join(User, User.user_id == Profile.user_id)
        .where(
            Profile.deleted_at.is_(None),
            Profile.is_visible.is_(True),
            User.deleted_at.is_(None),
            Profile.user_id != viewer_id,
        )
    )


def _suggestion(row, source: str, match_score: Optional[float]) -> SuggestionCandidate:
    user_id, display_name, bio, location_text, intent = row
    return SuggestionCandidate(
        user_id=user_id,
        display_name=display_name,
        bio=bio,
        location_text=location_text,
        intent=intent,
        source=source,
        match_score=match_score,
    )


async def fetch_suggestion_candidates(
    db: AsyncSession, ctx: ViewerContext
) -> list[SuggestionCandidate]:
    """
    Active matches first, then profiles with a fresh precomputed match score,
    or, when there are none, a (seeded) shuffle of visible profiles.
    """
    if not ctx.user_id:
        return []
    me = ctx.user_id
    limit = settings.feed_suggestion_limit
    match_limit = min(settings.feed_match_limit, limit)

    match_rows = await db.execute(
        select(Match.user_a_id, Match.user_b_id)
        .where(Match.state == "ACTIVE", or_(Match.user_a_id == me, Match.user_b_id == me))
        .order_by(Match.updated_at.desc())
        .limit(match_limit)
    )
    match_user_ids: list[str] = []
    for user_a, user_b in match_rows.all():
        other = user_b if user_a == me else user_a
        if other not in match_user_ids:
            match_user_ids.append(other)

    matches: list[SuggestionCandidate] = []
    if match_user_ids:
        rows = await db.execute(_profile_query(me).where(Profile.user_id.in_(match_user_ids)))
        by_user = {row[0]: row for row in rows.all()}
        matches = [
            _suggestion(by_user[uid], "match", 1.0) for uid in match_user_ids if uid in by_user
        ]

    remaining = max(limit - len(matches), 0)
    if remaining == 0:
        return matches

    score_query = (
        select(MatchScore.candidate_user_id, MatchScore.score)
        .where(
            MatchScore.user_id == me,
            MatchScore.scored_at >= utcnow() - MATCH_SCORE_MAX_AGE,
        )
        .order_by(MatchScore.score.desc())
        .limit(remaining)
    )
    if match_user_ids:
        score_query = score_query.where(MatchScore.candidate_user_id.not_in(match_user_ids))
    scored = (await db.execute(score_query)).all()

    if scored:
        score_by_user = {uid: score for uid, score in scored}
        rows = await db.execute(_profile_query(me).where(Profile.user_id.in_(list(score_by_user))))
        by_user = {row[0]: row for row in rows.all()}
        suggested = [
            _suggestion(by_user[uid], "suggested", score)
            for uid, score in scored
            if uid in by_user
        ]
        return matches + suggested

    query = _profile_query(me).order_by(Profile.user_id).limit(remaining)
    if match_user_ids:
        query = query.where(Profile.user_id.not_in(match_user_ids))
    profiles = list((await db.execute(query)).all())
    rng = random.Random(ctx.seed) if ctx.seed is not None else random.Random()
    rng.shuffle(profiles)
    return matches + [_suggestion(row, "suggested", None) for row in profiles]


async def fetch_question_candidates(db: AsyncSession, ctx: ViewerContext) -> list[QuestionCandidate]:
    if not ctx.user_id:
        return []
    rows = await db.execute(
        select(QuizQuestion)
        .join(Quiz, Quiz.quiz_id == QuizQuestion.quiz_id)
        .where(Quiz.is_active.is_(True))
        .order_by(Quiz.created_at.desc(), QuizQuestion.position)
        .limit(settings.feed_question_limit)
    )
    return [question_candidate(question) for question in rows.scalars().unique()]


def question_candidate(question: QuizQuestion) -> QuestionCandidate:
    return QuestionCandidate(
        id=question.question_id,
        quiz_id=question.quiz_id,
        quiz_title=question.quiz.title if question.quiz else None,
        prompt=question.prompt,
        order=question.position,
        options=[
            QuestionOption(id=o.option_id, label=o.label, value=o.value, order=o.position)
            for o in question.options
        ],
    )


async def get_candidates(
    db: AsyncSession,
    ctx: ViewerContext,
    cursor: Optional[CursorCutoff] = None,
) -> CandidateSet:
    # One session cannot run queries concurrently, so these run in sequence
    posts, next_cursor_id = await fetch_post_candidates(db, ctx, cursor)
    suggestions = await fetch_suggestion_candidates(db, ctx)
    questions = await fetch_question_candidates(db, ctx)
    logger.debug(
        "Candidates for %s: posts=%d suggestions=%d questions=%d",
        ctx.user_id, len(posts), len(suggestions), len(questions),
    )
    return CandidateSet(
        posts=posts,
        suggestions=suggestions,
        questions=questions,
        next_cursor_id=next_cursor_id,
    )
