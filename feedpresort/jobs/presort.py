"""
Feed presort job.

Per user:
  1. Hash the inputs that shape the ranked feed; skip when the stored hash
     matches and segment 0 is still live.
  2. Fetch an over-sized candidate pool, dedupe, score (no seen penalty,
     that is applied when a segment is served) and sequence it with the
     per-response cap lifted.
  3. Convert to presorted items with denormalised actor data, chunk into
     segments, build the Phase-1 payload for segment 0.
  4. Write all segments plus the freshness record in one transaction.

Batch mode pages through users by id and processes them in bounded
concurrent chunks; a failing user is rolled back and logged, the batch
carries on.
"""
import asyncio
import logging
import math
import random
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Optional

from opentelemetry import trace
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedpresort.config import settings
from feedpresort.database import utcnow
from feedpresort.exceptions import SegmentDecodeError
from feedpresort.feed.candidates import get_candidates
from feedpresort.feed.config import FeedConfig, load_feed_config
from feedpresort.feed.dedupe import dedupe_candidates, dedupe_feed_items
from feedpresort.feed.hydration import fetch_actor_profiles
from feedpresort.feed.presorted import (
    convert_feed_items,
    decode_segment_items,
    epoch_ms,
    generate_phase1_json,
)
from feedpresort.feed.relationships import get_following_ids
from feedpresort.feed.scoring import score_candidates
from feedpresort.feed.segments import SegmentWrite, get_segment, min_segment_items, store_segments
from feedpresort.feed.sequencer import Sequencer
from feedpresort.feed.types import ViewerContext, iter_leaves
from feedpresort.jobs.freshness import hash_key_values, is_job_fresh, upsert_job_freshness
from feedpresort.jobs.run_job import JobSpec, run_job
from feedpresort.models import LikedPost, MatchScore, Post, PresortedFeedSegment, User
from feedpresort.telemetry import (
    PRESORT_SEGMENTS_WRITTEN,
    PRESORT_USER_DURATION,
    PRESORT_USERS_TOTAL,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

JOB_NAME = "feed-presort"
CANDIDATE_OVERFETCH = 1.2


@dataclass
class PresortOptions:
    user_id: Optional[str] = None
    batch_size: int = field(default_factory=lambda: settings.presort_batch_size)
    segment_size: int = field(default_factory=lambda: settings.presort_segment_size)
    max_segments: int = field(default_factory=lambda: settings.presort_max_segments)
    # True: refresh segment 0 only, when the stored one is usable. False: full
    # recompute, no freshness skip.
    # None: full recompute unless fresh.
    incremental: Optional[bool] = None
    no_jitter: bool = False
    trigger: str = "MANUAL"


@dataclass
class PresortMetrics:
    user_id: str
    candidates_fetched: int = 0
    items_after_dedupe: int = 0
    segments_generated: int = 0
    items_skipped: int = 0
    duration_ms: float = 0.0
    skipped: bool = False
    failed: bool = False
    error: Optional[str] = None


@dataclass
class PresortSummary:
    users_processed: int = 0
    users_written: int = 0
    users_skipped: int = 0
    users_empty: int = 0
    users_failed: int = 0
    segments_written: int = 0
    duration_ms: float = 0.0

    def add(self, metrics: PresortMetrics) -> None:
        self.users_processed += 1
        self.segments_written += metrics.segments_generated
        if metrics.failed:
            self.users_failed += 1
        elif metrics.skipped:
            self.users_skipped += 1
        elif metrics.segments_generated:
            self.users_written += 1
        else:
            self.users_empty += 1

    def to_metadata(self) -> dict:
        return asdict(self)


def user_scope(user_id: str) -> str:
    return f"user:{user_id}"


def target_segment_count(options: PresortOptions) -> int:
    return 1 if options.incremental else max(1, options.max_segments)


def incremental_blocker(
    existing: Optional[PresortedFeedSegment],
    options: PresortOptions,
    config: FeedConfig,
) -> Optional[str]:
    """Why segment 0 cannot anchor an incremental refresh, or None when it can."""
    if existing is None:
        return "missing"
    if existing.algorithm_version != config.version:
        return "version_mismatch"
    try:
        items = decode_segment_items(existing.items)
    except SegmentDecodeError:
        return "corrupt"
    if len(items) < min_segment_items(0, options.segment_size):
        return "thin"
    return None


def candidate_fetch_size(target_items: int) -> int:
    return max(math.ceil(target_items * CANDIDATE_OVERFETCH), settings.presort_min_candidate_count)


async def build_input_hash(
    db: AsyncSession,
    user_id: str,
    options: PresortOptions,
    config: FeedConfig,
) -> str:
    scores = await db.execute(
        select(func.max(MatchScore.scored_at), func.max(MatchScore.algorithm_version)).where(
            MatchScore.user_id == user_id
        )
    )
    match_scored_at, match_version = scores.one()
    likes_at = await db.scalar(
        select(func.max(LikedPost.created_at)).where(LikedPost.user_id == user_id)
    )

    entries = [
        ("algorithm_version", config.version),
        ("config_fingerprint", config.fingerprint()),
        ("segment_size", options.segment_size),
        ("max_segments", target_segment_count(options)),
        ("incremental", bool(options.incremental)),
        ("min_candidate_count", settings.presort_min_candidate_count),
        ("match_scores_at", match_scored_at),
        ("match_scores_version", match_version),
        ("likes_at", likes_at),
    ]
    if options.incremental:
        following = await get_following_ids(db, user_id)
        relevant_post_at = await db.scalar(
            select(func.max(Post.updated_at)).where(
                Post.deleted_at.is_(None),
                or_(Post.visibility == "PUBLIC", Post.user_id.in_(following + [user_id])),
            )
        )
        entries.append(("relevant_post_updated_at", relevant_post_at))
    return hash_key_values(entries)


def chunk_segments(items: list, segment_size: int, max_segments: int) -> list[list]:
    return [
        items[start:start + segment_size]
        for start in range(0, min(len(items), segment_size * max_segments), segment_size)
    ]


async def presort_feed_for_user(
    db: AsyncSession,
    user_id: str,
    options: PresortOptions,
    config: FeedConfig,
    now: Optional[datetime] = None,
) -> PresortMetrics:
    """
    Recompute and store one user's segments. Commits on success; on error
    the caller rolls the session back.
    """
    now = now or utcnow()
    t0 = time.perf_counter()
    metrics = PresortMetrics(user_id=user_id)

    with tracer.start_as_current_span("presort_user") as span:
        span.set_attribute("user.id", user_id)

        existing = None
        if options.incremental is not False:
            existing = await get_segment(db, user_id, 0, now=now)
        if options.incremental:
            reason = incremental_blocker(existing, options, config)
            if reason is not None:
                logger.info(
                    "Incremental presort for %s needs a full run (segment 0 %s)", user_id, reason
                )
                options = replace(options, incremental=None)
                existing = None
        segments = target_segment_count(options)
        span.set_attribute("presort.incremental", bool(options.incremental))

        input_hash = await build_input_hash(db, user_id, options, config)
        scope = user_scope(user_id)
        if options.incremental is not False:
            if existing is not None and existing.algorithm_version == config.version:
                if await is_job_fresh(db, JOB_NAME, scope, input_hash):
                    metrics.skipped = True
                    metrics.duration_ms = (time.perf_counter() - t0) * 1000
                    PRESORT_USERS_TOTAL.labels(outcome="fresh").inc()
                    logger.debug("Presort inputs unchanged for %s — skipping", user_id)
                    return metrics

        target_items = options.segment_size * segments
        ctx = ViewerContext(user_id=user_id, take=candidate_fetch_size(target_items))
        candidates = await get_candidates(db, ctx)
        metrics.candidates_fetched = (
            len(candidates.posts) + len(candidates.suggestions) + len(candidates.questions)
        )

        deduped, _ = dedupe_candidates(candidates)
        scored, _ = await score_candidates(db, ctx, deduped, config, include_seen=False, now=now)
        ranked = Sequencer(config).rank(scored, take=target_items, respect_response_cap=False)
        ranked, _ = dedupe_feed_items(ranked)
        metrics.items_after_dedupe = len(iter_leaves(ranked))

        actor_ids = list(dict.fromkeys(leaf.actor_id for leaf in iter_leaves(ranked)))
        actors = await fetch_actor_profiles(db, actor_ids)
        converted, skipped = convert_feed_items(ranked, actors, epoch_ms(now))
        metrics.items_skipped = skipped

        chunks = chunk_segments(converted, options.segment_size, segments)
        if not chunks or len(chunks[0]) < min_segment_items(0, options.segment_size):
            metrics.duration_ms = (time.perf_counter() - t0) * 1000
            PRESORT_USERS_TOTAL.labels(outcome="empty").inc()
            logger.info(
                "Presort for %s produced %d items — too few for a first segment",
                user_id, len(converted),
            )
            return metrics

        writes = [
            SegmentWrite(
                segment_index=index,
                items=chunk,
                phase1_json=generate_phase1_json(chunk) if index == 0 else None,
            )
            for index, chunk in enumerate(chunks)
        ]
        await store_segments(
            db,
            user_id,
            writes,
            algorithm_version=config.version,
            ttl_minutes=settings.presort_ttl_minutes,
            replace_all=not options.incremental,
            segment_size=options.segment_size,
            now=now,
        )
        await upsert_job_freshness(db, JOB_NAME, scope, input_hash, now=now)
        await db.commit()

        metrics.segments_generated = len(writes)
        metrics.duration_ms = (time.perf_counter() - t0) * 1000
        span.set_attribute("presort.segments", len(writes))
        PRESORT_SEGMENTS_WRITTEN.inc(len(writes))
        PRESORT_USERS_TOTAL.labels(outcome="written").inc()
        PRESORT_USER_DURATION.observe(metrics.duration_ms / 1000)
        logger.info(
            "Presorted %s: %d candidates → %d items → %d segments (%.1fms)",
            user_id, metrics.candidates_fetched, metrics.items_after_dedupe,
            len(writes), metrics.duration_ms,
        )
        return metrics


async def presort_user_isolated(
    session_factory: async_sessionmaker,
    user_id: str,
    options: PresortOptions,
    config: FeedConfig,
) -> PresortMetrics:
    """Own session per user; a failure is rolled back and reported in metrics."""
    async with session_factory() as db:
        try:
            return await presort_feed_for_user(db, user_id, options, config)
        except Exception as exc:
            await db.rollback()
            logger.error("Presort failed for user %s: %s", user_id, exc)
            PRESORT_USERS_TOTAL.labels(outcome="failed").inc()
            return PresortMetrics(user_id=user_id, failed=True, error=str(exc))


async def _iter_user_batches(session_factory: async_sessionmaker, batch_size: int):
    last_id: Optional[str] = None
    while True:
        async with session_factory() as db:
            query = (
                select(User.user_id)
                .where(User.deleted_at.is_(None))
                .order_by(User.user_id)
                .limit(batch_size)
            )
            if last_id is not None:
                query = query.where(User.user_id > last_id)
            user_ids = list((await db.execute(query)).scalars())
        if not user_ids:
            return
        yield user_ids
        if len(user_ids) < batch_size:
            return
        last_id = user_ids[-1]


async def _run_batch(
    session_factory: async_sessionmaker,
    options: PresortOptions,
    config: FeedConfig,
) -> PresortSummary:
    summary = PresortSummary()
    t0 = time.perf_counter()

    if not options.no_jitter and settings.job_runner != "cli" and settings.presort_max_jitter_seconds > 0:
        delay = random.uniform(0, settings.presort_max_jitter_seconds)
        logger.info("Presort batch jitter: sleeping %.1fs", delay)
        await asyncio.sleep(delay)

    concurrency = max(1, settings.presort_max_concurrent)
    async for user_ids in _iter_user_batches(session_factory, max(1, options.batch_size)):
        for start in range(0, len(user_ids), concurrency):
            chunk = user_ids[start:start + concurrency]
            results = await asyncio.gather(
                *[presort_user_isolated(session_factory, uid, options, config) for uid in chunk]
            )
            for metrics in results:
                summary.add(metrics)

    summary.duration_ms = (time.perf_counter() - t0) * 1000
    logger.info(
        "Presort batch done: processed=%d written=%d fresh=%d empty=%d failed=%d "
        "segments=%d (%.0fms)",
        summary.users_processed, summary.users_written, summary.users_skipped,
        summary.users_empty, summary.users_failed, summary.segments_written,
        summary.duration_ms,
    )
    return summary


async def _run_single(
    session_factory: async_sessionmaker,
    options: PresortOptions,
    config: FeedConfig,
) -> PresortSummary:
    summary = PresortSummary()
    async with session_factory() as db:
        try:
            metrics = await presort_feed_for_user(db, options.user_id, options, config)
        except Exception:
            await db.rollback()
            PRESORT_USERS_TOTAL.labels(outcome="failed").inc()
            raise
    summary.add(metrics)
    summary.duration_ms = metrics.duration_ms
    return summary


async def run_feed_presort_job(
    session_factory: async_sessionmaker,
    options: Optional[PresortOptions] = None,
    config: Optional[FeedConfig] = None,
) -> PresortSummary:
    options = options or PresortOptions()
    config = config or load_feed_config(settings.feed_config_json)
    spec = JobSpec(
        job_name=JOB_NAME,
        trigger=options.trigger,
        scope=user_scope(options.user_id) if options.user_id else "batch",
        algorithm_version=config.version,
        metadata={
            "segmentSize": options.segment_size,
            "maxSegments": target_segment_count(options),
            "incremental": bool(options.incremental),
        },
    )

    async def handler() -> PresortSummary:
        if options.user_id:
            return await _run_single(session_factory, options, config)
        return await _run_batch(session_factory, options, config)

    return await run_job(session_factory, spec, handler)
