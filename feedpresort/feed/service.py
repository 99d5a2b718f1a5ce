"""
Request-time feed orchestration — GET /feed

  Relationship │ own posts, followed accounts, followers not followed back;
               │ always placed first, excluded from the ranked pool
  ─────────────┼──────────────────────────────────────────────────────────
  Segment      │ cursor-less authenticated requests read presorted segment 0
               │   hit                    → seen demotion, hydrate, respond
               │   version mismatch/corrupt → purge, fall through
               │   expired/thin/missing   → fall through
  ─────────────┼──────────────────────────────────────────────────────────
  Live         │ candidates → dedupe → score (with seen) → sequence →
               │ hydrate; enqueue a presort refresh for signed-in viewers
  ─────────────┼──────────────────────────────────────────────────────────
  Degraded     │ any ranking failure serves relationship items only, and
               │ an empty page as the last resort

Ranking internals never surface as a 5xx.
"""
import logging
import time
from collections import Counter
from dataclasses import asdict
from typing import Optional, Union

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedpresort.config import settings
from feedpresort.database import utcnow
from feedpresort.feed.candidates import get_candidates, resolve_cursor
from feedpresort.feed.config import FeedConfig
from feedpresort.feed.dedupe import dedupe_candidates
from feedpresort.feed.hydration import hydrate_feed_items, materialize_presorted_items
from feedpresort.feed.presorted import (
    PresortedGridItem,
    any_seen,
    apply_seen_penalty,
    convert_feed_items,
    epoch_ms,
    iter_presorted_leaves,
    parse_phase1_json,
    phase1_item,
    seen_lookup_ids,
)
from feedpresort.feed.relationships import (
    CursorCutoff,
    build_relationship_items,
    get_relationship_ids,
    get_relationship_posts,
)
from feedpresort.feed.scoring import score_candidates
from feedpresort.feed.seen import fetch_seen, record_seen
from feedpresort.feed.segments import (
    SegmentStatus,
    invalidate_all_segments_for_user,
    read_segment,
)
from feedpresort.feed.sequencer import Sequencer
from feedpresort.feed.types import (
    DebugSummary,
    FeedItem,
    GridItem,
    SeenStats,
    ViewerContext,
    iter_leaves,
)
from feedpresort.schemas import FeedDebug, FeedResponse, LiteFeedResponse, Phase1Item
from feedpresort.telemetry import (
    FEED_CANDIDATES_TOTAL,
    FEED_LATENCY,
    FEED_SERVED_TOTAL,
    SEGMENT_LOOKUPS_TOTAL,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Items checked for seen-state before deciding a full demotion pass is needed
SEEN_CHECK_MIN = 3

FeedResult = Union[FeedResponse, LiteFeedResponse]


def _excluded(leaf, post_ids: set[str], actor_ids: set[str]) -> bool:
    leaf_id = leaf.candidate.id if isinstance(leaf, FeedItem) else leaf.id
    if leaf.type == "post" and leaf_id in post_ids:
        return True
    return leaf.actor_id in actor_ids


def exclude_relationship_overlap(items: list, relationship_items: list[FeedItem]) -> list:
    """
    Drop ranked items (or grid children) that duplicate a relationship post
    or come from a relationship actor. A grid left below its minimum size is
    dropped whole. Works on live and presorted items.
    """
    if not relationship_items:
        return list(items)
    post_ids = {item.candidate.id for item in relationship_items}
    actor_ids = {item.actor_id for item in relationship_items}

    kept = []
    for item in items:
        if isinstance(item, (GridItem, PresortedGridItem)):
            grid = item.narrowed([c for c in item.items if not _excluded(c, post_ids, actor_ids)])
            if grid is not None:
                kept.append(grid)
        elif not _excluded(item, post_ids, actor_ids):
            kept.append(item)
    return kept


def last_post_id(items: list) -> Optional[str]:
    for leaf in reversed(iter_leaves(items)):
        if leaf.type == "post":
            return leaf.candidate.id
    return None


class FeedService:
    def __init__(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker,
        config: FeedConfig,
        dispatcher=None,
        compatibility=None,
    ) -> None:
        self.db = db
        self.session_factory = session_factory
        self.config = config
        self.dispatcher = dispatcher
        self.compatibility = compatibility

    async def get_feed(self, ctx: ViewerContext) -> FeedResult:
        start = time.perf_counter()
        with tracer.start_as_current_span("get_feed") as span:
            span.set_attribute("user.id", ctx.user_id or "")
            span.set_attribute("feed.lite", ctx.lite)
            limit = settings.feed_lite_limit if ctx.lite else ctx.take
            debug = DebugSummary(seed=ctx.seed) if ctx.debug else None

            cursor = await self._resolve_cursor(ctx)
            relationship_items = await self._relationship_items(ctx, cursor, limit)

            response: Optional[FeedResult] = None
            segment_status: Optional[SegmentStatus] = None
            if ctx.user_id and cursor is None:
                try:
                    response, segment_status = await self._serve_segment(
                        ctx, relationship_items, limit, debug
                    )
                except Exception as exc:
                    logger.warning("Segment path failed for %s: %s — falling back to live", ctx.user_id, exc)
                    await self.db.rollback()

            if response is None:
                response = await self._serve_live_or_degraded(
                    ctx, cursor, relationship_items, limit, debug, segment_status
                )

            latency = time.perf_counter() - start
            FEED_LATENCY.observe(latency)
            span.set_attribute("feed.latency_ms", latency * 1000)
            span.set_attribute("feed.items", len(response.items))
            return response

    # ── helpers ──────────────────────────────────────────────────────────

    async def _resolve_cursor(self, ctx: ViewerContext) -> Optional[CursorCutoff]:
        try:
            return await resolve_cursor(self.db, ctx.cursor_id)
        except Exception as exc:
            logger.warning("Cursor lookup failed for %r: %s — ignoring cursor", ctx.cursor_id, exc)
            await self.db.rollback()
            return None

    async def _relationship_items(
        self, ctx: ViewerContext, cursor: Optional[CursorCutoff], limit: int
    ) -> list[FeedItem]:
        if not ctx.user_id:
            return []
        try:
            ids = await get_relationship_ids(self.db, ctx.user_id)
            tiers = await get_relationship_posts(self.db, ctx.user_id, ids, cursor)
        except Exception as exc:
            logger.warning("Relationship lookup failed for %s: %s — serving without it", ctx.user_id, exc)
            await self.db.rollback()
            return []
        return build_relationship_items(tiers)[:limit]

    async def _request_refresh(self, ctx: ViewerContext, reason: str) -> None:
        if self.dispatcher is None or not ctx.user_id:
            return
        await self.dispatcher.request_refresh(ctx.user_id, reason)

    async def _mark_seen(self, ctx: ViewerContext, entries: list[tuple[str, str]]) -> None:
        """Recorded on a separate session so a failure can't poison the response."""
        if not ctx.mark_seen or not ctx.user_id or not entries:
            return
        try:
            async with self.session_factory() as db:
                await record_seen(db, ctx.user_id, entries)
                await db.commit()
        except Exception as exc:
            logger.warning("Recording seen items failed for %s: %s", ctx.user_id, exc)

    @staticmethod
    def _seen_entries(items: list) -> list[tuple[str, str]]:
        entries = []
        for leaf in iter_leaves(items):
            if leaf.type == "post":
                entries.append(("POST", leaf.candidate.id))
            elif leaf.type == "suggestion":
                entries.append(("SUGGESTION", leaf.candidate.user_id))
        return entries

    def _fill_debug(self, debug: Optional[DebugSummary], path: str, items: list) -> None:
        FEED_SERVED_TOTAL.labels(path=path).inc()
        if debug is None:
            return
        debug.path = path
        leaves = iter_leaves(items)
        debug.post_ids = [leaf.candidate.id for leaf in leaves if leaf.type == "post"]
        debug.suggestion_user_ids = [
            leaf.candidate.user_id for leaf in leaves if leaf.type == "suggestion"
        ]
        debug.question_ids = [leaf.candidate.id for leaf in leaves if leaf.type == "question"]
        debug.source_sequence = [item.source for item in items]
        debug.tier_sequence = [item.tier for item in items]
        debug.actor_counts = dict(Counter(leaf.actor_id for leaf in leaves))
        debug.tier_counts = dict(Counter(item.tier for item in items))

    @staticmethod
    def _debug_out(debug: Optional[DebugSummary]) -> Optional[FeedDebug]:
        if debug is None:
            return None
        return FeedDebug.model_validate(asdict(debug))

    async def _respond(
        self,
        ctx: ViewerContext,
        items: list,
        limit: int,
        path: str,
        debug: Optional[DebugSummary],
    ) -> FeedResult:
        items = items[:limit]
        self._fill_debug(debug, path, items)
        next_cursor_id = last_post_id(items)
        if ctx.lite:
            leaves = iter_leaves(items)[:limit]
            converted, _ = convert_feed_items(leaves, {}, epoch_ms(utcnow()))
            lite_items = [phase1_item(leaf) for leaf in converted]
            await self._mark_seen(ctx, self._seen_entries(leaves))
            return LiteFeedResponse(items=lite_items, next_cursor_id=next_cursor_id)

        payload = await hydrate_feed_items(self.session_factory, ctx, items, self.compatibility)
        await self._mark_seen(ctx, self._seen_entries(items))
        return FeedResponse(
            items=payload,
            next_cursor_id=next_cursor_id,
            has_more_posts=next_cursor_id is not None,
            debug=self._debug_out(debug),
        )

    # ── segment path ─────────────────────────────────────────────────────

    async def _serve_segment(
        self,
        ctx: ViewerContext,
        relationship_items: list[FeedItem],
        limit: int,
        debug: Optional[DebugSummary],
    ) -> tuple[Optional[FeedResult], SegmentStatus]:
        with tracer.start_as_current_span("segment_read") as span:
            read = await read_segment(
                self.db, ctx.user_id, 0, self.config.version, settings.presort_segment_size
            )
            SEGMENT_LOOKUPS_TOTAL.labels(result=read.status.value).inc()
            span.set_attribute("segment.status", read.status.value)

            if read.status in (SegmentStatus.VERSION_MISMATCH, SegmentStatus.CORRUPT):
                await invalidate_all_segments_for_user(self.db, ctx.user_id)
                await self.db.commit()
                return None, read.status
            if read.status != SegmentStatus.HIT:
                return None, read.status

            if ctx.lite and not relationship_items and read.segment.phase1_json:
                lite = self._phase1_response(read.segment.phase1_json)
                if lite is not None:
                    FEED_SERVED_TOTAL.labels(path="phase1").inc()
                    await self._mark_seen(
                        ctx,
                        [
                            ("POST" if item.kind == "post" else "SUGGESTION", item.id)
                            for item in lite.items
                            if item.kind in ("post", "profile")
                        ],
                    )
                    return lite, read.status

            items = exclude_relationship_overlap(read.items, relationship_items)
            items = await self._demote_seen(ctx, items, limit - len(relationship_items), debug)
            ranked = await materialize_presorted_items(self.db, items)
            if not ranked and not relationship_items:
                return None, read.status

            response = await self._respond(ctx, relationship_items + ranked, limit, "segment", debug)
            return response, read.status

    @staticmethod
    def _phase1_response(raw: str) -> Optional[LiteFeedResponse]:
        try:
            items: list[Phase1Item] = parse_phase1_json(raw)
        except ValueError as exc:
            logger.warning("Stored Phase-1 payload unreadable: %s — building lite page", exc)
            return None
        if not items:
            return None
        next_cursor_id = next((item.id for item in reversed(items) if item.kind == "post"), None)
        return LiteFeedResponse(items=items, next_cursor_id=next_cursor_id)

    async def _demote_seen(
        self,
        ctx: ViewerContext,
        items: list,
        remaining: int,
        debug: Optional[DebugSummary],
    ) -> list:
        """
        Check the top of the segment first; only when something there was
        seen recently load the full seen maps and re-order.
        """
        now = utcnow()
        top = items[:max(remaining, SEEN_CHECK_MIN)]
        post_ids, suggestion_ids = seen_lookup_ids(top)
        post_seen = await fetch_seen(self.db, ctx.user_id, "POST", post_ids)
        suggestion_seen = await fetch_seen(self.db, ctx.user_id, "SUGGESTION", suggestion_ids)
        if not any_seen(top, post_seen, suggestion_seen, self.config, now):
            return items

        post_ids, suggestion_ids = seen_lookup_ids(items)
        post_seen = await fetch_seen(self.db, ctx.user_id, "POST", post_ids)
        suggestion_seen = await fetch_seen(self.db, ctx.user_id, "SUGGESTION", suggestion_ids)
        demoted = apply_seen_penalty(items, post_seen, suggestion_seen, self.config, now)
        if debug is not None:
            debug.seen = self._seen_stats(items, post_seen, suggestion_seen, now)
        return demoted

    def _seen_stats(self, items: list, post_seen: dict, suggestion_seen: dict, now) -> SeenStats:
        stats = SeenStats(window_hours=self.config.seen_window_hours)
        for leaf in iter_presorted_leaves(items):
            if leaf.type == "post" and any_seen([leaf], post_seen, {}, self.config, now):
                stats.demoted_posts += 1
            elif leaf.type == "suggestion" and any_seen([leaf], {}, suggestion_seen, self.config, now):
                stats.demoted_suggestions += 1
        return stats

    # ── live path ────────────────────────────────────────────────────────

    async def _serve_live(
        self,
        ctx: ViewerContext,
        cursor: Optional[CursorCutoff],
        relationship_items: list[FeedItem],
        limit: int,
        debug: Optional[DebugSummary],
    ) -> FeedResult:
        with tracer.start_as_current_span("live_rank") as span:
            candidates = await get_candidates(self.db, ctx, cursor)
            FEED_CANDIDATES_TOTAL.labels(kind="post").inc(len(candidates.posts))
            FEED_CANDIDATES_TOTAL.labels(kind="suggestion").inc(len(candidates.suggestions))
            FEED_CANDIDATES_TOTAL.labels(kind="question").inc(len(candidates.questions))
            span.set_attribute("candidates.posts", len(candidates.posts))
            span.set_attribute("candidates.suggestions", len(candidates.suggestions))

            deduped, dedupe_stats = dedupe_candidates(candidates)
            scored, seen_stats = await score_candidates(
                self.db, ctx, deduped, self.config, include_seen=bool(ctx.user_id)
            )
            ranked = Sequencer(self.config).rank(scored, take=limit, seed=ctx.seed)
            ranked = exclude_relationship_overlap(ranked, relationship_items)

            if debug is not None:
                debug.candidate_counts = {
                    "posts": len(candidates.posts),
                    "suggestions": len(candidates.suggestions),
                    "questions": len(candidates.questions),
                }
                debug.dedupe = dedupe_stats
                debug.seen = seen_stats

            return await self._respond(ctx, relationship_items + ranked, limit, "live", debug)

    async def _serve_live_or_degraded(
        self,
        ctx: ViewerContext,
        cursor: Optional[CursorCutoff],
        relationship_items: list[FeedItem],
        limit: int,
        debug: Optional[DebugSummary],
        segment_status: Optional[SegmentStatus],
    ) -> FeedResult:
        try:
            response = await self._serve_live(ctx, cursor, relationship_items, limit, debug)
        except Exception as exc:
            logger.warning("Live ranking failed for %s: %s — serving relationship items only", ctx.user_id, exc)
            await self.db.rollback()
            try:
                response = await self._respond(ctx, relationship_items, limit, "relationship-only", debug)
            except Exception as inner:
                logger.error("Relationship-only fallback failed for %s: %s", ctx.user_id, inner)
                FEED_SERVED_TOTAL.labels(path="empty").inc()
                if ctx.lite:
                    return LiteFeedResponse(items=[])
                return FeedResponse(items=[], debug=self._debug_out(debug))

        reason = segment_status.value if segment_status is not None else "live"
        await self._request_refresh(ctx, reason)
        return response
