"""
Sequence-driven interleaving of scored candidates.

  1. Posts are bucketed by media type plus an "all" bucket, suggestions by
     source plus "all"; questions form a single pool. Buckets are sorted by
     score descending, suggestion ties broken by a seeded draw when a seed
     is given.
  2. The slot sequence is expanded (`count` repeats) into a flat schedule
     that is walked cyclically.
  3. Each slot pulls the next usable candidate from its bucket. Typed post /
     suggestion slots that declare a presentation fall back once to the
     "all" bucket of the same kind.
  4. Grid slots fill up to `size` children from `of` or round-robin `mix`
     rules. A grid below its effective minimum is discarded and every child
     goes back to the pool.
  5. Per-actor usage is shared between top-level slots and grid children.
  6. The walk stops at the output limit, when nothing is left, or after
     `idle_cycles` full cycles in which no slot could be filled.

A grid counts as one item toward the output limit.
"""
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Optional

from feedpresort.feed.config import (
    FeedConfig,
    GridSlot,
    PostMixRule,
    PostSlot,
    QuestionSlot,
    SuggestionMixRule,
    SuggestionSlot,
)
from feedpresort.feed.types import (
    CandidateSet,
    FeedItem,
    GridItem,
    Presentation,
    RankedItem,
)

logger = logging.getLogger(__name__)

POST_BUCKETS = ("text", "image", "video", "mixed")


@dataclass
class CursorState:
    """
    Buckets are the arena, per-bucket indices are offsets into them and the
    used-key set excludes items already placed through another bucket.
    """

    buckets: dict[tuple[str, str], list[FeedItem]]
    max_per_actor: int
    indices: dict[tuple[str, str], int] = field(default_factory=dict)
    used_keys: set[str] = field(default_factory=set)
    actor_counts: dict[str, int] = field(default_factory=dict)

    def bucket(self, kind: str, key: str) -> list[FeedItem]:
        return self.buckets.get((kind, key), [])

    def snapshot(self) -> tuple:
        return dict(self.indices), set(self.used_keys), dict(self.actor_counts)

    def restore(self, snap: tuple) -> None:
        indices, used_keys, actor_counts = snap
        self.indices = dict(indices)
        self.used_keys = set(used_keys)
        self.actor_counts = dict(actor_counts)

    def _is_dead(self, item: FeedItem) -> bool:
        # Both conditions are monotonic within one pass
        return (
            item.key in self.used_keys
            or self.actor_counts.get(item.actor_id, 0) >= self.max_per_actor
        )

    def take(
        self, kind: str, key: str, exclude_actors: Optional[set[str]] = None
    ) -> Optional[FeedItem]:
        bucket = self.bucket(kind, key)
        index = self.indices.get((kind, key), 0)
        # Only a contiguous run of dead items may advance the offset; items
        # skipped for grid-local reasons must stay reachable.
        advance = True
        position = index
        while position < len(bucket):
            item = bucket[position]
            position += 1
            if self._is_dead(item):
                if advance:
                    index = position
                continue
            if exclude_actors and item.actor_id in exclude_actors:
                advance = False
                continue
            self.used_keys.add(item.key)
            self.actor_counts[item.actor_id] = self.actor_counts.get(item.actor_id, 0) + 1
            if advance:
                index = position
            self.indices[(kind, key)] = index
            return item
        self.indices[(kind, key)] = index
        return None

    def has_remaining(self) -> bool:
        for kind in ("post", "suggestion", "question"):
            for item in self.bucket(kind, "all"):
                if item.key not in self.used_keys:
                    return True
        return False


class Sequencer:
    """Interleaves candidate pools according to `config.sequence`."""

    def __init__(self, config: FeedConfig) -> None:
        self.config = config

    # ── bucket construction ──────────────────────────────────────────────

    def build_state(self, candidates: CandidateSet, seed: Optional[int] = None) -> CursorState:
        posts = sorted(
            (FeedItem(candidate=post) for post in candidates.posts),
            key=lambda item: item.score,
            reverse=True,
        )
        suggestions = [FeedItem(candidate=s) for s in candidates.suggestions]
        if seed is None:
            suggestions.sort(key=lambda item: item.score, reverse=True)
        else:
            rng = random.Random(seed)
            draws = [rng.random() for _ in suggestions]
            order = sorted(
                range(len(suggestions)),
                key=lambda i: (-suggestions[i].score, draws[i]),
            )
            suggestions = [suggestions[i] for i in order]
        questions = [FeedItem(candidate=q) for q in candidates.questions]

        buckets: dict[tuple[str, str], list[FeedItem]] = {("post", "all"): posts}
        for media_type in POST_BUCKETS:
            buckets[("post", media_type)] = [
                item for item in posts if item.candidate.media_type == media_type
            ]
        buckets[("suggestion", "all")] = suggestions
        buckets[("suggestion", "match")] = [i for i in suggestions if i.source == "match"]
        buckets[("suggestion", "suggested")] = [i for i in suggestions if i.source == "suggested"]
        buckets[("question", "all")] = questions

        return CursorState(buckets=buckets, max_per_actor=self.config.caps.max_per_actor)

    # ── slot handlers ────────────────────────────────────────────────────

    @staticmethod
    def _post_key(media_type: Optional[str]) -> str:
        return "all" if not media_type or media_type == "any" else media_type

    @staticmethod
    def _suggestion_key(source: Optional[str]) -> str:
        return source or "all"

    def _take_with_fallback(
        self, state: CursorState, kind: str, key: str, presentation: Optional[str]
    ) -> Optional[FeedItem]:
        item = state.take(kind, key)
        if item is None and presentation and key != "all":
            item = state.take(kind, "all")
        return item

    def _take_for_rule(self, state: CursorState, rule, exclude_actors) -> Optional[FeedItem]:
        if isinstance(rule, PostMixRule):
            return state.take("post", self._post_key(rule.media_type), exclude_actors)
        if isinstance(rule, SuggestionMixRule):
            return state.take("suggestion", self._suggestion_key(rule.source), exclude_actors)
        return state.take("question", "all", exclude_actors)

    def _fill_grid(self, state: CursorState, slot: GridSlot) -> Optional[GridItem]:
        snap = state.snapshot()
        rules = slot.rules()
        children: list[FeedItem] = []
        grid_actors: set[str] = set()
        rule_index = 0
        misses = 0
        while len(children) < slot.size and misses < len(rules):
            rule = rules[rule_index % len(rules)]
            rule_index += 1
            item = self._take_for_rule(
                state, rule, grid_actors if slot.distinct_actors else None
            )
            if item is None:
                misses += 1
                continue
            misses = 0
            children.append(item)
            grid_actors.add(item.actor_id)

        if len(children) < slot.effective_min_size:
            state.restore(snap)
            return None
        return GridItem(
            items=children,
            presentation=Presentation(mode="grid"),
            min_size=slot.effective_min_size,
        )

    def _fill_slot(self, state: CursorState, slot) -> Optional[RankedItem]:
        if isinstance(slot, PostSlot):
            item = self._take_with_fallback(
                state, "post", self._post_key(slot.media_type), slot.presentation
            )
            if item is None:
                return None
            if slot.presentation:
                return replace(item, presentation=Presentation(mode=slot.presentation))
            return item

        if isinstance(slot, SuggestionSlot):
            item = self._take_with_fallback(
                state, "suggestion", self._suggestion_key(slot.source), slot.presentation
            )
            if item is None:
                return None
            accent = "match" if item.source == "match" else None
            if slot.presentation:
                return replace(item, presentation=Presentation(slot.presentation, accent))
            if accent:
                return replace(item, presentation=Presentation("single", accent))
            return item

        if isinstance(slot, QuestionSlot):
            item = state.take("question", "all")
            if item is None:
                return None
            return replace(item, presentation=Presentation(mode="question"))

        if isinstance(slot, GridSlot):
            return self._fill_grid(state, slot)

        raise TypeError(f"unknown feed slot: {slot!r}")

    # ── diagnostics ──────────────────────────────────────────────────────

    def _log_mosaic_gaps(self, state: CursorState) -> None:
        mosaic_slots = [
            slot
            for slot in self.config.sequence
            if isinstance(slot, PostSlot) and slot.presentation == "mosaic"
        ]
        if not mosaic_slots:
            return
        by_type = {key: len(state.bucket("post", key)) for key in ("all",) + POST_BUCKETS}
        if by_type["all"] == 0:
            logger.warning(
                "Mosaic slots have no post candidates (slots=%d, by_type=%s)",
                len(mosaic_slots), by_type,
            )
            return
        typed_missing = [
            slot.media_type
            for slot in mosaic_slots
            if slot.media_type != "any" and by_type.get(slot.media_type, 0) == 0
        ]
        if typed_missing:
            logger.info(
                "Mosaic slots missing typed candidates %s — falling back to any post (by_type=%s)",
                typed_missing, by_type,
            )

    # ── main pass ────────────────────────────────────────────────────────

    def _round_robin(self, state: CursorState, limit: int) -> list[RankedItem]:
        items: list[RankedItem] = []
        turn = ("post", "suggestion")
        flip = 0
        while len(items) < limit:
            first, second = turn[flip % 2], turn[(flip + 1) % 2]
            item = state.take(first, "all") or state.take(second, "all")
            if item is None:
                break
            items.append(item)
            flip += 1
        return items

    def rank(
        self,
        candidates: CandidateSet,
        take: int,
        seed: Optional[int] = None,
        respect_response_cap: bool = True,
    ) -> list[RankedItem]:
        """
        Produce the ordered feed for one response (or, with the response cap
        lifted, for a whole presort run).
        """
        limit = take
        if respect_response_cap:
            limit = min(take, self.config.caps.max_items_per_response)
        if limit <= 0:
            return []

        state = self.build_state(candidates, seed=seed)
        schedule = self.config.expanded_sequence()
        if not schedule:
            return self._round_robin(state, limit)

        self._log_mosaic_gaps(state)

        items: list[RankedItem] = []
        idle_limit = len(schedule) * self.config.idle_cycles
        slot_index = 0
        idle = 0
        while len(items) < limit and state.has_remaining():
            slot = schedule[slot_index % len(schedule)]
            slot_index += 1
            chosen = self._fill_slot(state, slot)
            if chosen is None:
                idle += 1
                if idle >= idle_limit:
                    break
                continue
            idle = 0
            items.append(chosen)
        return items
