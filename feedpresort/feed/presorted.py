"""
Persisted form of ranked feed items.

A segment stores a versioned envelope

    {"schemaVersion": 2, "items": [PresortedFeedItem, ...]}

where every item carries denormalised actor name / avatar so serving a
segment needs no joins. Decoding validates the envelope against the current
item schema; any drift surfaces as SegmentDecodeError and is handled like an
algorithm-version mismatch.
"""
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from feedpresort.exceptions import SegmentDecodeError
from feedpresort.feed.config import FeedConfig
from feedpresort.feed.types import FeedItem, GridItem, Presentation
from feedpresort.schemas import FeedActor, Phase1Item, PresentationOut

logger = logging.getLogger(__name__)

SEGMENT_SCHEMA_VERSION = 2
TEXT_PREVIEW_LIMIT = 150
PHASE1_ITEM_COUNT = 2
PHASE1_MAX_BYTES = 8 * 1024

PHASE1_KINDS = {"post": "post", "suggestion": "profile", "question": "question"}


class _Stored(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StoredPresentation(_Stored):
    mode: Literal["single", "mosaic", "grid", "highlight", "question"]
    accent: Optional[Literal["match", "boost", "new"]] = None


class PresortedLeafItem(_Stored):
    type: Literal["post", "suggestion", "question"]
    id: str
    score: float = 0.0
    actor_id: str
    source: Literal["post", "match", "suggested", "question"]
    media_type: Optional[Literal["text", "image", "video", "mixed"]] = None
    presentation: Optional[StoredPresentation] = None
    created_at: int  # epoch ms
    actor_name: Optional[str] = None
    actor_avatar_url: Optional[str] = None
    text_preview: Optional[str] = None


class PresortedGridItem(_Stored):
    type: Literal["grid"] = "grid"
    id: str
    score: float = 0.0
    actor_id: str
    source: Literal["grid"] = "grid"
    presentation: StoredPresentation = Field(
        default_factory=lambda: StoredPresentation(mode="grid")
    )
    items: list[PresortedLeafItem]
    min_size: int = 1

    def narrowed(self, children: list[PresortedLeafItem]) -> Optional["PresortedGridItem"]:
        if len(children) < max(1, self.min_size):
            return None
        return self.model_copy(update={"items": children})


PresortedFeedItem = Annotated[
    Union[PresortedLeafItem, PresortedGridItem],
    Field(discriminator="type"),
]


class SegmentPayload(_Stored):
    schema_version: int
    items: list[PresortedFeedItem]


# ──────────────────────────── (de)serialisation ───────────────────────────

def encode_segment_items(items: list) -> dict:
    payload = SegmentPayload(schema_version=SEGMENT_SCHEMA_VERSION, items=items)
    return payload.model_dump(mode="json", by_alias=True)


def decode_segment_items(raw) -> list:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise SegmentDecodeError(f"segment payload is not JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise SegmentDecodeError(f"segment payload is {type(raw).__name__}, expected envelope")
    version = raw.get("schemaVersion")
    if version != SEGMENT_SCHEMA_VERSION:
        raise SegmentDecodeError(
            f"segment schema version {version!r} != {SEGMENT_SCHEMA_VERSION}"
        )
    try:
        return SegmentPayload.model_validate(raw).items
    except ValidationError as exc:
        raise SegmentDecodeError(f"segment items failed validation: {exc}") from exc


# ──────────────────────────── conversion ──────────────────────────────────

def truncate_preview(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    if len(text) > TEXT_PREVIEW_LIMIT:
        return text[:TEXT_PREVIEW_LIMIT] + "..."
    return text


def epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _stored_presentation(presentation: Optional[Presentation]) -> Optional[StoredPresentation]:
    if presentation is None:
        return None
    return StoredPresentation(mode=presentation.mode, accent=presentation.accent)


def to_presorted_leaf(
    item: FeedItem,
    actors: dict[str, tuple[str, Optional[str]]],
    now_ms: int,
) -> PresortedLeafItem:
    candidate = item.candidate
    name, avatar = actors.get(item.actor_id, (None, None))
    media_type = None
    if candidate.kind == "post":
        created_at = epoch_ms(candidate.created_at)
        preview = truncate_preview(candidate.text)
        media_type = candidate.media_type
        name = name or candidate.actor_name
    elif candidate.kind == "suggestion":
        # Suggestions have no creation time of their own
        created_at = now_ms
        preview = truncate_preview(candidate.bio)
        name = name or candidate.display_name
    else:
        created_at = now_ms
        preview = truncate_preview(candidate.prompt)
    return PresortedLeafItem(
        type=candidate.kind,
        id=str(candidate.id),
        score=candidate.score,
        actor_id=item.actor_id,
        source=item.source,
        media_type=media_type,
        presentation=_stored_presentation(item.presentation),
        created_at=created_at,
        actor_name=name,
        actor_avatar_url=avatar,
        text_preview=preview,
    )


def convert_feed_items(
    items: list,
    actors: dict[str, tuple[str, Optional[str]]],
    now_ms: int,
) -> tuple[list, int]:
    """FeedItems / GridItems → presorted items; returns (items, skipped)."""
    converted = []
    skipped = 0
    for item in items:
        if isinstance(item, GridItem):
            if not item.items:
                skipped += 1
                continue
            children = [to_presorted_leaf(child, actors, now_ms) for child in item.items]
            converted.append(
                PresortedGridItem(
                    id=f"grid-{children[0].type}-{children[0].id}",
                    score=item.score,
                    actor_id=item.actor_id,
                    presentation=_stored_presentation(item.presentation),
                    items=children,
                    min_size=item.min_size,
                )
            )
        else:
            converted.append(to_presorted_leaf(item, actors, now_ms))
    return converted, skipped


def iter_presorted_leaves(items: list) -> list[PresortedLeafItem]:
    leaves: list[PresortedLeafItem] = []
    for item in items:
        if isinstance(item, PresortedGridItem):
            leaves.extend(item.items)
        else:
            leaves.append(item)
    return leaves


# ──────────────────────────── phase 1 ─────────────────────────────────────

def phase1_item(leaf: PresortedLeafItem) -> Phase1Item:
    presentation = None
    if leaf.presentation is not None:
        presentation = PresentationOut(
            mode=leaf.presentation.mode, accent=leaf.presentation.accent
        )
    return Phase1Item(
        id=leaf.id,
        kind=PHASE1_KINDS[leaf.type],
        actor=FeedActor(
            id=leaf.actor_id,
            name=leaf.actor_name or "User",
            avatar_url=leaf.actor_avatar_url,
        ),
        text_preview=leaf.text_preview,
        created_at=leaf.created_at,
        presentation=presentation,
    )


def generate_phase1_json(items: list) -> str:
    """
    Minimal first-paint payload: the first two leaves plus the id of the
    next one. Capped at 8 KiB for inline HTML embedding; oversized payloads
    become an empty list so the client falls back to the API.
    """
    leaves = iter_presorted_leaves(items)
    payload = {
        "items": [
            phase1_item(leaf).model_dump(mode="json", by_alias=True)
            for leaf in leaves[:PHASE1_ITEM_COUNT]
        ],
        "nextCursor": leaves[PHASE1_ITEM_COUNT].id if len(leaves) > PHASE1_ITEM_COUNT else None,
    }
    encoded = json.dumps(payload, separators=(",", ":"))
    if len(encoded.encode("utf-8")) > PHASE1_MAX_BYTES:
        logger.info("Phase-1 payload is %d bytes — storing empty payload", len(encoded))
        return json.dumps({"items": [], "nextCursor": None}, separators=(",", ":"))
    return encoded


def parse_phase1_json(raw: str) -> list[Phase1Item]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("phase-1 payload is not an object")
    return [Phase1Item.model_validate(entry) for entry in data.get("items") or []]


# ──────────────────────────── seen demotion ───────────────────────────────

def seen_lookup_ids(items: list) -> tuple[list[str], list[str]]:
    post_ids: list[str] = []
    suggestion_ids: list[str] = []
    for leaf in iter_presorted_leaves(items):
        if leaf.type == "post":
            post_ids.append(leaf.id)
        elif leaf.type == "suggestion":
            suggestion_ids.append(leaf.id)
    return post_ids, suggestion_ids


def _is_seen(leaf: PresortedLeafItem, post_seen: dict, suggestion_seen: dict, cutoff: datetime) -> bool:
    if leaf.type == "post":
        seen_at = post_seen.get(leaf.id)
    elif leaf.type == "suggestion":
        seen_at = suggestion_seen.get(leaf.id)
    else:
        return False
    return seen_at is not None and seen_at >= cutoff


def any_seen(
    items: list,
    post_seen: dict[str, datetime],
    suggestion_seen: dict[str, datetime],
    config: FeedConfig,
    now: datetime,
) -> bool:
    cutoff = now - timedelta(hours=config.seen_window_hours)
    return any(
        _is_seen(leaf, post_seen, suggestion_seen, cutoff)
        for leaf in iter_presorted_leaves(items)
    )


def apply_seen_penalty(
    items: list,
    post_seen: dict[str, datetime],
    suggestion_seen: dict[str, datetime],
    config: FeedConfig,
    now: datetime,
) -> list:
    """
    Subtract the seen weight from items shown inside the seen window. Unseen
    items keep their cached (sequenced) order; seen items move behind them,
    ordered by adjusted score. A grid counts as seen when any child is.
    """
    cutoff = now - timedelta(hours=config.seen_window_hours)
    penalty = config.weights.seen_penalty
    unseen = []
    seen = []
    for item in items:
        leaves = iter_presorted_leaves([item])
        if any(_is_seen(leaf, post_seen, suggestion_seen, cutoff) for leaf in leaves):
            seen.append(item.model_copy(update={"score": max(0.0, item.score - penalty)}))
        else:
            unseen.append(item)
    seen.sort(key=lambda item: item.score, reverse=True)
    return unseen + seen
