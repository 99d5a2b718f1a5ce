"""
Feed configuration is sequence-first.

The slot sequence defines the structure of a response; caps are guardrails
only. A FeedConfig is an explicit value passed to whatever ranks; there is no
module-level mutable config.

Bump FEED_CONFIG_VERSION whenever the default sequence or weights change so
presorted segments stamped with the old version get purged.
"""
import hashlib
import json
import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

FEED_CONFIG_VERSION = "v9"

PostMediaFilter = Literal["video", "image", "text", "mixed", "any"]
SuggestionSource = Literal["match", "suggested"]
SlotPresentation = Literal["single", "mosaic", "grid", "highlight"]


class _ConfigModel(BaseModel):
    # JSON overrides may use camelCase keys
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ──────────────────────────── Slots ───────────────────────────────────────

class PostSlot(_ConfigModel):
    kind: Literal["post"] = "post"
    # Number of times to emit this slot before moving on
    count: int = 1
    # "any" ignores the media type
    media_type: PostMediaFilter = "any"
    presentation: Optional[SlotPresentation] = None


class SuggestionSlot(_ConfigModel):
    kind: Literal["suggestion"] = "suggestion"
    count: int = 1
    # "match" = mutual like, "suggested" = non-match profile suggestion
    source: Optional[SuggestionSource] = None
    presentation: Optional[SlotPresentation] = None


class QuestionSlot(_ConfigModel):
    kind: Literal["question"] = "question"
    count: int = 1


class PostMixRule(_ConfigModel):
    type: Literal["post"] = "post"
    media_type: PostMediaFilter = "any"


class SuggestionMixRule(_ConfigModel):
    type: Literal["suggestion"] = "suggestion"
    source: Optional[SuggestionSource] = None


class QuestionMixRule(_ConfigModel):
    type: Literal["question"] = "question"


GridMixRule = Annotated[
    Union[PostMixRule, SuggestionMixRule, QuestionMixRule],
    Field(discriminator="type"),
]


class GridSlot(_ConfigModel):
    """Composite card holding several items; never nested."""

    kind: Literal["grid"] = "grid"
    size: int = Field(3, ge=1)
    min_size: Optional[int] = None
    # Require the exact size; False accepts partial grids down to min_size
    strict: bool = True
    # Homogeneous content type, ignored when `mix` is set
    of: Literal["post", "suggestion", "question"] = "post"
    media_type: PostMediaFilter = "any"
    source: Optional[SuggestionSource] = None
    # Round-robin rules for heterogeneous grids
    mix: Optional[list[GridMixRule]] = None
    distinct_actors: bool = False
    presentation: Literal["grid"] = "grid"
    count: int = 1

    @property
    def effective_min_size(self) -> int:
        if self.strict:
            return self.size
        return max(1, min(self.min_size or 1, self.size))

    def rules(self) -> list:
        """The per-position fill rules, cycled when shorter than `size`."""
        if self.mix:
            return list(self.mix)
        if self.of == "post":
            return [PostMixRule(media_type=self.media_type)]
        if self.of == "suggestion":
            return [SuggestionMixRule(source=self.source)]
        return [QuestionMixRule()]


FeedSlot = Annotated[
    Union[PostSlot, SuggestionSlot, QuestionSlot, GridSlot],
    Field(discriminator="kind"),
]


# ──────────────────────────── Config ──────────────────────────────────────

class FeedCaps(_ConfigModel):
    # Hard limit on items returned per response (a grid counts once)
    max_items_per_response: int = 5
    # Hard limit on cards one actor can occupy, grid children included
    max_per_actor: int = 3


class ScoringWeights(_ConfigModel):
    recency: float = 0.6
    affinity: float = 0.3
    quality: float = 0.1
    # Soft demotion, not exclusion
    seen_penalty: float = 0.2


class FeedConfig(_ConfigModel):
    sequence: list[FeedSlot] = Field(default_factory=list)
    caps: FeedCaps = Field(default_factory=FeedCaps)
    seen_window_hours: float = 24
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    version: str = FEED_CONFIG_VERSION
    # Unproductive full cycles tolerated before the sequencer gives up
    idle_cycles: int = Field(1, ge=1)

    def expanded_sequence(self) -> list:
        expanded: list = []
        for slot in self.sequence:
            expanded.extend([slot] * max(1, int(slot.count)))
        return expanded

    def fingerprint(self) -> str:
        """Stable digest of everything that shapes ranking output."""
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


DEFAULT_SEQUENCE = [
    PostSlot(media_type="any", presentation="highlight"),
    SuggestionSlot(count=3, presentation="single"),
    GridSlot(size=3, min_size=3, strict=False, of="suggestion", distinct_actors=True),
    PostSlot(media_type="any", presentation="grid"),
    PostSlot(media_type="any", presentation="mosaic"),
    QuestionSlot(),
    PostSlot(media_type="any", presentation="single"),
]

DEFAULT_FEED_CONFIG = FeedConfig(sequence=DEFAULT_SEQUENCE)


def load_feed_config(raw: Optional[str] = None) -> FeedConfig:
    """
    Build the running config from an optional JSON override.

    Keys missing from the override keep their defaults. An invalid override
    is logged and ignored so a bad deploy never takes the feed down.
    """
    if not raw:
        return DEFAULT_FEED_CONFIG
    try:
        override = json.loads(raw)
        if not isinstance(override, dict):
            raise ValueError("feed config override must be a JSON object")
        base = DEFAULT_FEED_CONFIG.model_dump(mode="json")
        base.update(override)
        return FeedConfig.model_validate(base)
    except (ValueError, ValidationError) as exc:
        logger.warning("Invalid feed config override (%s) — using defaults", exc)
        return DEFAULT_FEED_CONFIG
