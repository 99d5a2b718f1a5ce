"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.

Responses are camelCase on the wire (`nextCursorId`, `hasMorePosts`, ...).
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


# ──────────────────────────── Posts ───────────────────────────────────────

class PostCreate(ApiModel):
    user_id: str
    content: Optional[str] = None
    visibility: str = Field("PUBLIC", pattern="^(PUBLIC|PRIVATE)$")
    # Already-uploaded media objects to attach, in display order
    media_ids: list[str] = Field(default_factory=list)


class PostResponse(ApiModel):
    post_id: str
    user_id: str
    content: Optional[str]
    visibility: str
    created_at: datetime


class LikeRequest(ApiModel):
    user_id: str


# ──────────────────────────── Feed items ──────────────────────────────────

class PresentationOut(ApiModel):
    mode: Literal["single", "mosaic", "grid", "highlight", "question"]
    accent: Optional[Literal["match", "boost", "new"]] = None


class FeedActor(ApiModel):
    id: str
    name: str = "User"
    avatar_url: Optional[str] = None


class FeedMediaOut(ApiModel):
    id: str
    type: str
    url: Optional[str] = None
    thumb_url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration_sec: Optional[int] = None
    order: int = 0


class FeedStatsOut(ApiModel):
    like_count: int = 0
    comment_count: int = 0


class CompatibilityOut(ApiModel):
    score: Optional[float] = None
    status: Literal["READY", "INSUFFICIENT_DATA"] = "INSUFFICIENT_DATA"


class HydratedPost(ApiModel):
    id: str
    text: Optional[str] = None
    created_at: datetime
    actor: FeedActor
    media_type: str = "text"
    media: list[FeedMediaOut] = Field(default_factory=list)
    stats: Optional[FeedStatsOut] = None


class HydratedSuggestion(ApiModel):
    user_id: str
    display_name: Optional[str] = None
    bio: Optional[str] = None
    location_text: Optional[str] = None
    intent: Optional[str] = None
    avatar_url: Optional[str] = None
    media: list[FeedMediaOut] = Field(default_factory=list)
    compatibility: Optional[CompatibilityOut] = None


class QuestionOptionOut(ApiModel):
    id: str
    label: str
    value: str
    order: int


class HydratedQuestion(ApiModel):
    id: str
    quiz_id: str
    quiz_title: Optional[str] = None
    prompt: str
    options: list[QuestionOptionOut] = Field(default_factory=list)
    order: int = 0


class FeedItemOut(ApiModel):
    type: Literal["post", "suggestion", "question", "grid"]
    actor_id: str
    source: str
    tier: str = "everyone"
    presentation: Optional[PresentationOut] = None
    post: Optional[HydratedPost] = None
    suggestion: Optional[HydratedSuggestion] = None
    question: Optional[HydratedQuestion] = None
    # Grid children, never grids themselves
    items: Optional[list["FeedItemOut"]] = None


# ──────────────────────────── Lite (phase 1) ──────────────────────────────

class Phase1Item(ApiModel):
    id: str
    kind: Literal["post", "profile", "question"]
    actor: FeedActor
    text_preview: Optional[str] = None
    created_at: int  # epoch ms
    presentation: Optional[PresentationOut] = None


# ──────────────────────────── Responses ───────────────────────────────────

class DedupeDebug(ApiModel):
    post_duplicates: int = 0
    suggestion_duplicates: int = 0
    question_duplicates: int = 0
    cross_source_removed: int = 0


class SeenDebug(ApiModel):
    window_hours: float = 24
    demoted_posts: int = 0
    demoted_suggestions: int = 0


class FeedDebug(ApiModel):
    seed: Optional[int] = None
    path: str
    candidate_counts: dict[str, int] = Field(default_factory=dict)
    post_ids: list[str] = Field(default_factory=list)
    suggestion_user_ids: list[str] = Field(default_factory=list)
    question_ids: list[str] = Field(default_factory=list)
    dedupe: DedupeDebug = Field(default_factory=DedupeDebug)
    seen: SeenDebug = Field(default_factory=SeenDebug)
    source_sequence: list[str] = Field(default_factory=list)
    tier_sequence: list[str] = Field(default_factory=list)
    actor_counts: dict[str, int] = Field(default_factory=dict)
    tier_counts: dict[str, int] = Field(default_factory=dict)


class FeedResponse(ApiModel):
    items: list[FeedItemOut]
    next_cursor_id: Optional[str] = None
    has_more_posts: bool = False
    debug: Optional[FeedDebug] = None


class LiteFeedResponse(ApiModel):
    items: list[Phase1Item]
    next_cursor_id: Optional[str] = None
