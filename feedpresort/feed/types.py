"""
Internal pipeline types (not API contracts).

Candidates are a closed sum type: every branch in the sequencer and the
converters dispatches on `kind` and handles all three variants.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Literal, Optional, Union

MediaType = Literal["text", "image", "video", "mixed"]
ItemSource = Literal["post", "match", "suggested", "question"]
Tier = Literal["self", "following", "followers", "everyone"]
PresentationMode = Literal["single", "mosaic", "grid", "highlight", "question"]
Accent = Literal["match", "boost", "new"]


@dataclass(frozen=True)
class Presentation:
    mode: PresentationMode
    accent: Optional[Accent] = None

    def to_dict(self) -> dict:
        return {"mode": self.mode, "accent": self.accent}


# ──────────────────────────── Candidates ──────────────────────────────────

@dataclass
class PostCandidate:
    id: str
    actor_id: str
    created_at: datetime
    text: Optional[str] = None
    actor_name: Optional[str] = None
    media_type: MediaType = "text"
    score: float = 0.0
    kind: Literal["post"] = "post"

    @property
    def key(self) -> str:
        return f"post:{self.id}"


@dataclass
class SuggestionCandidate:
    user_id: str
    display_name: Optional[str] = None
    bio: Optional[str] = None
    location_text: Optional[str] = None
    intent: Optional[str] = None
    source: Literal["match", "suggested"] = "suggested"
    match_score: Optional[float] = None
    score: float = 0.0
    kind: Literal["suggestion"] = "suggestion"

    @property
    def actor_id(self) -> str:
        return self.user_id

    @property
    def id(self) -> str:
        return self.user_id

    @property
    def key(self) -> str:
        return f"suggestion:{self.user_id}"


@dataclass
class QuestionOption:
    id: str
    label: str
    value: str
    order: int


@dataclass
class QuestionCandidate:
    id: str
    quiz_id: str
    prompt: str
    quiz_title: Optional[str] = None
    options: list[QuestionOption] = field(default_factory=list)
    order: int = 0
    score: float = 0.0
    kind: Literal["question"] = "question"

    @property
    def actor_id(self) -> str:
        # Questions have no author; each counts as its own actor for caps
        return self.id

    @property
    def key(self) -> str:
        return f"question:{self.id}"


Candidate = Union[PostCandidate, SuggestionCandidate, QuestionCandidate]


@dataclass
class CandidateSet:
    posts: list[PostCandidate] = field(default_factory=list)
    suggestions: list[SuggestionCandidate] = field(default_factory=list)
    questions: list[QuestionCandidate] = field(default_factory=list)
    next_cursor_id: Optional[str] = None


# ──────────────────────────── Ranked items ────────────────────────────────

def source_for(candidate: Candidate) -> ItemSource:
    if candidate.kind == "post":
        return "post"
    if candidate.kind == "suggestion":
        return "match" if candidate.source == "match" else "suggested"
    return "question"


@dataclass
class FeedItem:
    candidate: Candidate
    tier: Tier = "everyone"
    presentation: Optional[Presentation] = None

    @property
    def type(self) -> str:
        return self.candidate.kind

    @property
    def actor_id(self) -> str:
        return self.candidate.actor_id

    @property
    def source(self) -> ItemSource:
        return source_for(self.candidate)

    @property
    def key(self) -> str:
        return self.candidate.key

    @property
    def score(self) -> float:
        return self.candidate.score


@dataclass
class GridItem:
    """Structural card; children are always leaf FeedItems."""

    items: list[FeedItem]
    presentation: Presentation = field(default_factory=lambda: Presentation("grid"))
    tier: Tier = "everyone"
    type: Literal["grid"] = "grid"
    min_size: int = 1

    @property
    def actor_id(self) -> str:
        return self.items[0].actor_id if self.items else ""

    @property
    def source(self) -> str:
        return "grid"

    @property
    def key(self) -> str:
        return "grid:" + ",".join(child.key for child in self.items)

    @property
    def score(self) -> float:
        return max((child.score for child in self.items), default=0.0)

    def narrowed(self, children: list[FeedItem]) -> Optional["GridItem"]:
        """Copy holding `children`, or None when that is below min_size."""
        if len(children) < max(1, self.min_size):
            return None
        return replace(self, items=children)


RankedItem = Union[FeedItem, GridItem]


def iter_leaves(items: list) -> list[FeedItem]:
    """Flatten grids into their children, preserving order."""
    leaves: list[FeedItem] = []
    for item in items:
        if isinstance(item, GridItem):
            leaves.extend(item.items)
        else:
            leaves.append(item)
    return leaves


# ──────────────────────────── Request context ─────────────────────────────

@dataclass
class ViewerContext:
    user_id: Optional[str]
    take: int = 20
    cursor_id: Optional[str] = None
    debug: bool = False
    seed: Optional[int] = None
    mark_seen: bool = False
    lite: bool = False


@dataclass
class DedupeStats:
    post_duplicates: int = 0
    suggestion_duplicates: int = 0
    question_duplicates: int = 0
    cross_source_removed: int = 0


@dataclass
class SeenStats:
    window_hours: float = 24
    demoted_posts: int = 0
    demoted_suggestions: int = 0


@dataclass
class DebugSummary:
    seed: Optional[int] = None
    path: str = "live"
    candidate_counts: dict = field(default_factory=dict)
    post_ids: list[str] = field(default_factory=list)
    suggestion_user_ids: list[str] = field(default_factory=list)
    question_ids: list[str] = field(default_factory=list)
    dedupe: DedupeStats = field(default_factory=DedupeStats)
    seen: SeenStats = field(default_factory=SeenStats)
    source_sequence: list[str] = field(default_factory=list)
    tier_sequence: list[str] = field(default_factory=list)
    actor_counts: dict = field(default_factory=dict)
    tier_counts: dict = field(default_factory=dict)
