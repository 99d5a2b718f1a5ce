"""
SQLAlchemy ORM models.

Tables:
  users / profiles        — accounts and the public profile shown on cards
  follows                 — social graph edges (follower → followee)
  posts / post_stats      — post metadata and denormalised engagement counters
  media / post_media      — uploaded media objects and their attachment order
  liked_posts             — user × post engagement
  matches / match_scores  — mutual matches and precomputed compatibility scores
  quizzes / quiz_*        — quiz question cards
  feed_seen               — what a viewer has been shown (seen demotion)
  presorted_feed_segments — precomputed, ranked feed pages per user
  job_freshness           — input-hash per (job, scope) for skip-if-unchanged
  job_runs                — one row per job execution
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from feedpresort.database import Base, BigIntId


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    profile = relationship("Profile", back_populates="user", uselist=False, lazy="raise")


class Profile(Base):
    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    bio: Mapped[Optional[str]] = mapped_column(Text)
    location_text: Mapped[Optional[str]] = mapped_column(String(255))
    intent: Mapped[Optional[str]] = mapped_column(String(50))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user = relationship("User", back_populates="profile", lazy="raise")


class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    followee_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        # follower lookup for feed invalidation
        Index("idx_followee", "followee_id"),
    )


class Post(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content: Mapped[Optional[str]] = mapped_column(Text)
    visibility: Mapped[str] = mapped_column(
        String(20), default="PUBLIC", nullable=False
    )  # 'PUBLIC' | 'PRIVATE'
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("idx_posts_user", "user_id"),
        Index("idx_posts_created", "created_at", "post_id"),
    )


class PostStats(Base):
    __tablename__ = "post_stats"

    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), primary_key=True
    )
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class Media(Base):
    __tablename__ = "media"

    media_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # IMAGE | VIDEO | EMBED
    # Either an absolute URL (embeds, CDN) or an object key in the media bucket
    url: Mapped[Optional[str]] = mapped_column(String(1000))
    storage_key: Mapped[Optional[str]] = mapped_column(String(500))
    thumb_url: Mapped[Optional[str]] = mapped_column(String(1000))
    width: Mapped[Optional[int]] = mapped_column(Integer)
    height: Mapped[Optional[int]] = mapped_column(Integer)
    duration_sec: Mapped[Optional[int]] = mapped_column(Integer)
    visibility: Mapped[str] = mapped_column(String(20), default="PUBLIC", nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="READY", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (Index("idx_media_owner", "owner_user_id", "created_at"),)


class PostMedia(Base):
    __tablename__ = "post_media"

    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), primary_key=True
    )
    media_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("media.media_id"), primary_key=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    media = relationship("Media", lazy="joined")


class LikedPost(Base):
    __tablename__ = "liked_posts"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )


class Match(Base):
    __tablename__ = "matches"

    match_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_a_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.user_id"), nullable=False)
    user_b_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.user_id"), nullable=False)
    state: Mapped[str] = mapped_column(String(20), default="ACTIVE", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_matches_a", "user_a_id"),
        Index("idx_matches_b", "user_b_id"),
    )


class MatchScore(Base):
    __tablename__ = "match_scores"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    candidate_user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    score: Mapped[float] = mapped_column(Float, nullable=False)  # 0..1
    scored_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    algorithm_version: Mapped[Optional[str]] = mapped_column(String(32))


class Quiz(Base):
    __tablename__ = "quizzes"

    quiz_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    title: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )

    questions = relationship("QuizQuestion", back_populates="quiz", lazy="raise")


class QuizQuestion(Base):
    __tablename__ = "quiz_questions"

    question_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    quiz_id: Mapped[str] = mapped_column(String(36), ForeignKey("quizzes.quiz_id"), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    quiz = relationship("Quiz", back_populates="questions", lazy="joined")
    options = relationship(
        "QuizOption", lazy="selectin", order_by="QuizOption.position"
    )


class QuizOption(Base):
    __tablename__ = "quiz_options"

    option_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    question_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("quiz_questions.question_id"), nullable=False
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class FeedSeen(Base):
    __tablename__ = "feed_seen"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    viewer_user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    item_type: Mapped[str] = mapped_column(String(20), nullable=False)  # POST | SUGGESTION
    item_id: Mapped[str] = mapped_column(String(36), nullable=False)
    seen_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("viewer_user_id", "item_type", "item_id", name="uq_feed_seen_item"),
    )


class PresortedFeedSegment(Base):
    __tablename__ = "presorted_feed_segments"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    segment_index: Mapped[int] = mapped_column(Integer, nullable=False)
    # Versioned envelope: {"schemaVersion": N, "items": [...]}
    items: Mapped[dict] = mapped_column(JSON, nullable=False)
    phase1_json: Mapped[Optional[str]] = mapped_column(Text)
    algorithm_version: Mapped[str] = mapped_column(String(32), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "segment_index", name="uq_segment_user_index"),
        Index("idx_segment_expires", "expires_at"),
    )


class JobFreshness(Base):
    __tablename__ = "job_freshness"

    job_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    scope: Mapped[str] = mapped_column(String(150), primary_key=True)
    input_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class JobRun(Base):
    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), nullable=False)  # EVENT | CRON | MANUAL
    scope: Mapped[Optional[str]] = mapped_column(String(150))
    algorithm_version: Mapped[Optional[str]] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # RUNNING | SUCCESS | FAILED
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error: Mapped[Optional[str]] = mapped_column(Text)
    run_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON)

    __table_args__ = (Index("idx_job_runs_name_started", "job_name", "started_at"),)
