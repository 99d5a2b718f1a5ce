import os

# Must be set before feedpresort.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JOB_RUNNER", "cli")

from datetime import timedelta
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from feedpresort.config import settings
from feedpresort.database import Base, utcnow
from feedpresort.models import (
    Follow,
    Match,
    MatchScore,
    Media,
    Post,
    PostMedia,
    PostStats,
    Profile,
    Quiz,
    QuizOption,
    QuizQuestion,
    User,
)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'feed.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def no_force_flags(monkeypatch):
    monkeypatch.setattr(settings, "job_full", False)
    monkeypatch.setattr(settings, "job_force", False)


class Factory:
    """Small helpers for seeding the store in tests."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    async def user(
        self,
        name: Optional[str] = None,
        visible: bool = True,
        bio: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> str:
        n = self._next()
        user = User(username=f"user{n}")
        self.db.add(user)
        await self.db.flush()
        self.db.add(
            Profile(
                user_id=user.user_id,
                display_name=name or f"User {n}",
                bio=bio,
                avatar_url=avatar_url,
                is_visible=visible,
            )
        )
        await self.db.flush()
        return user.user_id

    async def post(
        self,
        user_id: str,
        content: str = "hello",
        minutes_ago: int = 0,
        visibility: str = "PUBLIC",
        media_types: tuple = (),
    ) -> str:
        created = utcnow() - timedelta(minutes=minutes_ago)
        post = Post(
            user_id=user_id,
            content=content,
            visibility=visibility,
            created_at=created,
            updated_at=created,
        )
        self.db.add(post)
        await self.db.flush()
        self.db.add(PostStats(post_id=post.post_id, like_count=0, comment_count=0))
        for position, media_type in enumerate(media_types):
            media = Media(
                owner_user_id=user_id,
                type=media_type,
                url=f"https://cdn.test/{post.post_id}/{position}",
            )
            self.db.add(media)
            await self.db.flush()
            self.db.add(PostMedia(post_id=post.post_id, media_id=media.media_id, position=position))
        await self.db.flush()
        return post.post_id

    async def follow(self, follower_id: str, followee_id: str) -> None:
        self.db.add(Follow(follower_id=follower_id, followee_id=followee_id))
        await self.db.flush()

    async def match(self, user_a_id: str, user_b_id: str) -> None:
        self.db.add(Match(user_a_id=user_a_id, user_b_id=user_b_id, updated_at=utcnow()))
        await self.db.flush()

    async def match_score(self, user_id: str, candidate_id: str, score: float) -> None:
        self.db.add(
            MatchScore(
                user_id=user_id,
                candidate_user_id=candidate_id,
                score=score,
                scored_at=utcnow(),
                algorithm_version="v1",
            )
        )
        await self.db.flush()

    async def quiz(self, prompts: list[str], active: bool = True) -> list[str]:
        quiz = Quiz(title="Getting to know you", is_active=active, created_at=utcnow())
        self.db.add(quiz)
        await self.db.flush()
        ids = []
        for position, prompt in enumerate(prompts):
            question = QuizQuestion(quiz_id=quiz.quiz_id, prompt=prompt, position=position)
            self.db.add(question)
            await self.db.flush()
            for index, label in enumerate(("Yes", "No")):
                self.db.add(
                    QuizOption(
                        question_id=question.question_id,
                        label=label,
                        value=label.lower(),
                        position=index,
                    )
                )
            ids.append(question.question_id)
        await self.db.flush()
        return ids

    async def commit(self) -> None:
        await self.db.commit()


@pytest_asyncio.fixture
async def make(db):
    return Factory(db)
