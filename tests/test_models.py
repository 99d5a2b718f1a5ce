import pytest
from sqlalchemy import select

from feedpresort.models import Profile, Quiz, User


def test_unused_back_references_refuse_lazy_loads():
    for attr in (User.profile, Profile.user, Quiz.questions):
        assert attr.property.lazy == "raise"


@pytest.mark.asyncio
async def test_rows_load_without_touching_back_references(db, make):
    user_id = await make.user(name="Ada")
    await make.quiz(["Cats?"])
    await make.commit()
    db.expire_all()

    user = (await db.execute(select(User).where(User.user_id == user_id))).scalar_one()
    profile = (await db.execute(select(Profile).where(Profile.user_id == user_id))).scalar_one()
    quiz = (await db.execute(select(Quiz))).scalar_one()

    assert profile.display_name == "Ada"
    assert user.username.startswith("user")
    assert quiz.is_active
