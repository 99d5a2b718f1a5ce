import pytest

from feedpresort.feed.candidates import (
    fetch_post_candidates,
    fetch_question_candidates,
    fetch_suggestion_candidates,
    get_candidates,
    resolve_cursor,
)
from feedpresort.feed.relationships import (
    build_relationship_items,
    get_relationship_ids,
    get_relationship_posts,
)
from feedpresort.feed.types import ViewerContext


@pytest.mark.asyncio
async def test_posts_are_newest_first_and_public_only(db, make):
    author = await make.user()
    old = await make.post(author, minutes_ago=30)
    new = await make.post(author, minutes_ago=1)
    await make.post(author, visibility="PRIVATE")
    await make.post(author, minutes_ago=60 * 24 * 45)
    await make.commit()

    posts, next_cursor = await fetch_post_candidates(db, ViewerContext(user_id=None, take=2))

    assert [p.id for p in posts] == [new, old]
    assert posts[0].actor_name is not None
    assert next_cursor == old


@pytest.mark.asyncio
async def test_cursor_pages_past_the_given_post(db, make):
    author = await make.user()
    ids = [await make.post(author, minutes_ago=m) for m in (1, 2, 3)]
    await make.commit()

    cursor = await resolve_cursor(db, ids[0])
    posts, _ = await fetch_post_candidates(db, ViewerContext(user_id=None), cursor)

    assert [p.id for p in posts] == ids[1:]


@pytest.mark.asyncio
async def test_unknown_or_malformed_cursor_is_ignored(db):
    assert await resolve_cursor(db, None) is None
    assert await resolve_cursor(db, "   ") is None
    assert await resolve_cursor(db, "x" * 80) is None
    assert await resolve_cursor(db, "does-not-exist") is None


@pytest.mark.asyncio
async def test_suggestions_put_matches_first_then_scored_profiles(db, make):
    viewer = await make.user()
    matched = await make.user()
    scored = await make.user()
    await make.user()
    await make.user(visible=False)
    await make.match(matched, viewer)
    await make.match_score(viewer, scored, 0.7)
    await make.commit()

    suggestions = await fetch_suggestion_candidates(db, ViewerContext(user_id=viewer))

    assert [(s.user_id, s.source) for s in suggestions] == [
        (matched, "match"), (scored, "suggested"),
    ]
    assert suggestions[0].match_score == 1.0
    assert suggestions[1].match_score == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_suggestions_fall_back_to_seeded_shuffle(db, make):
    viewer = await make.user()
    others = {await make.user() for _ in range(5)}
    hidden = await make.user(visible=False)
    await make.commit()

    first = await fetch_suggestion_candidates(db, ViewerContext(user_id=viewer, seed=7))
    second = await fetch_suggestion_candidates(db, ViewerContext(user_id=viewer, seed=7))

    assert {s.user_id for s in first} == others
    assert hidden not in {s.user_id for s in first}
    assert [s.user_id for s in first] == [s.user_id for s in second]


@pytest.mark.asyncio
async def test_anonymous_viewer_gets_posts_only(db, make):
    author = await make.user()
    await make.post(author)
    await make.quiz(["Mountains or sea?"])
    await make.commit()

    candidates = await get_candidates(db, ViewerContext(user_id=None))

    assert len(candidates.posts) == 1
    assert candidates.suggestions == []
    assert candidates.questions == []


@pytest.mark.asyncio
async def test_questions_come_from_active_quizzes(db, make):
    viewer = await make.user()
    active = await make.quiz(["Mountains or sea?", "Early bird?"])
    await make.quiz(["Retired?"], active=False)
    await make.commit()

    questions = await fetch_question_candidates(db, ViewerContext(user_id=viewer))

    assert [q.id for q in questions] == active
    assert [o.label for o in questions[0].options] == ["Yes", "No"]
    assert questions[0].quiz_title == "Getting to know you"


@pytest.mark.asyncio
async def test_relationship_tiers(db, make):
    viewer = await make.user()
    friend = await make.user()
    fan = await make.user()
    mutual = await make.user()
    await make.follow(viewer, friend)
    await make.follow(viewer, mutual)
    await make.follow(mutual, viewer)
    await make.follow(fan, viewer)

    own = await make.post(viewer)
    friend_private = await make.post(friend, visibility="PRIVATE")
    mutual_post = await make.post(mutual, minutes_ago=5)
    fan_public = await make.post(fan)
    await make.post(fan, visibility="PRIVATE")
    await make.commit()

    ids = await get_relationship_ids(db, viewer)
    assert set(ids.following_ids) == {friend, mutual}
    assert ids.follower_ids == [fan]

    tiers = await get_relationship_posts(db, viewer, ids)
    assert [p.id for p in tiers["self"]] == [own]
    assert {p.id for p in tiers["following"]} == {friend_private, mutual_post}
    assert [p.id for p in tiers["followers"]] == [fan_public]

    items = build_relationship_items(tiers)
    assert [item.tier for item in items] == ["self", "following", "following", "followers"]
