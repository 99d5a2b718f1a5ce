import httpx
import pytest
import respx

from feedpresort.clients.compatibility_client import CompatibilityClient
from feedpresort.feed.candidates import fetch_question_candidates
from feedpresort.feed.hydration import (
    Enrichment,
    build_item_payloads,
    hydrate_feed_items,
    materialize_presorted_items,
    resolve_compatibility,
)
from feedpresort.feed.presorted import PresortedGridItem, PresortedLeafItem
from feedpresort.feed.types import (
    FeedItem,
    GridItem,
    PostCandidate,
    SuggestionCandidate,
    ViewerContext,
)
from feedpresort.database import utcnow
from feedpresort.models import Post
from feedpresort.schemas import CompatibilityOut

COMPAT_URL = "http://compat.test"


def test_resolve_compatibility():
    ready = CompatibilityOut(score=0.8, status="READY")
    assert resolve_compatibility(None, "u2", {"u2": ready}) is None
    assert resolve_compatibility("u1", "u1", {"u1": ready}) is None
    assert resolve_compatibility("u1", "u2", {"u2": ready}) == ready
    assert resolve_compatibility("u1", "u3", {}).status == "INSUFFICIENT_DATA"


def test_grid_payload_nests_leaf_children():
    grid = GridItem(
        items=[
            FeedItem(candidate=SuggestionCandidate(user_id="a", display_name="A")),
            FeedItem(candidate=SuggestionCandidate(user_id="b", source="match")),
        ]
    )

    payloads = build_item_payloads([grid], ViewerContext(user_id=None), Enrichment())

    assert payloads[0].type == "grid"
    assert [child.source for child in payloads[0].items] == ["suggested", "match"]
    assert payloads[0].items[0].suggestion.display_name == "A"
    assert payloads[0].items[0].suggestion.compatibility is None


@pytest.mark.asyncio
async def test_hydrates_posts_with_stats_media_and_actor(session_factory, make):
    author = await make.user(name="Ada", avatar_url="https://cdn.test/ada.png")
    post_id = await make.post(author, content="sunset", media_types=("IMAGE", "VIDEO"))
    await make.commit()

    item = FeedItem(candidate=PostCandidate(id=post_id, actor_id=author, created_at=utcnow(), text="sunset"))
    payloads = await hydrate_feed_items(session_factory, ViewerContext(user_id=None), [item])

    post = payloads[0].post
    assert post.actor.name == "Ada"
    assert post.actor.avatar_url == "https://cdn.test/ada.png"
    assert [m.type for m in post.media] == ["IMAGE", "VIDEO"]
    assert post.media_type == "mixed"
    assert post.stats.like_count == 0


async def _hydrate_suggestion(session_factory, viewer, other, response):
    client = CompatibilityClient(base_url=COMPAT_URL, timeout=1.0)
    await client.start()
    try:
        with respx.mock(base_url=COMPAT_URL) as router:
            route = router.post("/compatibility").mock(return_value=response)
            item = FeedItem(candidate=SuggestionCandidate(user_id=other, display_name="Bo"))
            payloads = await hydrate_feed_items(
                session_factory, ViewerContext(user_id=viewer), [item], client
            )
            assert route.called
    finally:
        await client.stop()
    return payloads


@pytest.mark.asyncio
async def test_compatibility_summaries_attach_to_suggestions(session_factory, make):
    viewer = await make.user()
    other = await make.user()
    await make.commit()

    payloads = await _hydrate_suggestion(
        session_factory,
        viewer,
        other,
        httpx.Response(200, json={"results": [{"userId": other, "score": 0.82, "status": "READY"}]}),
    )

    compatibility = payloads[0].suggestion.compatibility
    assert compatibility.status == "READY"
    assert compatibility.score == pytest.approx(0.82)


@pytest.mark.asyncio
async def test_compatibility_outage_degrades_to_insufficient_data(session_factory, make):
    viewer = await make.user()
    other = await make.user(name="Bo")
    await make.commit()

    payloads = await _hydrate_suggestion(session_factory, viewer, other, httpx.Response(503))

    assert payloads[0].suggestion.display_name == "Bo"
    assert payloads[0].suggestion.compatibility.status == "INSUFFICIENT_DATA"


@pytest.mark.asyncio
async def test_failed_fetch_serves_item_without_enrichment(session_factory, make, monkeypatch):
    author = await make.user(name="Ada")
    post_id = await make.post(author)
    await make.commit()

    async def broken(db, ids):
        raise RuntimeError("replica lag")

    monkeypatch.setattr("feedpresort.feed.hydration.fetch_post_stats", broken)
    item = FeedItem(candidate=PostCandidate(id=post_id, actor_id=author, created_at=utcnow()))

    payloads = await hydrate_feed_items(session_factory, ViewerContext(user_id=None), [item])

    assert payloads[0].post.stats.like_count == 0
    assert payloads[0].post.actor.name == "Ada"


@pytest.mark.asyncio
async def test_materialize_drops_vanished_rows(db, make):
    author = await make.user(name="Ada")
    live_post = await make.post(author, content="still here")
    gone_post = await make.post(author)
    hidden = await make.user(visible=False)
    question_ids = await make.quiz(["Cats?"])
    await make.commit()
    post = await db.get(Post, gone_post)
    post.deleted_at = utcnow()
    await db.commit()

    def leaf(item_type, item_id, source="post"):
        return PresortedLeafItem(
            type=item_type, id=item_id, actor_id=author, source=source, created_at=0,
            score=0.4,
        )

    items = [
        leaf("post", live_post),
        leaf("post", gone_post),
        PresortedGridItem(
            id="grid", actor_id=hidden,
            items=[leaf("suggestion", hidden, "suggested")],
        ),
        leaf("question", question_ids[0], "question"),
    ]

    rebuilt = await materialize_presorted_items(db, items)

    assert [item.key for item in rebuilt] == [f"post:{live_post}", f"question:{question_ids[0]}"]
    assert rebuilt[0].candidate.text == "still here"
    assert rebuilt[0].candidate.actor_name == "Ada"
    assert rebuilt[0].score == pytest.approx(0.4)
    questions = await fetch_question_candidates(db, ViewerContext(user_id=author))
    assert rebuilt[1].candidate.options == questions[0].options


@pytest.mark.asyncio
async def test_materialize_keeps_grid_only_at_minimum_size(db, make):
    shown = [await make.user(name=f"Shown {i}") for i in range(2)]
    hidden = await make.user(visible=False)
    await make.commit()

    def suggestion(user_id):
        return PresortedLeafItem(
            type="suggestion", id=user_id, actor_id=user_id, source="suggested", created_at=0
        )

    items = [
        PresortedGridItem(
            id="grid-full", actor_id=shown[0], min_size=2,
            items=[suggestion(user_id) for user_id in shown],
        ),
        PresortedGridItem(
            id="grid-short", actor_id=shown[0], min_size=2,
            items=[suggestion(shown[1]), suggestion(hidden)],
        ),
    ]

    rebuilt = await materialize_presorted_items(db, items)

    assert len(rebuilt) == 1
    assert isinstance(rebuilt[0], GridItem)
    assert rebuilt[0].min_size == 2
    assert [child.actor_id for child in rebuilt[0].items] == shown
