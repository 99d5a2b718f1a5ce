import math
from datetime import datetime, timedelta

import pytest

from feedpresort.database import utcnow
from feedpresort.feed.config import DEFAULT_FEED_CONFIG, FeedConfig, ScoringWeights
from feedpresort.feed.scoring import (
    Scorer,
    classify_media,
    clamp_score,
    fetch_post_media_types,
    recency_score,
    score_candidates,
)
from feedpresort.feed.seen import record_seen
from feedpresort.feed.types import (
    CandidateSet,
    PostCandidate,
    SuggestionCandidate,
    ViewerContext,
)

NOW = datetime(2024, 5, 1, 12, 0, 0)


def test_clamp_score_handles_non_finite_values():
    assert clamp_score(float("nan")) == 0.0
    assert clamp_score(float("inf")) == 0.0
    assert clamp_score(1.7) == 1.0
    assert clamp_score(-0.2) == 0.0


def test_recency_decays_with_age():
    fresh = recency_score(NOW, NOW)
    day_old = recency_score(NOW - timedelta(hours=24), NOW)
    assert fresh == 1.0
    assert day_old == pytest.approx(1 / math.log(26))
    assert recency_score(NOW + timedelta(hours=2), NOW) == 1.0


def test_classify_media():
    assert classify_media(set()) == "text"
    assert classify_media({"IMAGE"}) == "image"
    assert classify_media({"EMBED"}) == "video"
    assert classify_media({"VIDEO", "IMAGE"}) == "mixed"


def test_seen_penalty_only_applies_inside_window():
    scorer = Scorer(DEFAULT_FEED_CONFIG)
    candidates = CandidateSet(
        posts=[
            PostCandidate(id="old-seen", actor_id="a", created_at=NOW),
            PostCandidate(id="recent-seen", actor_id="b", created_at=NOW),
        ]
    )

    scored, stats = scorer.score(
        candidates,
        now=NOW,
        post_seen={
            "old-seen": NOW - timedelta(hours=25),
            "recent-seen": NOW - timedelta(hours=1),
        },
    )

    by_id = {p.id: p.score for p in scored.posts}
    assert by_id["old-seen"] == pytest.approx(0.6)
    assert by_id["recent-seen"] == pytest.approx(0.6 - 0.2)
    assert stats.demoted_posts == 1
    assert [p.id for p in scored.posts] == ["old-seen", "recent-seen"]


def test_presort_scoring_ignores_seen_state():
    scorer = Scorer(DEFAULT_FEED_CONFIG)
    candidates = CandidateSet(posts=[PostCandidate(id="p", actor_id="a", created_at=NOW)])

    scored, stats = scorer.score(
        candidates, now=NOW, post_seen={"p": NOW}, include_seen=False
    )

    assert scored.posts[0].score == pytest.approx(0.6)
    assert stats.demoted_posts == 0


def test_suggestion_affinity_prefers_matches():
    scorer = Scorer(DEFAULT_FEED_CONFIG)
    candidates = CandidateSet(
        suggestions=[
            SuggestionCandidate(user_id="scored", match_score=0.5),
            SuggestionCandidate(user_id="cold"),
            SuggestionCandidate(user_id="match", source="match", match_score=0.1),
        ]
    )

    scored, _ = scorer.score(candidates, now=NOW)

    assert [s.user_id for s in scored.suggestions] == ["match", "scored", "cold"]
    assert scored.suggestions[0].score == pytest.approx(0.3)
    assert scored.suggestions[1].score == pytest.approx(0.15)
    assert scored.suggestions[2].score == 0.0


def test_scoring_is_idempotent_and_does_not_mutate_input():
    scorer = Scorer(FeedConfig(weights=ScoringWeights(recency=0.9, affinity=0.1)))
    original = PostCandidate(id="p", actor_id="a", created_at=NOW - timedelta(hours=3))
    candidates = CandidateSet(posts=[original])

    once, _ = scorer.score(candidates, now=NOW)
    twice, _ = scorer.score(once, now=NOW)

    assert once.posts[0].score == twice.posts[0].score
    assert original.score == 0.0


@pytest.mark.asyncio
async def test_score_candidates_reads_media_and_seen_state(db, make):
    viewer = await make.user()
    author = await make.user()
    video_post = await make.post(author, media_types=("VIDEO",))
    text_post = await make.post(author)
    await make.commit()
    await record_seen(db, viewer, [("POST", text_post)], seen_at=utcnow())
    await db.commit()

    candidates = CandidateSet(
        posts=[
            PostCandidate(id=video_post, actor_id=author, created_at=utcnow()),
            PostCandidate(id=text_post, actor_id=author, created_at=utcnow()),
        ]
    )

    scored, stats = await score_candidates(
        db, ViewerContext(user_id=viewer), candidates, DEFAULT_FEED_CONFIG
    )

    by_id = {p.id: p for p in scored.posts}
    assert by_id[video_post].media_type == "video"
    assert by_id[text_post].media_type == "text"
    assert by_id[text_post].score < by_id[video_post].score
    assert stats.demoted_posts == 1


@pytest.mark.asyncio
async def test_fetch_post_media_types_empty_input(db):
    assert await fetch_post_media_types(db, []) == {}
