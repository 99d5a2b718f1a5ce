import json
from datetime import datetime, timedelta

import pytest

from feedpresort.exceptions import SegmentDecodeError
from feedpresort.feed.config import DEFAULT_FEED_CONFIG
from feedpresort.feed.presorted import (
    PHASE1_MAX_BYTES,
    SEGMENT_SCHEMA_VERSION,
    PresortedGridItem,
    PresortedLeafItem,
    apply_seen_penalty,
    convert_feed_items,
    decode_segment_items,
    encode_segment_items,
    epoch_ms,
    generate_phase1_json,
    parse_phase1_json,
    truncate_preview,
)
from feedpresort.feed.types import (
    FeedItem,
    GridItem,
    PostCandidate,
    Presentation,
    QuestionCandidate,
    SuggestionCandidate,
)

NOW = datetime(2024, 5, 1, 12, 0, 0)
NOW_MS = epoch_ms(NOW)


def leaf(item_id, item_type="post", score=0.5, text=None):
    return PresortedLeafItem(
        type=item_type,
        id=item_id,
        score=score,
        actor_id=f"actor-{item_id}",
        source="post" if item_type == "post" else "suggested",
        created_at=NOW_MS,
        actor_name="Ada",
        text_preview=text,
    )


def test_truncate_preview():
    assert truncate_preview(None) is None
    assert truncate_preview("short") == "short"
    assert truncate_preview("x" * 200) == "x" * 150 + "..."


def test_convert_feed_items_denormalises_actors():
    post = FeedItem(
        candidate=PostCandidate(
            id="p1", actor_id="u1", created_at=NOW, text="hello", media_type="image", score=0.7
        ),
        presentation=Presentation("highlight"),
    )
    grid = GridItem(
        items=[
            FeedItem(candidate=SuggestionCandidate(user_id="u2", bio="likes hiking", score=0.4)),
            FeedItem(candidate=SuggestionCandidate(user_id="u3", source="match", score=0.9)),
        ],
        min_size=2,
    )
    question = FeedItem(candidate=QuestionCandidate(id="q1", quiz_id="z", prompt="Cats?"))

    converted, skipped = convert_feed_items(
        [post, grid, question, GridItem(items=[])],
        {"u1": ("Ada", "https://cdn.test/ada.png"), "u2": ("Bo", None)},
        NOW_MS,
    )

    assert skipped == 1
    first, second, third = converted
    assert second.min_size == 2
    assert first.actor_name == "Ada"
    assert first.actor_avatar_url == "https://cdn.test/ada.png"
    assert first.media_type == "image"
    assert first.presentation.mode == "highlight"
    assert first.created_at == NOW_MS
    assert isinstance(second, PresortedGridItem)
    assert second.id == "grid-suggestion-u2"
    assert second.score == pytest.approx(0.9)
    assert [child.source for child in second.items] == ["suggested", "match"]
    assert second.items[0].text_preview == "likes hiking"
    assert third.actor_id == "q1"
    assert third.text_preview == "Cats?"


def test_segment_envelope_round_trips_grids():
    items = [leaf("p1"), PresortedGridItem(id="grid-post-p2", actor_id="a", min_size=2, items=[leaf("p2"), leaf("p3")])]

    encoded = encode_segment_items(items)
    decoded = decode_segment_items(json.dumps(encoded))

    assert encoded["schemaVersion"] == SEGMENT_SCHEMA_VERSION
    assert encoded["items"][0]["actorId"] == "actor-p1"
    assert encoded["items"][1]["minSize"] == 2
    assert decoded == items


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        [1, 2],
        {"schemaVersion": 99, "items": []},
        {"schemaVersion": 1, "items": []},
        {"schemaVersion": SEGMENT_SCHEMA_VERSION, "items": [{"type": "post"}]},
    ],
)
def test_decode_rejects_drifted_payloads(raw):
    with pytest.raises(SegmentDecodeError):
        decode_segment_items(raw)


def test_phase1_payload_holds_two_leaves_and_next_cursor():
    items = [leaf("p1", text="hi"), leaf("u1", "suggestion"), leaf("p2")]

    raw = generate_phase1_json(items)
    data = json.loads(raw)

    assert [entry["kind"] for entry in data["items"]] == ["post", "profile"]
    assert data["nextCursor"] == "p2"
    parsed = parse_phase1_json(raw)
    assert parsed[0].actor.name == "Ada"
    assert parsed[0].text_preview == "hi"


def test_oversized_phase1_payload_is_emptied():
    huge = leaf("p1")
    huge = huge.model_copy(update={"actor_name": "n" * (PHASE1_MAX_BYTES + 10)})

    data = json.loads(generate_phase1_json([huge]))

    assert data == {"items": [], "nextCursor": None}


def test_parse_phase1_rejects_non_objects():
    with pytest.raises(ValueError):
        parse_phase1_json("[]")


def test_seen_items_move_behind_unseen_ones():
    items = [leaf("p1", score=0.9), leaf("p2", score=0.8), leaf("u1", "suggestion", score=0.7), leaf("p3", score=0.1)]

    reordered = apply_seen_penalty(
        items,
        post_seen={"p1": NOW - timedelta(hours=1), "p3": NOW - timedelta(hours=30)},
        suggestion_seen={"u1": NOW - timedelta(hours=2)},
        config=DEFAULT_FEED_CONFIG,
        now=NOW,
    )

    assert [item.id for item in reordered] == ["p2", "p3", "p1", "u1"]
    assert reordered[2].score == pytest.approx(0.7)
    assert reordered[3].score == pytest.approx(0.5)
