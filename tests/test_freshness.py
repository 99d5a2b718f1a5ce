from datetime import datetime

import pytest

from feedpresort.config import settings
from feedpresort.jobs.freshness import hash_key_values, is_job_fresh, upsert_job_freshness


def test_hash_is_stable_and_order_sensitive():
    at = datetime(2024, 5, 1, 12, 0)
    entries = [("version", "v9"), ("scored_at", at), ("likes_at", None)]

    assert hash_key_values(entries) == hash_key_values(list(entries))
    assert hash_key_values(entries) != hash_key_values(list(reversed(entries)))
    assert hash_key_values(entries) != hash_key_values([("version", "v10")] + entries[1:])
    assert len(hash_key_values(entries)) == 64


@pytest.mark.asyncio
async def test_job_is_fresh_only_for_matching_hash(db):
    assert not await is_job_fresh(db, "feed-presort", "user:u1", "abc")

    await upsert_job_freshness(db, "feed-presort", "user:u1", "abc")
    assert await is_job_fresh(db, "feed-presort", "user:u1", "abc")
    assert not await is_job_fresh(db, "feed-presort", "user:u1", "def")

    await upsert_job_freshness(db, "feed-presort", "user:u1", "def")
    assert await is_job_fresh(db, "feed-presort", "user:u1", "def")


@pytest.mark.asyncio
async def test_force_flags_disable_freshness(db, monkeypatch):
    await upsert_job_freshness(db, "feed-presort", "batch", "abc")
    monkeypatch.setattr(settings, "job_force", True)

    assert not await is_job_fresh(db, "feed-presort", "batch", "abc")
