"""
Feed seen-state: which posts / suggestions a viewer was shown, and when.

Seen rows only ever demote an item; they never remove it from the feed.
"""
import logging
from datetime import datetime
from typing import Literal, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feedpresort.database import utcnow
from feedpresort.models import FeedSeen

logger = logging.getLogger(__name__)

SeenItemType = Literal["POST", "SUGGESTION"]


async def fetch_seen(
    db: AsyncSession,
    viewer_user_id: str,
    item_type: SeenItemType,
    item_ids: list[str],
) -> dict[str, datetime]:
    """Map of item id → last seen time for the given items."""
    if not item_ids:
        return {}
    rows = await db.execute(
        select(FeedSeen.item_id, FeedSeen.seen_at).where(
            FeedSeen.viewer_user_id == viewer_user_id,
            FeedSeen.item_type == item_type,
            FeedSeen.item_id.in_(set(item_ids)),
        )
    )
    return {item_id: seen_at for item_id, seen_at in rows.all()}


async def record_seen(
    db: AsyncSession,
    viewer_user_id: str,
    items: list[tuple[SeenItemType, str]],
    seen_at: Optional[datetime] = None,
) -> int:
    """Upsert seen rows; re-showing an item refreshes its timestamp."""
    if not items:
        return 0
    seen_at = seen_at or utcnow()
    unique = list(dict.fromkeys(items))

    by_type: dict[str, list[str]] = {}
    for item_type, item_id in unique:
        by_type.setdefault(item_type, []).append(item_id)

    existing: dict[tuple[str, str], FeedSeen] = {}
    for item_type, ids in by_type.items():
        rows = await db.execute(
            select(FeedSeen).where(
                FeedSeen.viewer_user_id == viewer_user_id,
                FeedSeen.item_type == item_type,
                FeedSeen.item_id.in_(ids),
            )
        )
        for row in rows.scalars():
            existing[(row.item_type, row.item_id)] = row

    for item_type, item_id in unique:
        row = existing.get((item_type, item_id))
        if row is not None:
            row.seen_at = seen_at
        else:
            db.add(
                FeedSeen(
                    viewer_user_id=viewer_user_id,
                    item_type=item_type,
                    item_id=item_id,
                    seen_at=seen_at,
                )
            )
    await db.flush()
    logger.debug("Recorded %d seen items for viewer %s", len(unique), viewer_user_id)
    return len(unique)
