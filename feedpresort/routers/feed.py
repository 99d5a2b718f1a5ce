"""
Feed retrieval endpoint — GET /feed

Query parameters are parsed leniently: anything malformed falls back to its
default instead of failing the request.

  user_id    viewer (optional; anonymous feeds get no segment, no seen-state)
  take       page size, default 20, clamped to 1..50
  cursorId   post id to continue after; unknown ids are ignored
  lite       first-paint shape, two items
  debug      attach ranking diagnostics
  seed       deterministic suggestion tie-breaks
  markSeen   record served items, default on for authenticated viewers
"""
import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedpresort.clients.compatibility_client import CompatibilityClient, compatibility_client
from feedpresort.config import settings
from feedpresort.database import get_db, get_session_factory
from feedpresort.feed.config import FeedConfig, load_feed_config
from feedpresort.feed.service import FeedService
from feedpresort.feed.types import ViewerContext
from feedpresort.jobs.dispatch import PresortDispatcher

logger = logging.getLogger(__name__)
router = APIRouter()

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@lru_cache
def get_feed_config() -> FeedConfig:
    return load_feed_config(settings.feed_config_json)


@lru_cache
def get_dispatcher() -> PresortDispatcher:
    return PresortDispatcher()


def get_compatibility_client() -> CompatibilityClient:
    return compatibility_client


def parse_bool(raw: Optional[str], default: bool) -> bool:
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def parse_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


def parse_take(raw: Optional[str]) -> int:
    take = parse_int(raw)
    if take is None or take <= 0:
        return settings.feed_page_size
    return min(take, settings.feed_max_take)


def build_viewer_context(
    user_id: Optional[str],
    take: Optional[str],
    cursor_id: Optional[str],
    lite: Optional[str],
    debug: Optional[str],
    seed: Optional[str],
    mark_seen: Optional[str],
) -> ViewerContext:
    viewer = (user_id or "").strip() or None
    return ViewerContext(
        user_id=viewer,
        take=parse_take(take),
        cursor_id=(cursor_id or "").strip() or None,
        lite=parse_bool(lite, False),
        debug=parse_bool(debug, False),
        seed=parse_int(seed),
        mark_seen=viewer is not None and parse_bool(mark_seen, True),
    )


@router.get("")
async def get_feed(
    user_id: Optional[str] = Query(None),
    take: Optional[str] = Query(None),
    cursor_id: Optional[str] = Query(None, alias="cursorId"),
    lite: Optional[str] = Query(None),
    debug: Optional[str] = Query(None),
    seed: Optional[str] = Query(None),
    mark_seen: Optional[str] = Query(None, alias="markSeen"),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    dispatcher: PresortDispatcher = Depends(get_dispatcher),
    compatibility: CompatibilityClient = Depends(get_compatibility_client),
    config: FeedConfig = Depends(get_feed_config),
):
    ctx = build_viewer_context(user_id, take, cursor_id, lite, debug, seed, mark_seen)
    service = FeedService(
        db,
        session_factory,
        config,
        dispatcher=dispatcher,
        compatibility=compatibility,
    )
    response = await service.get_feed(ctx)
    body = response.model_dump(mode="json", by_alias=True)
    if body.get("debug", False) is None:
        body.pop("debug")
    return JSONResponse(content=body)
