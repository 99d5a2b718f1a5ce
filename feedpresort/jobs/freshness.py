"""
Job freshness records.

A job computes a hash over the inputs that determine its output and stores
it per (job_name, scope). When the next run sees the same hash the work is
skipped. JOB_FULL / JOB_FORCE disable the short-circuit.

The check-then-act is not atomic; the worst case is duplicate work.
"""
import hashlib
import json
import logging
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feedpresort.config import settings
from feedpresort.database import utcnow
from feedpresort.models import JobFreshness

logger = logging.getLogger(__name__)


def _normalise(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def hash_key_values(entries: list[tuple[str, Any]]) -> str:
    """sha256 over the ordered [key, value] pairs; None values are kept."""
    payload = json.dumps(
        [[key, _normalise(value)] for key, value in entries],
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def force_full_run() -> bool:
    return settings.job_full or settings.job_force


async def is_job_fresh(db: AsyncSession, job_name: str, scope: str, input_hash: str) -> bool:
    if force_full_run():
        return False
    result = await db.execute(
        select(JobFreshness.input_hash).where(
            JobFreshness.job_name == job_name, JobFreshness.scope == scope
        )
    )
    stored = result.scalar_one_or_none()
    return stored is not None and stored == input_hash


async def upsert_job_freshness(
    db: AsyncSession,
    job_name: str,
    scope: str,
    input_hash: str,
    now: Optional[datetime] = None,
) -> None:
    now = now or utcnow()
    record = await db.get(JobFreshness, (job_name, scope))
    if record is None:
        db.add(JobFreshness(job_name=job_name, scope=scope, input_hash=input_hash, computed_at=now))
    else:
        record.input_hash = input_hash
        record.computed_at = now
    await db.flush()
