"""
Job execution wrapper.

Every job run is recorded in `job_runs`: a RUNNING row is written before
the handler starts and finalised as SUCCESS or FAILED with duration, error
text and handler metadata. Handler exceptions are re-raised after the row
is finalised.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from feedpresort.database import utcnow
from feedpresort.models import JobRun
from feedpresort.telemetry import JOB_RUNS_TOTAL

logger = logging.getLogger(__name__)

ERROR_TEXT_LIMIT = 2000


@dataclass
class JobSpec:
    job_name: str
    trigger: str = "MANUAL"  # EVENT | CRON | MANUAL
    scope: Optional[str] = None
    algorithm_version: Optional[str] = None
    metadata: dict = field(default_factory=dict)


async def run_job(
    session_factory: async_sessionmaker,
    spec: JobSpec,
    handler: Callable[[], Awaitable[Any]],
) -> Any:
    started_at = utcnow()
    t0 = time.perf_counter()

    async with session_factory() as db:
        run = JobRun(
            job_name=spec.job_name,
            trigger=spec.trigger,
            scope=spec.scope,
            algorithm_version=spec.algorithm_version,
            status="RUNNING",
            started_at=started_at,
            run_metadata=dict(spec.metadata) or None,
        )
        db.add(run)
        await db.commit()
        run_id = run.id

    logger.info("Job %s started (run=%s, scope=%s)", spec.job_name, run_id, spec.scope)
    status = "SUCCESS"
    error: Optional[str] = None
    result: Any = None
    try:
        result = await handler()
        return result
    except Exception as exc:
        status = "FAILED"
        error = f"{type(exc).__name__}: {exc}"[:ERROR_TEXT_LIMIT]
        logger.error("Job %s failed (run=%s): %s", spec.job_name, run_id, exc)
        raise
    finally:
        duration_ms = int((time.perf_counter() - t0) * 1000)
        metadata = dict(spec.metadata)
        if result is not None and hasattr(result, "to_metadata"):
            metadata.update(result.to_metadata())
        async with session_factory() as db:
            run = await db.get(JobRun, run_id)
            run.status = status
            run.finished_at = utcnow()
            run.duration_ms = duration_ms
            run.error = error
            run.run_metadata = metadata or None
            await db.commit()
        JOB_RUNS_TOTAL.labels(job_name=spec.job_name, status=status).inc()
        logger.info(
            "Job %s finished: %s in %dms (run=%s)", spec.job_name, status, duration_ms, run_id
        )
