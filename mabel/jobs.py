# mabel/jobs.py
"""Job tracker: one row per long-running operation.

Transitions are single conditional UPDATEs and commit immediately so a
polling client sees every checkpoint. ``mark_running`` doubles as the
worker's claim on the job.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mabel.models import Job, JobStatus, JobType

logger = logging.getLogger(__name__)

JOB_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}
TERMINAL = {JobStatus.COMPLETED, JobStatus.FAILED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def sources_for(target: JobStatus) -> Set[JobStatus]:
    return {s for s, nxt in JOB_TRANSITIONS.items() if target in nxt}


async def create_job(
    db: AsyncSession, *, project_id: int, user_id: int, job_type: JobType, input: Optional[dict] = None
) -> Job:
    """Add a PENDING job to the caller's transaction (flushed, not committed)."""
    job = Job(
        project_id=project_id,
        user_id=user_id,
        type=job_type,
        status=JobStatus.PENDING,
        progress=0,
        input=input or {},
    )
    db.add(job)
    await db.flush()
    return job


async def _move(db: AsyncSession, job_id: int, target: JobStatus, **values: Any) -> bool:
    res = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status.in_(sources_for(target)))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    moved = res.rowcount == 1
    if moved:
        logger.info("job %s -> %s", job_id, target.value)
    else:
        logger.warning("job %s could not move to %s", job_id, target.value)
    return moved


async def mark_running(db: AsyncSession, job_id: int) -> bool:
    """Claim a PENDING job. False means another worker already has it."""
    return await _move(db, job_id, JobStatus.RUNNING, started_at=_now())


async def update_progress(db: AsyncSession, job_id: int, percent: int) -> bool:
    percent = max(0, min(100, int(percent)))
    res = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING)
        .values(progress=percent)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return res.rowcount == 1


async def complete(db: AsyncSession, job_id: int, output: Optional[dict] = None) -> bool:
    return await _move(db, job_id, JobStatus.COMPLETED, progress=100, output=output or {}, completed_at=_now())


async def fail(db: AsyncSession, job_id: int, error: str) -> bool:
    return await _move(db, job_id, JobStatus.FAILED, error=(error or "Unknown error")[:4000], completed_at=_now())


async def get_job(db: AsyncSession, job_id: int, *, user_id: Optional[int] = None) -> Optional[Job]:
    stmt = select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
    if user_id is not None:
        stmt = stmt.where(Job.user_id == user_id)
    return (await db.execute(stmt)).scalars().first()


__all__ = [
    "JOB_TRANSITIONS", "TERMINAL", "create_job", "mark_running", "update_progress", "complete", "fail", "get_job",
]
