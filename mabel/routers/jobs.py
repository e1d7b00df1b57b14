from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from mabel import jobs
from mabel.database import async_session_maker, get_db
from mabel.errors import NotFoundError
from mabel.schemas import job_dto
from mabel.utils import envelope, require_authenticated_user

router = APIRouter(prefix="/api/jobs", tags=["jobs"])
logger = logging.getLogger(__name__)

EVENT_INTERVAL_SECONDS = 1.0


@router.get("/{job_id}")
async def get_job(
    job_id: int,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    job = await jobs.get_job(db, job_id, user_id=user.id)
    if job is None:
        raise NotFoundError("Job not found")
    return envelope(job_dto(job).dump())


@router.get("/{job_id}/events")
async def job_events(
    job_id: int,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    """Server-sent events: one ``job`` event per change, closing on a terminal status."""
    if await jobs.get_job(db, job_id, user_id=user.id) is None:
        raise NotFoundError("Job not found")
    user_id = user.id

    async def stream():
        last = None
        async with async_session_maker() as session:
            while True:
                job = await jobs.get_job(session, job_id, user_id=user_id)
                if job is None:
                    yield "event: error\ndata: {\"error\": \"Job not found\"}\n\n"
                    return
                body = json.dumps(job_dto(job).dump())
                if body != last:
                    last = body
                    yield f"event: job\ndata: {body}\n\n"
                if job.status in jobs.TERMINAL:
                    return
                # end the read transaction so the next poll sees new commits
                await session.rollback()
                await asyncio.sleep(EVENT_INTERVAL_SECONDS)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
