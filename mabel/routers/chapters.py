from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from mabel.database import get_db
from mabel.models import Module, Project
from mabel.routers.modules import module_payload
from mabel.schemas import (
    ChapterEdit,
    ChapterGenerateRequest,
    ChapterRegenerateRequest,
    ImageGenerateRequest,
    ImageUpload,
    chapter_dto,
)
from mabel.services import lifecycle
from mabel.services.export import export_chapter
from mabel.services.illustration import build_illustration_prompt
from mabel.utils import envelope, get_owned_module, get_owned_project, require_authenticated_user

router = APIRouter(prefix="/api/projects/{project_id}/modules/{module_id}/chapter", tags=["chapters"])
logger = logging.getLogger(__name__)


@router.get("")
async def get_chapter(
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    chapter = await lifecycle.current_chapter_or_404(db, module.id)
    return envelope(chapter_dto(chapter).dump())


@router.patch("")
async def edit_chapter(
    payload: ChapterEdit,
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    chapter = await lifecycle.edit_chapter(db, module, payload.content)
    return envelope(chapter_dto(chapter).dump())


@router.post("/generate", status_code=status.HTTP_202_ACCEPTED)
async def generate_chapter(
    payload: Optional[ChapterGenerateRequest] = None,
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or ChapterGenerateRequest()
    chapter, job, result = await lifecycle.request_chapter_generation(db, project, module, user, payload.narrative())
    if result.ran_inline:
        await lifecycle.raise_for_failed_job(db, job.id, "Failed to generate chapter")
    return envelope(await module_payload(db, module.id), jobId=job.id, version=chapter.version)


@router.post("/regenerate", status_code=status.HTTP_202_ACCEPTED)
async def regenerate_chapter(
    payload: Optional[ChapterRegenerateRequest] = None,
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or ChapterRegenerateRequest()
    chapter, job, result = await lifecycle.request_chapter_generation(
        db, project, module, user, payload.narrative(), regenerate=True, feedback=payload.feedback
    )
    if result.ran_inline:
        await lifecycle.raise_for_failed_job(db, job.id, "Failed to regenerate chapter")
    return envelope(await module_payload(db, module.id), jobId=job.id, version=chapter.version)


# ---------- illustration ----------

@router.post("/image/generate", status_code=status.HTTP_202_ACCEPTED)
async def generate_image(
    payload: Optional[ImageGenerateRequest] = None,
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    current = await lifecycle.current_chapter_or_404(db, module.id)
    prompt = (payload.prompt if payload else None) or build_illustration_prompt(current.content, module.title)
    chapter, job, result = await lifecycle.request_illustration(db, project, module, user, prompt)
    if result.ran_inline:
        await lifecycle.raise_for_failed_job(db, job.id, "Failed to generate image")
    chapter = await lifecycle.current_chapter_or_404(db, module.id)
    return envelope(chapter_dto(chapter).dump(), jobId=job.id)


@router.post("/image/upload")
async def upload_image(
    payload: ImageUpload,
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    chapter = await lifecycle.upload_illustration(db, module, payload.image_data, payload.mime_type)
    return envelope(chapter_dto(chapter).dump(), message="Image uploaded successfully")


@router.delete("/image")
async def delete_image(
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    chapter = await lifecycle.clear_illustration(db, module)
    return envelope(chapter_dto(chapter).dump(), message="Image removed")


@router.get("/export")
async def export_chapter_pdf(
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    return await export_chapter(db, project, module)
