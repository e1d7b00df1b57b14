from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mabel.database import get_db
from mabel.models import Module, ModuleQuestion, Project
from mabel.schemas import AnswerUpdate, ModuleCreate, RecordingStart, module_dto, module_summary, question_dto
from mabel.services import lifecycle
from mabel.utils import (
    envelope,
    get_owned_module,
    get_owned_project,
    get_owned_question,
    require_authenticated_user,
)

router = APIRouter(prefix="/api/projects/{project_id}/modules", tags=["modules"])
logger = logging.getLogger(__name__)


async def module_payload(db: AsyncSession, module_id: int) -> dict:
    """Fresh module detail: every question, the readable chapter and the newest attempt."""
    module = await lifecycle.reload_module(db, module_id)
    questions = await lifecycle.load_questions(db, module_id)
    chapter = await lifecycle.latest_chapter(db, module_id, with_content=True)
    attempt = await lifecycle.latest_chapter(db, module_id)
    return module_dto(module, questions, chapter, attempt).dump()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_module(
    payload: Optional[ModuleCreate] = None,
    project: Project = Depends(get_owned_project),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or ModuleCreate()
    module, job, result = await lifecycle.create_module(db, project, user, theme=payload.theme, title=payload.title)
    if result.ran_inline:
        await lifecycle.raise_for_failed_job(db, job.id, "Failed to generate questions")
    return envelope(await module_payload(db, module.id), jobId=job.id)


@router.get("")
async def list_modules(
    project: Project = Depends(get_owned_project),
    db: AsyncSession = Depends(get_db),
):
    rows = (await db.execute(
        select(Module).where(Module.project_id == project.id).order_by(Module.module_number.asc())
    )).scalars().all()
    return envelope([module_summary(m).dump() for m in rows])


@router.get("/{module_id}")
async def get_module(
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    return envelope(await module_payload(db, module.id))


@router.delete("/{module_id}")
async def delete_module(
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    await lifecycle.delete_module(db, project, module)
    return envelope({"id": module.id}, message="Module deleted successfully")


@router.post("/{module_id}/questions/generate")
async def retry_questions(
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    job, result = await lifecycle.retry_question_generation(db, project, module, user)
    if result.ran_inline:
        await lifecycle.raise_for_failed_job(db, job.id, "Failed to generate questions")
    return envelope(await module_payload(db, module.id), jobId=job.id)


@router.post("/{module_id}/approve")
async def approve_module(
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
):
    outcome = await lifecycle.approve_module(db, project, module)
    return envelope(
        await module_payload(db, module.id),
        message=outcome["message"],
        suggestBookCompilation=outcome["suggest_book_compilation"],
        approvedCount=outcome["approved_count"],
        nextModule=module_summary(outcome["next_module"]).dump() if outcome["next_module"] else None,
        nextModuleNumber=outcome["next_module_number"],
    )


# ---------- questions ----------

@router.patch("/{module_id}/questions/{question_id}")
async def answer_question(
    payload: AnswerUpdate,
    module: Module = Depends(get_owned_module),
    question: ModuleQuestion = Depends(get_owned_question),
    db: AsyncSession = Depends(get_db),
):
    question = await lifecycle.answer_question(db, module, question, payload.response)
    return envelope(question_dto(question).dump())


@router.post("/{module_id}/questions/{question_id}/recording")
async def start_recording(
    payload: Optional[RecordingStart] = None,
    question: ModuleQuestion = Depends(get_owned_question),
    db: AsyncSession = Depends(get_db),
):
    payload = payload or RecordingStart()
    question = await lifecycle.start_recording(db, question, payload.audio_format)
    return envelope(question_dto(question).dump())


@router.post("/{module_id}/questions/{question_id}/audio", status_code=status.HTTP_202_ACCEPTED)
async def upload_answer_audio(
    audio: UploadFile = File(...),
    duration: Optional[float] = Form(None),
    project: Project = Depends(get_owned_project),
    module: Module = Depends(get_owned_module),
    question: ModuleQuestion = Depends(get_owned_question),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    data = await audio.read()
    job, result = await lifecycle.attach_audio(
        db, project, module, question, user, data=data, filename=audio.filename, duration=duration
    )
    if result.ran_inline:
        await lifecycle.raise_for_failed_job(db, job.id, "Failed to transcribe audio")
    question = (await db.execute(
        select(ModuleQuestion)
        .where(ModuleQuestion.id == question.id)
        .execution_options(populate_existing=True)
    )).scalars().one()
    return envelope(question_dto(question).dump(), jobId=job.id)
