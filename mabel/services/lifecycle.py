# mabel/services/lifecycle.py
"""Module lifecycle: the transition table and every operation that moves a module.

Status changes are single conditional UPDATEs (``transition``); a request
that loses a race sees zero affected rows and gets an error instead of
silently double-starting work. Work that outlives the request is handed to
the task queue after the triggering transaction commits.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mabel import jobs
from mabel.ai_gateway import count_words
from mabel.errors import (
    ConflictError,
    InvalidTransitionError,
    MabelError,
    NotFoundError,
    PreconditionError,
    classify_provider_error,
)
from mabel.models import (
    Job,
    JobStatus,
    JobType,
    Module,
    ModuleChapter,
    ModuleQuestion,
    ModuleStatus,
    ProcessingStatus,
    Project,
    ProjectStatus,
    User,
)
from mabel.services.dispatch import DispatchResult, queue
from mabel.services.illustration import UPLOAD_PROMPT, decode_upload
from mabel.services.storage import audio_key_for, get_audio_store
from mabel.settings.config import settings

logger = logging.getLogger(__name__)

EVENT_QUESTIONS = "module/questions.generate"
EVENT_CHAPTER = "module/chapter.generate"
EVENT_AUDIO = "interview/audio.transcribe"
EVENT_IMAGE = "chapter/image.generate"

S = ModuleStatus
MODULE_TRANSITIONS: Dict[ModuleStatus, Set[ModuleStatus]] = {
    S.DRAFT: {S.QUESTIONS_GENERATED, S.FAILED},
    S.FAILED: {S.DRAFT},
    S.QUESTIONS_GENERATED: {S.IN_PROGRESS, S.GENERATING_CHAPTER},
    S.IN_PROGRESS: {S.GENERATING_CHAPTER},
    S.GENERATING_CHAPTER: {S.CHAPTER_GENERATED, S.QUESTIONS_GENERATED, S.FAILED},
    S.CHAPTER_GENERATED: {S.GENERATING_CHAPTER, S.APPROVED},
    S.APPROVED: set(),
}

# project statuses that still count as "setting up"
_SETUP_STATUSES = {ProjectStatus.DRAFT, ProjectStatus.RECORDING_INFO}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: ModuleStatus, target: ModuleStatus) -> bool:
    return target in MODULE_TRANSITIONS.get(current, set())


def sources_for(target: ModuleStatus) -> Set[ModuleStatus]:
    return {s for s, nxt in MODULE_TRANSITIONS.items() if target in nxt}


async def transition(
    db: AsyncSession,
    module_id: int,
    target: ModuleStatus,
    *,
    expected: Optional[Iterable[ModuleStatus]] = None,
    **values,
) -> None:
    """Move a module to ``target`` iff its current status allows it.

    Runs in the caller's transaction; the caller commits.
    """
    allowed = sources_for(target)
    if expected is not None:
        allowed &= set(expected)
    res = await db.execute(
        update(Module)
        .where(Module.id == module_id, Module.status.in_(allowed))
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        current = await db.scalar(select(Module.status).where(Module.id == module_id))
        raise InvalidTransitionError("module", current.value if current else None, target.value)


async def try_transition(db: AsyncSession, module_id: int, target: ModuleStatus, **kwargs) -> bool:
    try:
        await transition(db, module_id, target, **kwargs)
        return True
    except InvalidTransitionError:
        return False


# ---------- read helpers ----------

def required_answers(total: int) -> int:
    return math.ceil(total * settings.CHAPTER_MIN_ANSWERED_RATIO)


async def question_counts(db: AsyncSession, module_id: int) -> Tuple[int, int]:
    """(total, answered); a question counts as answered once it has a response."""
    total, answered = (await db.execute(
        select(func.count(ModuleQuestion.id), func.count(ModuleQuestion.response))
        .where(ModuleQuestion.module_id == module_id)
    )).one()
    return int(total or 0), int(answered or 0)


async def latest_chapter(db: AsyncSession, module_id: int, *, with_content: bool = False) -> Optional[ModuleChapter]:
    stmt = select(ModuleChapter).where(ModuleChapter.module_id == module_id)
    if with_content:
        stmt = stmt.where(ModuleChapter.content != "")
    stmt = stmt.order_by(ModuleChapter.version.desc()).limit(1)
    return (await db.execute(stmt.execution_options(populate_existing=True))).scalars().first()


async def next_chapter_version(db: AsyncSession, module_id: int) -> int:
    latest = await db.scalar(select(func.max(ModuleChapter.version)).where(ModuleChapter.module_id == module_id))
    return int(latest or 0) + 1


async def load_questions(db: AsyncSession, module_id: int) -> List[ModuleQuestion]:
    return list((await db.execute(
        select(ModuleQuestion)
        .where(ModuleQuestion.module_id == module_id)
        .order_by(ModuleQuestion.order.asc(), ModuleQuestion.id.asc())
        .execution_options(populate_existing=True)
    )).scalars().all())


async def reload_module(db: AsyncSession, module_id: int) -> Module:
    module = (await db.execute(
        select(Module).where(Module.id == module_id).execution_options(populate_existing=True)
    )).scalars().first()
    if module is None:
        raise NotFoundError("Module not found")
    return module


async def prior_answers(db: AsyncSession, project_id: int, before_number: int) -> List[dict]:
    """Answered Q/A pairs from approved modules that precede ``before_number``."""
    rows = await db.execute(
        select(ModuleQuestion, Module.module_number)
        .join(Module, Module.id == ModuleQuestion.module_id)
        .where(
            Module.project_id == project_id,
            Module.status == ModuleStatus.APPROVED,
            Module.module_number < before_number,
            ModuleQuestion.response.is_not(None),
        )
        .order_by(Module.module_number.asc(), ModuleQuestion.order.asc())
    )
    return [
        {"question": q.question, "response": q.response, "category": q.category, "module_number": n}
        for q, n in rows.all()
    ]


async def raise_for_failed_job(db: AsyncSession, job_id: int, fallback: str) -> None:
    """After inline execution, turn a FAILED job into the matching HTTP error."""
    job = await jobs.get_job(db, job_id)
    if job is not None and job.status == JobStatus.FAILED:
        c = classify_provider_error(job.error or "", fallback)
        raise MabelError(c.message, status_code=c.status_code, error_type=c.error_type)


# ---------- module creation / questions ----------

async def _questions_payload(db: AsyncSession, project: Project, module: Module, job: Job) -> dict:
    previous = await prior_answers(db, project.id, module.module_number) if module.module_number > 1 else []
    return {
        "job_id": job.id,
        "project_id": project.id,
        "module_id": module.id,
        "module_number": module.module_number,
        "count": settings.MODULE_QUESTION_COUNT,
        "interviewee": project.interviewee.as_context(),
        "previous": previous,
    }


async def create_module(
    db: AsyncSession, project: Project, user: User, *, theme: Optional[str] = None, title: Optional[str] = None
) -> Tuple[Module, Job, DispatchResult]:
    if project.interviewee is None:
        raise PreconditionError("Please complete interviewee setup first")

    number = int(await db.scalar(
        select(func.max(Module.module_number)).where(Module.project_id == project.id)
    ) or 0) + 1
    theme = (theme or "").strip() or None
    module = Module(
        project_id=project.id,
        module_number=number,
        title=(title or "").strip() or theme or f"Module {number}",
        theme=theme,
        status=ModuleStatus.DRAFT,
    )
    db.add(module)
    await db.flush()

    job = await jobs.create_job(
        db, project_id=project.id, user_id=user.id, job_type=JobType.GENERATE_MODULE_QUESTIONS,
        input={"module_id": module.id, "module_number": number},
    )
    payload = await _questions_payload(db, project, module, job)
    await db.commit()
    logger.info("project %s: created module %s (#%s), job %s", project.id, module.id, number, job.id)

    result = await queue.dispatch(EVENT_QUESTIONS, payload)
    return module, job, result


async def retry_question_generation(
    db: AsyncSession, project: Project, module: Module, user: User
) -> Tuple[Job, DispatchResult]:
    if project.interviewee is None:
        raise PreconditionError("Please complete interviewee setup first")
    try:
        await transition(db, module.id, ModuleStatus.DRAFT, expected={ModuleStatus.FAILED})
    except InvalidTransitionError as e:
        raise PreconditionError("Questions can only be regenerated for a module whose generation failed") from e
    await db.execute(delete(ModuleQuestion).where(ModuleQuestion.module_id == module.id))
    job = await jobs.create_job(
        db, project_id=project.id, user_id=user.id, job_type=JobType.GENERATE_MODULE_QUESTIONS,
        input={"module_id": module.id, "module_number": module.module_number, "retry": True},
    )
    payload = await _questions_payload(db, project, module, job)
    await db.commit()
    result = await queue.dispatch(EVENT_QUESTIONS, payload)
    return job, result


async def mark_project_questions_ready(db: AsyncSession, project_id: int) -> None:
    await db.execute(
        update(Project)
        .where(Project.id == project_id, Project.status.in_(_SETUP_STATUSES))
        .values(status=ProjectStatus.QUESTIONS_GENERATED)
        .execution_options(synchronize_session=False)
    )


# ---------- answering ----------

async def promote_to_in_progress(db: AsyncSession, module_id: int) -> bool:
    return await try_transition(db, module_id, ModuleStatus.IN_PROGRESS, expected={ModuleStatus.QUESTIONS_GENERATED})


async def answer_question(db: AsyncSession, module: Module, question: ModuleQuestion, response: str) -> ModuleQuestion:
    question.response = response
    question.responded_at = _now()
    question.processing_status = ProcessingStatus.COMPLETE
    question.error_message = None
    await promote_to_in_progress(db, module.id)
    await db.commit()
    await db.refresh(question)
    return question


async def start_recording(db: AsyncSession, question: ModuleQuestion, audio_format: str) -> ModuleQuestion:
    question.audio_file_key = audio_key_for(question.id, audio_format)
    question.processing_status = ProcessingStatus.RECORDING
    question.error_message = None
    await db.commit()
    await db.refresh(question)
    return question


async def attach_audio(
    db: AsyncSession,
    project: Project,
    module: Module,
    question: ModuleQuestion,
    user: User,
    *,
    data: bytes,
    filename: Optional[str] = None,
    duration: Optional[float] = None,
) -> Tuple[Job, DispatchResult]:
    if not data:
        raise PreconditionError("Uploaded audio is empty")
    if not question.audio_file_key:
        raise PreconditionError("No recording found for this question")

    await get_audio_store().save(question.audio_file_key, data)
    question.processing_status = ProcessingStatus.UPLOADING
    if duration:
        question.duration = float(duration)
    job = await jobs.create_job(
        db, project_id=project.id, user_id=user.id, job_type=JobType.TRANSCRIBE_AUDIO,
        input={"question_id": question.id, "audio_file_key": question.audio_file_key},
    )
    payload = {
        "job_id": job.id,
        "project_id": project.id,
        "module_id": module.id,
        "question_id": question.id,
        "question": question.question,
        "audio_file_key": question.audio_file_key,
        "filename": filename or question.audio_file_key,
        "duration": duration,
    }
    await db.commit()
    result = await queue.dispatch(EVENT_AUDIO, payload)
    return job, result


# ---------- chapters ----------

NARRATIVE_DEFAULTS = {
    "narrative_person": "first-person",
    "narrative_tone": "warm",
    "narrative_style": "descriptive",
}


async def request_chapter_generation(
    db: AsyncSession,
    project: Project,
    module: Module,
    user: User,
    narrative: Dict[str, Optional[str]],
    *,
    regenerate: bool = False,
    feedback: Optional[str] = None,
) -> Tuple[ModuleChapter, Job, DispatchResult]:
    total, answered = await question_counts(db, module.id)
    if total == 0:
        raise PreconditionError("This module has no questions yet")
    needed = required_answers(total)
    if answered < needed:
        raise PreconditionError(
            f"Please answer at least {needed} questions before generating a chapter ({answered}/{total} answered)"
        )

    try:
        await transition(
            db, module.id, ModuleStatus.GENERATING_CHAPTER,
            expected={ModuleStatus.QUESTIONS_GENERATED, ModuleStatus.IN_PROGRESS, ModuleStatus.CHAPTER_GENERATED},
        )
    except InvalidTransitionError as e:
        if e.current == ModuleStatus.GENERATING_CHAPTER.value:
            raise ConflictError(
                "A chapter is already being generated for this module. Please wait for it to complete."
            ) from e
        if e.current == ModuleStatus.APPROVED.value:
            raise PreconditionError("Module is already approved") from e
        raise PreconditionError(f"Module is not ready for chapter generation (status {e.current})") from e

    previous = await latest_chapter(db, module.id, with_content=True)
    if regenerate and previous is None:
        await db.rollback()
        raise PreconditionError("No existing chapter to regenerate. Generate a chapter first.")

    chosen = {}
    for field, default in NARRATIVE_DEFAULTS.items():
        value = narrative.get(field)
        if value is None and previous is not None and regenerate:
            value = getattr(previous, field)
        chosen[field] = value or default

    version = await next_chapter_version(db, module.id)
    chapter = ModuleChapter(
        module_id=module.id,
        version=version,
        content="",
        word_count=0,
        feedback=(feedback or "").strip() or None,
        **chosen,
    )
    db.add(chapter)
    await db.flush()

    job = await jobs.create_job(
        db, project_id=project.id, user_id=user.id, job_type=JobType.GENERATE_MODULE_CHAPTER,
        input={"module_id": module.id, "chapter_id": chapter.id, "version": version, "regenerate": regenerate},
    )
    questions = await load_questions(db, module.id)
    payload = {
        "job_id": job.id,
        "project_id": project.id,
        "module_id": module.id,
        "chapter_id": chapter.id,
        "version": version,
        "qa_pairs": [
            {"question": q.question, "response": q.response, "category": q.category}
            for q in questions if q.response
        ],
        "settings": {
            "person": chosen["narrative_person"],
            "tone": chosen["narrative_tone"],
            "style": chosen["narrative_style"],
        },
        "interviewee_name": project.interviewee.name if project.interviewee else None,
        "feedback": chapter.feedback,
        "previous_chapter": previous.content if (regenerate and previous is not None) else None,
        "had_previous": previous is not None,
    }
    await db.commit()
    logger.info("module %s: chapter v%s requested (job %s)", module.id, version, job.id)

    result = await queue.dispatch(EVENT_CHAPTER, payload)
    return chapter, job, result


async def current_chapter_or_404(db: AsyncSession, module_id: int) -> ModuleChapter:
    chapter = await latest_chapter(db, module_id, with_content=True)
    if chapter is None:
        raise NotFoundError("Chapter not found")
    return chapter


async def edit_chapter(db: AsyncSession, module: Module, content: str) -> ModuleChapter:
    if module.status == ModuleStatus.GENERATING_CHAPTER:
        raise ConflictError("A chapter is being generated for this module. Please wait for it to complete.")
    chapter = await current_chapter_or_404(db, module.id)
    chapter.content = content
    chapter.word_count = count_words(content)
    await db.commit()
    await db.refresh(chapter)
    return chapter


# ---------- approval / deletion ----------

async def approve_module(db: AsyncSession, project: Project, module: Module) -> dict:
    if module.status == ModuleStatus.APPROVED:
        raise PreconditionError("Module already approved")
    if await latest_chapter(db, module.id, with_content=True) is None:
        raise PreconditionError("Generate a chapter before approving the module")

    try:
        await transition(
            db, module.id, ModuleStatus.APPROVED, expected={ModuleStatus.CHAPTER_GENERATED}, approved_at=_now()
        )
    except InvalidTransitionError as e:
        if e.current == ModuleStatus.APPROVED.value:
            raise PreconditionError("Module already approved") from e
        if e.current == ModuleStatus.GENERATING_CHAPTER.value:
            raise ConflictError("Wait for the chapter to finish generating before approving") from e
        raise PreconditionError("Generate a chapter before approving the module") from e

    # counters move in the same statement so concurrent approvals of sibling modules cannot lose updates
    await db.execute(
        update(Project)
        .where(Project.id == project.id)
        .values(
            total_modules_completed=Project.total_modules_completed + 1,
            current_module_number=Project.current_module_number + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    approved = int(await db.scalar(
        select(func.count(Module.id)).where(Module.project_id == project.id, Module.status == ModuleStatus.APPROVED)
    ) or 0)
    suggest = approved >= settings.BOOK_SUGGESTION_THRESHOLD
    # the client creates the next module itself; point it at the one that follows, if any
    following = (await db.execute(
        select(Module)
        .where(Module.project_id == project.id, Module.module_number > module.module_number)
        .order_by(Module.module_number.asc())
        .limit(1)
    )).scalars().first()
    last = int(await db.scalar(select(func.max(Module.module_number)).where(Module.project_id == project.id)) or 0)
    logger.info("module %s approved (%s approved in project %s)", module.id, approved, project.id)
    return {
        "next_module": following,
        "next_module_number": following.module_number if following else last + 1,
        "approved_count": approved,
        "suggest_book_compilation": suggest,
        "message": (
            "Module approved! You have enough content to compile your book."
            if suggest else "Module approved successfully!"
        ),
    }


async def delete_module(db: AsyncSession, project: Project, module: Module) -> None:
    siblings = int(await db.scalar(select(func.count(Module.id)).where(Module.project_id == project.id)) or 0)
    if siblings <= 1:
        raise PreconditionError("Cannot delete the only module in a project")

    was_approved = module.status == ModuleStatus.APPROVED
    keys = (await db.execute(
        select(ModuleQuestion.audio_file_key)
        .where(ModuleQuestion.module_id == module.id, ModuleQuestion.audio_file_key.is_not(None))
    )).scalars().all()

    await db.execute(delete(ModuleQuestion).where(ModuleQuestion.module_id == module.id))
    await db.execute(delete(ModuleChapter).where(ModuleChapter.module_id == module.id))
    await db.execute(delete(Module).where(Module.id == module.id))

    remaining = (await db.execute(
        select(Module).where(Module.project_id == project.id).order_by(Module.module_number.asc(), Module.id.asc())
    )).scalars().all()
    for number, m in enumerate(remaining, start=1):
        if m.module_number != number:
            m.module_number = number

    if was_approved:
        await db.execute(
            update(Project)
            .where(Project.id == project.id, Project.total_modules_completed > 0)
            .values(total_modules_completed=Project.total_modules_completed - 1)
            .execution_options(synchronize_session=False)
        )
    await db.commit()
    logger.info("project %s: deleted module %s, %s remain", project.id, module.id, len(remaining))

    store = get_audio_store()
    for key in keys:
        await store.delete(key)


# ---------- illustrations ----------

async def request_illustration(
    db: AsyncSession, project: Project, module: Module, user: User, prompt: str
) -> Tuple[ModuleChapter, Job, DispatchResult]:
    chapter = await current_chapter_or_404(db, module.id)
    job = await jobs.create_job(
        db, project_id=project.id, user_id=user.id, job_type=JobType.GENERATE_CHAPTER_IMAGE,
        input={"chapter_id": chapter.id, "prompt": prompt},
    )
    payload = {
        "job_id": job.id,
        "project_id": project.id,
        "module_id": module.id,
        "chapter_id": chapter.id,
        "prompt": prompt,
        "size": "1024x1024",
        "quality": "standard",
        "style": "natural",
    }
    await db.commit()
    result = await queue.dispatch(EVENT_IMAGE, payload)
    return chapter, job, result


async def upload_illustration(db: AsyncSession, module: Module, image_data: str, mime_type: str) -> ModuleChapter:
    chapter = await current_chapter_or_404(db, module.id)
    _, data_url = decode_upload(image_data, mime_type)
    chapter.illustration_url = data_url
    chapter.illustration_prompt = UPLOAD_PROMPT
    chapter.illustration_generated_at = _now()
    await db.commit()
    await db.refresh(chapter)
    return chapter


async def clear_illustration(db: AsyncSession, module: Module) -> ModuleChapter:
    chapter = await current_chapter_or_404(db, module.id)
    chapter.illustration_url = None
    chapter.illustration_prompt = None
    chapter.illustration_generated_at = None
    await db.commit()
    await db.refresh(chapter)
    return chapter
