# mabel/services/workers.py
"""Task-queue consumers for the four long-running operations.

Each worker opens its own session, claims its job (``mark_running``), and
settles both the job and the entity it works on. Errors are recorded on
the job and never re-raised: the originating request has already
returned, or reads the job back when it ran inline.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select, update

from mabel import jobs
from mabel.ai_gateway import (
    IntervieweeContext,
    NarrativeSettings,
    QAPair,
    count_words,
    get_gateway,
)
from mabel.database import async_session_maker
from mabel.models import (
    ModuleChapter,
    ModuleQuestion,
    ModuleStatus,
    ProcessingStatus,
)
from mabel.services import lifecycle
from mabel.services.dispatch import queue
from mabel.services.storage import get_audio_store
from mabel.transcription import transcribe_audio

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@queue.handler(lifecycle.EVENT_QUESTIONS)
async def generate_module_questions(payload: dict) -> None:
    job_id = payload["job_id"]
    module_id = payload["module_id"]
    module_number = int(payload.get("module_number") or 1)
    count = int(payload.get("count") or 15)

    async with async_session_maker() as db:
        if not await jobs.mark_running(db, job_id):
            return
        try:
            gateway = get_gateway()
            context = IntervieweeContext.from_dict(payload.get("interviewee") or {})
            previous = [QAPair.from_dict(p) for p in payload.get("previous") or []]
            await jobs.update_progress(db, job_id, 25)

            if previous:
                questions = await gateway.generate_follow_up_questions(context, previous, module_number, count)
            else:
                questions = await gateway.generate_questions(context, count)
            await jobs.update_progress(db, job_id, 75)

            # a retried job replaces whatever a half-finished attempt left behind
            await db.execute(delete(ModuleQuestion).where(ModuleQuestion.module_id == module_id))
            for idx, q in enumerate(questions, start=1):
                db.add(ModuleQuestion(
                    module_id=module_id,
                    question=q.question,
                    category=q.category or "General",
                    order=q.order or idx,
                    context_source=q.context_source,
                ))
            await lifecycle.transition(db, module_id, ModuleStatus.QUESTIONS_GENERATED, expected={ModuleStatus.DRAFT})
            await lifecycle.mark_project_questions_ready(db, payload["project_id"])
            await db.commit()

            await jobs.complete(db, job_id, {"module_id": module_id, "question_count": len(questions)})
            logger.info("module %s: %s questions generated", module_id, len(questions))
        except Exception as e:
            logger.exception("question generation failed for module %s", module_id)
            await db.rollback()
            await lifecycle.try_transition(db, module_id, ModuleStatus.FAILED, expected={ModuleStatus.DRAFT})
            await db.commit()
            await jobs.fail(db, job_id, str(e))


@queue.handler(lifecycle.EVENT_CHAPTER)
async def generate_module_chapter(payload: dict) -> None:
    job_id = payload["job_id"]
    module_id = payload["module_id"]
    chapter_id = payload["chapter_id"]

    async with async_session_maker() as db:
        if not await jobs.mark_running(db, job_id):
            return
        try:
            gateway = get_gateway()
            await jobs.update_progress(db, job_id, 25)
            content = await gateway.generate_chapter(
                [QAPair.from_dict(p) for p in payload.get("qa_pairs") or []],
                NarrativeSettings.from_dict(payload.get("settings")),
                interviewee_name=payload.get("interviewee_name"),
                feedback=payload.get("feedback"),
                previous_chapter=payload.get("previous_chapter"),
            )
            if not (content or "").strip():
                raise RuntimeError("AI provider returned an empty chapter")
            await jobs.update_progress(db, job_id, 75)

            words = count_words(content)
            await db.execute(
                update(ModuleChapter)
                .where(ModuleChapter.id == chapter_id)
                .values(content=content, word_count=words, error_message=None)
                .execution_options(synchronize_session=False)
            )
            await lifecycle.transition(
                db, module_id, ModuleStatus.CHAPTER_GENERATED, expected={ModuleStatus.GENERATING_CHAPTER}
            )
            await db.commit()

            await jobs.complete(db, job_id, {
                "module_id": module_id,
                "chapter_id": chapter_id,
                "version": payload.get("version"),
                "word_count": words,
            })
            logger.info("module %s: chapter %s written (%s words)", module_id, chapter_id, words)
        except Exception as e:
            logger.exception("chapter generation failed for module %s", module_id)
            await db.rollback()
            revert = ModuleStatus.CHAPTER_GENERATED if payload.get("had_previous") else ModuleStatus.QUESTIONS_GENERATED
            await lifecycle.try_transition(db, module_id, revert, expected={ModuleStatus.GENERATING_CHAPTER})
            # the placeholder keeps its version number; versions are never reused
            await db.execute(
                update(ModuleChapter)
                .where(ModuleChapter.id == chapter_id)
                .values(error_message=str(e)[:2000])
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            await jobs.fail(db, job_id, str(e))


@queue.handler(lifecycle.EVENT_AUDIO)
async def transcribe_answer(payload: dict) -> None:
    job_id = payload["job_id"]
    module_id = payload["module_id"]
    question_id = payload["question_id"]

    async def _set_question(**values) -> None:
        await db.execute(
            update(ModuleQuestion)
            .where(ModuleQuestion.id == question_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    async with async_session_maker() as db:
        if not await jobs.mark_running(db, job_id):
            return
        try:
            await _set_question(processing_status=ProcessingStatus.PROCESSING, error_message=None)
            data = await get_audio_store().read(payload["audio_file_key"])
            await jobs.update_progress(db, job_id, 25)

            result = await transcribe_audio(
                data, payload.get("filename") or payload["audio_file_key"], duration_hint=payload.get("duration")
            )
            polished = await get_gateway().polish_answer(result.text, question=payload.get("question"))
            await jobs.update_progress(db, job_id, 75)

            await db.execute(
                update(ModuleQuestion)
                .where(ModuleQuestion.id == question_id)
                .values(
                    response=polished,
                    responded_at=_now(),
                    raw_transcript=result.text,
                    narrative_text=polished,
                    duration=result.duration,
                    processing_status=ProcessingStatus.COMPLETE,
                )
                .execution_options(synchronize_session=False)
            )
            await lifecycle.promote_to_in_progress(db, module_id)
            await db.commit()

            await jobs.complete(db, job_id, {
                "question_id": question_id,
                "word_count": result.word_count,
                "duration": result.duration,
            })
        except Exception as e:
            logger.exception("transcription failed for question %s", question_id)
            await db.rollback()
            await _set_question(processing_status=ProcessingStatus.ERROR, error_message=str(e)[:2000])
            await jobs.fail(db, job_id, str(e))


@queue.handler(lifecycle.EVENT_IMAGE)
async def generate_chapter_image(payload: dict) -> None:
    job_id = payload["job_id"]
    chapter_id = payload["chapter_id"]

    async with async_session_maker() as db:
        if not await jobs.mark_running(db, job_id):
            return
        try:
            exists = await db.scalar(select(ModuleChapter.id).where(ModuleChapter.id == chapter_id))
            if exists is None:
                raise RuntimeError("Chapter no longer exists")
            await jobs.update_progress(db, job_id, 25)

            image = await get_gateway().generate_image(
                payload["prompt"],
                size=payload.get("size") or "1024x1024",
                quality=payload.get("quality") or "standard",
                style=payload.get("style") or "natural",
            )
            await jobs.update_progress(db, job_id, 75)

            await db.execute(
                update(ModuleChapter)
                .where(ModuleChapter.id == chapter_id)
                .values(
                    illustration_url=image.url,
                    illustration_prompt=image.revised_prompt or payload["prompt"],
                    illustration_generated_at=_now(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            await jobs.complete(db, job_id, {"chapter_id": chapter_id, "revised_prompt": image.revised_prompt})
        except Exception as e:
            logger.exception("illustration failed for chapter %s", chapter_id)
            await db.rollback()
            await jobs.fail(db, job_id, str(e))
