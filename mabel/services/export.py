# mabel/services/export.py
from __future__ import annotations

import logging
from typing import List

from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from mabel.background import run_sync
from mabel.errors import MabelError, PreconditionError
from mabel.models import Module, ModuleChapter, ModuleStatus, Project, ProjectStatus
from mabel.services.document import ChapterSection, render_book_pdf, render_chapter_pdf, safe_filename
from mabel.services.illustration import load_image_bytes, normalize_png
from mabel.services.lifecycle import current_chapter_or_404, latest_chapter

logger = logging.getLogger(__name__)

DEFAULT_BOOK_TITLE = "Family Story"


async def section_for(module: Module, chapter: ModuleChapter) -> ChapterSection:
    png = None
    raw = await load_image_bytes(chapter.illustration_url)
    if raw:
        png = await run_sync(normalize_png, raw)
        if png is None:
            logger.warning("Skipping illustration for module %s", module.id)
    return ChapterSection(module.module_number, module.title, chapter.content, png)


def pdf_response(pdf: bytes, filename: str) -> Response:
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


async def export_chapter(db: AsyncSession, project: Project, module: Module) -> Response:
    chapter = await current_chapter_or_404(db, module.id)
    section = await section_for(module, chapter)
    name = project.interviewee.name if project.interviewee else None
    try:
        pdf = await run_sync(
            render_chapter_pdf, section, book_title=project.title or DEFAULT_BOOK_TITLE, interviewee_name=name
        )
    except Exception as e:
        logger.exception("chapter PDF failed for module %s", module.id)
        raise MabelError(f"Failed to generate PDF: {e}", status_code=500) from e
    return pdf_response(pdf, safe_filename(f"Chapter_{module.module_number}_{module.title}"))


async def export_book(db: AsyncSession, project: Project) -> Response:
    modules = (await db.execute(
        select(Module)
        .where(Module.project_id == project.id, Module.status == ModuleStatus.APPROVED)
        .order_by(Module.module_number.asc())
    )).scalars().all()

    sections: List[ChapterSection] = []
    for m in modules:
        chapter = await latest_chapter(db, m.id, with_content=True)
        if chapter is not None:
            sections.append(await section_for(m, chapter))
    if not sections:
        raise PreconditionError("Approve at least one module before exporting the book")

    title = project.title or DEFAULT_BOOK_TITLE
    name = project.interviewee.name if project.interviewee else None
    try:
        pdf = await run_sync(render_book_pdf, sections, title=title, interviewee_name=name)
    except Exception as e:
        logger.exception("book PDF failed for project %s", project.id)
        raise MabelError(f"Failed to generate PDF: {e}", status_code=500) from e

    project.status = ProjectStatus.COMPLETE
    await db.commit()
    logger.info("project %s: book exported (%s chapters)", project.id, len(sections))
    return pdf_response(pdf, safe_filename(title))
