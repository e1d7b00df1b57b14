from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from mabel.database import get_db
from mabel.errors import ConflictError, NotFoundError
from mabel.models import Interviewee, Job, Module, ModuleChapter, ModuleQuestion, Project, ProjectStatus
from mabel.schemas import IntervieweeCreate, ProjectCreate, interviewee_dto, project_dto
from mabel.services.export import export_book
from mabel.services.storage import get_audio_store
from mabel.utils import envelope, get_owned_project, load_owned_project, require_authenticated_user

router = APIRouter(prefix="/api/projects", tags=["projects"])
logger = logging.getLogger(__name__)


async def _modules(db: AsyncSession, project_id: int):
    return (await db.execute(
        select(Module).where(Module.project_id == project_id).order_by(Module.module_number.asc())
    )).scalars().all()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_project(
    payload: ProjectCreate,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    project = Project(user_id=user.id, title=payload.title.strip(), status=ProjectStatus.DRAFT)
    db.add(project)
    await db.commit()
    project = await load_owned_project(db, project.id, user.id)
    logger.info("user %s created project %s", user.id, project.id)
    return envelope(project_dto(project).dump())


@router.get("")
async def list_projects(
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    rows = (await db.execute(
        select(Project)
        .options(selectinload(Project.interviewee))
        .where(Project.user_id == user.id)
        .order_by(Project.id.desc())
    )).scalars().all()
    return envelope([project_dto(p, await _modules(db, p.id)).dump() for p in rows])


@router.get("/{project_id}")
async def get_project(
    project: Project = Depends(get_owned_project),
    db: AsyncSession = Depends(get_db),
):
    return envelope(project_dto(project, await _modules(db, project.id)).dump())


@router.delete("/{project_id}")
async def delete_project(
    project: Project = Depends(get_owned_project),
    db: AsyncSession = Depends(get_db),
):
    module_ids = select(Module.id).where(Module.project_id == project.id)
    keys = (await db.execute(
        select(ModuleQuestion.audio_file_key)
        .where(ModuleQuestion.module_id.in_(module_ids), ModuleQuestion.audio_file_key.is_not(None))
    )).scalars().all()

    # SQLite does not enforce ON DELETE CASCADE
    await db.execute(delete(ModuleQuestion).where(ModuleQuestion.module_id.in_(module_ids)))
    await db.execute(delete(ModuleChapter).where(ModuleChapter.module_id.in_(module_ids)))
    await db.execute(delete(Module).where(Module.project_id == project.id))
    await db.execute(delete(Job).where(Job.project_id == project.id))
    await db.delete(project)
    await db.commit()
    logger.info("project %s deleted (%s recordings)", project.id, len(keys))

    store = get_audio_store()
    for key in keys:
        await store.delete(key)
    return envelope({"id": project.id}, message="Project deleted successfully")


# ---------- interviewee ----------

@router.post("/{project_id}/interviewee", status_code=status.HTTP_201_CREATED)
async def create_interviewee(
    payload: IntervieweeCreate,
    project: Project = Depends(get_owned_project),
    db: AsyncSession = Depends(get_db),
):
    if project.interviewee is not None:
        raise ConflictError("Interviewee already set up for this project")
    interviewee = Interviewee(
        project_id=project.id,
        name=payload.name.strip(),
        relationship_label=payload.relationship.strip(),
        birth_year=payload.birth_year,
        generation=(payload.generation or "").strip() or None,
        topics=[t.strip() for t in payload.topics if t and t.strip()],
    )
    db.add(interviewee)
    if project.status == ProjectStatus.DRAFT:
        project.status = ProjectStatus.RECORDING_INFO
    await db.commit()
    await db.refresh(interviewee)
    return envelope(interviewee_dto(interviewee).dump())


@router.get("/{project_id}/interviewee")
async def get_interviewee(project: Project = Depends(get_owned_project)):
    if project.interviewee is None:
        raise NotFoundError("Interviewee not found")
    return envelope(interviewee_dto(project.interviewee).dump())


# ---------- book ----------

@router.get("/{project_id}/book/export")
async def export_project_book(
    project: Project = Depends(get_owned_project),
    db: AsyncSession = Depends(get_db),
):
    return await export_book(db, project)
