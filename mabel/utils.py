from typing import Any, Optional

from fastapi import Depends, HTTPException, status
from fastapi_users import models
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .database import get_db
from .errors import NotFoundError
from .models import Module, ModuleQuestion, Project
from .users import current_active_user


def envelope(data: Any = None, **extra: Any) -> dict:
    """Success body: ``{"data": ...}`` plus any top-level extras."""
    body = {"data": data}
    body.update(extra)
    return body


# Dependency to enforce authentication
async def require_authenticated_user(
    user: Optional[models.UP] = Depends(current_active_user),
):
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user


async def load_owned_project(db: AsyncSession, project_id: int, user_id: int) -> Project:
    project = (
        await db.execute(
            select(Project)
            .options(selectinload(Project.interviewee))
            .where(Project.id == project_id, Project.user_id == user_id)
            .execution_options(populate_existing=True)
        )
    ).scalars().first()
    # someone else's project looks exactly like a missing one
    if project is None:
        raise NotFoundError("Project not found")
    return project


async def get_owned_project(
    project_id: int,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
) -> Project:
    return await load_owned_project(db, project_id, user.id)


async def get_owned_module(
    module_id: int,
    project: Project = Depends(get_owned_project),
    db: AsyncSession = Depends(get_db),
) -> Module:
    module = (
        await db.execute(
            select(Module)
            .where(Module.id == module_id, Module.project_id == project.id)
            .execution_options(populate_existing=True)
        )
    ).scalars().first()
    if module is None:
        raise NotFoundError("Module not found")
    return module


async def get_owned_question(
    question_id: int,
    module: Module = Depends(get_owned_module),
    db: AsyncSession = Depends(get_db),
) -> ModuleQuestion:
    question = (
        await db.execute(
            select(ModuleQuestion).where(ModuleQuestion.id == question_id, ModuleQuestion.module_id == module.id)
        )
    ).scalars().first()
    if question is None:
        raise NotFoundError("Question not found")
    return question
