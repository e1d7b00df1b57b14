from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi_users import schemas
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import Interviewee, Job, Module, ModuleChapter, ModuleQuestion, Project


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# =========================
# USER SCHEMAS
# =========================
class UserRead(schemas.BaseUser[int]):
    username: Optional[str] = None


class UserCreate(schemas.BaseUserCreate):
    username: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    username: Optional[str] = None


# =========================
# PROJECT / INTERVIEWEE
# =========================
class ProjectCreate(CamelModel):
    title: str = Field(min_length=1, max_length=200)


class IntervieweeCreate(CamelModel):
    name: str = Field(min_length=1, max_length=120)
    relationship: str = Field(min_length=1, max_length=80)
    birth_year: Optional[int] = Field(default=None, ge=1880, le=2100)
    generation: Optional[str] = Field(default=None, max_length=64)
    topics: List[str] = Field(default_factory=list, max_length=30)


class IntervieweeRead(CamelModel):
    id: int
    name: str
    relationship: str
    birth_year: Optional[int] = None
    generation: Optional[str] = None
    topics: List[str] = []


class ModuleSummary(CamelModel):
    id: int
    module_number: int
    title: str
    theme: Optional[str] = None
    status: str
    approved_at: Optional[datetime] = None


class ProjectRead(CamelModel):
    id: int
    title: str
    status: str
    current_module_number: int
    total_modules_completed: int
    created_at: Optional[datetime] = None
    interviewee: Optional[IntervieweeRead] = None
    modules: List[ModuleSummary] = []


# =========================
# MODULES / QUESTIONS
# =========================
NarrativePerson = Literal["first-person", "third-person"]
NarrativeTone = Literal["warm", "formal", "conversational"]
NarrativeStyle = Literal["descriptive", "concise", "poetic"]


class ModuleCreate(CamelModel):
    theme: Optional[str] = Field(default=None, max_length=200)
    title: Optional[str] = Field(default=None, max_length=200)


class AnswerUpdate(CamelModel):
    response: str = Field(min_length=1, max_length=10000)


class RecordingStart(CamelModel):
    audio_format: Literal["aac", "webm"] = "aac"


class QuestionRead(CamelModel):
    id: int
    question: str
    category: str
    order: int
    context_source: Optional[str] = None
    response: Optional[str] = None
    responded_at: Optional[datetime] = None
    audio_file_key: Optional[str] = None
    raw_transcript: Optional[str] = None
    narrative_text: Optional[str] = None
    processing_status: Optional[str] = None
    error_message: Optional[str] = None
    duration: Optional[float] = None


class ChapterRead(CamelModel):
    id: int
    version: int
    content: str
    word_count: int
    narrative_person: str
    narrative_tone: str
    narrative_style: str
    feedback: Optional[str] = None
    error_message: Optional[str] = None
    illustration_url: Optional[str] = None
    illustration_prompt: Optional[str] = None
    illustration_generated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class ModuleRead(ModuleSummary):
    question_count: int = 0
    answered_count: int = 0
    questions: List[QuestionRead] = []
    chapter: Optional[ChapterRead] = None
    latest_attempt: Optional[ChapterRead] = None


# =========================
# CHAPTERS
# =========================
class ChapterGenerateRequest(CamelModel):
    narrative_person: Optional[NarrativePerson] = None
    narrative_tone: Optional[NarrativeTone] = None
    narrative_style: Optional[NarrativeStyle] = None

    def narrative(self) -> Dict[str, Optional[str]]:
        return {
            "narrative_person": self.narrative_person,
            "narrative_tone": self.narrative_tone,
            "narrative_style": self.narrative_style,
        }


class ChapterRegenerateRequest(ChapterGenerateRequest):
    feedback: Optional[str] = Field(default=None, max_length=2000)


class ChapterEdit(CamelModel):
    content: str = Field(min_length=1, max_length=100000)


class ImageGenerateRequest(CamelModel):
    prompt: Optional[str] = Field(default=None, max_length=1000)


class ImageUpload(CamelModel):
    image_data: str = Field(min_length=1)
    mime_type: str = Field(min_length=1, max_length=32)


# =========================
# JOBS / EVENTS
# =========================
class JobRead(CamelModel):
    id: int
    project_id: int
    type: str
    status: str
    progress: int
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class EventDelivery(BaseModel):
    name: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)


# =========================
# DTO BUILDERS
# =========================
def _value(e) -> Optional[str]:
    return getattr(e, "value", e)


def interviewee_dto(i: Interviewee) -> IntervieweeRead:
    return IntervieweeRead(
        id=i.id,
        name=i.name,
        relationship=i.relationship_label,
        birth_year=i.birth_year,
        generation=i.generation,
        topics=list(i.topics or []),
    )


def module_summary(m: Module) -> ModuleSummary:
    return ModuleSummary(
        id=m.id,
        module_number=m.module_number,
        title=m.title,
        theme=m.theme,
        status=_value(m.status),
        approved_at=m.approved_at,
    )


def project_dto(p: Project, modules: Optional[List[Module]] = None) -> ProjectRead:
    return ProjectRead(
        id=p.id,
        title=p.title,
        status=_value(p.status),
        current_module_number=p.current_module_number,
        total_modules_completed=p.total_modules_completed,
        created_at=p.created_at,
        interviewee=interviewee_dto(p.interviewee) if p.interviewee else None,
        modules=[module_summary(m) for m in modules or []],
    )


def question_dto(q: ModuleQuestion) -> QuestionRead:
    return QuestionRead(
        id=q.id,
        question=q.question,
        category=q.category,
        order=q.order,
        context_source=q.context_source,
        response=q.response,
        responded_at=q.responded_at,
        audio_file_key=q.audio_file_key,
        raw_transcript=q.raw_transcript,
        narrative_text=q.narrative_text,
        processing_status=_value(q.processing_status),
        error_message=q.error_message,
        duration=q.duration,
    )


def chapter_dto(c: Optional[ModuleChapter]) -> Optional[ChapterRead]:
    return ChapterRead.model_validate(c) if c is not None else None


def module_dto(
    m: Module,
    questions: List[ModuleQuestion],
    chapter: Optional[ModuleChapter],
    latest_attempt: Optional[ModuleChapter] = None,
) -> ModuleRead:
    """``chapter`` is the readable version; ``latest_attempt`` the highest one, possibly empty or failed."""
    return ModuleRead(
        **module_summary(m).model_dump(),
        question_count=len(questions),
        answered_count=sum(1 for q in questions if q.response is not None),
        questions=[question_dto(q) for q in questions],
        chapter=chapter_dto(chapter),
        latest_attempt=chapter_dto(latest_attempt or chapter),
    )


def job_dto(j: Job) -> JobRead:
    return JobRead(
        id=j.id,
        project_id=j.project_id,
        type=_value(j.type),
        status=_value(j.status),
        progress=j.progress or 0,
        output=j.output,
        error=j.error,
        created_at=j.created_at,
        started_at=j.started_at,
        completed_at=j.completed_at,
    )
