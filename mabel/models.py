from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime, func,
    UniqueConstraint, Index, JSON, Float
)
from sqlalchemy.orm import relationship
from sqlalchemy import Enum as SAEnum
from .database import Base
import enum


class ProjectStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    RECORDING_INFO = "RECORDING_INFO"
    QUESTIONS_GENERATED = "QUESTIONS_GENERATED"
    AUDIO_UPLOADED = "AUDIO_UPLOADED"
    TRANSCRIBING = "TRANSCRIBING"
    TRANSCRIPTION_COMPLETE = "TRANSCRIPTION_COMPLETE"
    GENERATING_NARRATIVE = "GENERATING_NARRATIVE"
    NARRATIVE_COMPLETE = "NARRATIVE_COMPLETE"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


class ModuleStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    QUESTIONS_GENERATED = "QUESTIONS_GENERATED"
    IN_PROGRESS = "IN_PROGRESS"
    GENERATING_CHAPTER = "GENERATING_CHAPTER"
    CHAPTER_GENERATED = "CHAPTER_GENERATED"
    APPROVED = "APPROVED"
    FAILED = "FAILED"


class ProcessingStatus(str, enum.Enum):
    RECORDING = "RECORDING"
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


class JobType(str, enum.Enum):
    GENERATE_QUESTIONS = "GENERATE_QUESTIONS"
    TRANSCRIBE_AUDIO = "TRANSCRIBE_AUDIO"
    GENERATE_NARRATIVE = "GENERATE_NARRATIVE"
    GENERATE_MODULE_QUESTIONS = "GENERATE_MODULE_QUESTIONS"
    GENERATE_MODULE_CHAPTER = "GENERATE_MODULE_CHAPTER"
    GENERATE_CHAPTER_IMAGE = "GENERATE_CHAPTER_IMAGE"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def _enum(cls, name):
    # stored as VARCHAR so SQLite test databases and Alembic stay simple
    return SAEnum(cls, name=name, native_enum=False, length=32)


# ---------------------------
# USER MODEL
# ---------------------------
class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    username = Column(String, index=True)
    hashed_password = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_superuser = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    projects = relationship("Project", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)


# ---------------------------
# PROJECT / INTERVIEWEE
# ---------------------------
class Project(Base):
    __tablename__ = "project"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String(200), nullable=False)
    status = Column(_enum(ProjectStatus, "project_status"), default=ProjectStatus.DRAFT, nullable=False)
    current_module_number = Column(Integer, default=1, nullable=False)
    total_modules_completed = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    user = relationship("User", back_populates="projects")
    interviewee = relationship(
        "Interviewee", back_populates="project", uselist=False,
        cascade="all, delete-orphan", passive_deletes=True,
    )
    modules = relationship(
        "Module", back_populates="project", order_by="Module.module_number",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    jobs = relationship("Job", back_populates="project", cascade="all, delete-orphan", passive_deletes=True)


class Interviewee(Base):
    __tablename__ = "interviewee"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("project.id", ondelete="CASCADE"), unique=True, nullable=False)
    name = Column(String(120), nullable=False)
    relationship_label = Column("relationship", String(80), nullable=False)
    birth_year = Column(Integer, nullable=True)
    generation = Column(String(64), nullable=True)
    topics = Column(JSON, nullable=False, default=list)   # list[str]
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    project = relationship("Project", back_populates="interviewee")

    def as_context(self) -> dict:
        """Profile payload handed to the AI gateway."""
        return {
            "name": self.name,
            "relationship": self.relationship_label,
            "birth_year": self.birth_year,
            "generation": self.generation,
            "topics": list(self.topics or []),
        }


# ---------------------------
# MODULES
# ---------------------------
class Module(Base):
    __tablename__ = "module"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("project.id", ondelete="CASCADE"), index=True, nullable=False)
    module_number = Column(Integer, nullable=False)                     # 1-based, dense per project
    title = Column(String(200), nullable=False)
    theme = Column(String(200), nullable=True)
    status = Column(_enum(ModuleStatus, "module_status"), default=ModuleStatus.DRAFT, nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    project = relationship("Project", back_populates="modules")
    questions = relationship(
        "ModuleQuestion", back_populates="module", order_by="ModuleQuestion.order",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    chapters = relationship(
        "ModuleChapter", back_populates="module", order_by="ModuleChapter.version",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_module_project_number", "project_id", "module_number"),
    )


class ModuleQuestion(Base):
    __tablename__ = "module_question"

    id = Column(Integer, primary_key=True)
    module_id = Column(Integer, ForeignKey("module.id", ondelete="CASCADE"), index=True, nullable=False)
    question = Column(Text, nullable=False)
    category = Column(String(120), nullable=False, default="General")
    order = Column(Integer, nullable=False)                              # 1-based within module
    context_source = Column(String(64), nullable=True)                  # e.g. "module-1"

    response = Column(Text, nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    audio_file_key = Column(String(255), nullable=True)
    raw_transcript = Column(Text, nullable=True)
    narrative_text = Column(Text, nullable=True)
    processing_status = Column(_enum(ProcessingStatus, "processing_status"), nullable=True)
    error_message = Column(Text, nullable=True)
    duration = Column(Float, nullable=True)                              # seconds

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    module = relationship("Module", back_populates="questions")


class ModuleChapter(Base):
    __tablename__ = "module_chapter"

    id = Column(Integer, primary_key=True)
    module_id = Column(Integer, ForeignKey("module.id", ondelete="CASCADE"), index=True, nullable=False)
    version = Column(Integer, nullable=False, default=1)                 # monotonic per module
    content = Column(Text, nullable=False, default="")                   # empty while generating
    word_count = Column(Integer, nullable=False, default=0)

    narrative_person = Column(String(32), nullable=False, default="first-person")
    narrative_tone = Column(String(32), nullable=False, default="warm")
    narrative_style = Column(String(32), nullable=False, default="descriptive")
    feedback = Column(Text, nullable=True)                               # editor note for regenerations
    error_message = Column(Text, nullable=True)

    illustration_url = Column(Text, nullable=True)                       # remote URL or data: URL
    illustration_prompt = Column(Text, nullable=True)
    illustration_generated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())

    module = relationship("Module", back_populates="chapters")

    __table_args__ = (
        UniqueConstraint("module_id", "version", name="uq_chapter_module_version"),
    )


# ---------------------------
# JOBS
# ---------------------------
class Job(Base):
    __tablename__ = "job"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("project.id", ondelete="CASCADE"), index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), index=True, nullable=False)
    type = Column(_enum(JobType, "job_type"), nullable=False)
    status = Column(_enum(JobStatus, "job_status"), default=JobStatus.PENDING, nullable=False)
    progress = Column(Integer, default=0, nullable=False)                # 0..100
    input = Column(JSON, nullable=True)
    output = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now(), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    project = relationship("Project", back_populates="jobs")
