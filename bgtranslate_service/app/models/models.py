import enum
from datetime import datetime, UTC
from typing import Optional
from sqlalchemy import String, DateTime, Text, Integer, Enum, Boolean, JSON, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from ..database import Base
from ..utils import gen_uuid


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobType(str, enum.Enum):
    i18n = "i18n"
    cms = "cms"
    training = "training"
    knowledge = "knowledge"
    healthy_knowledge = "healthy_knowledge"


class JobMode(str, enum.Enum):
    missing = "missing"
    all = "all"


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed, JobStatus.cancelled})


class TranslationJob(Base):
    __tablename__ = "translation_jobs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)  # UUID
    job_type: Mapped[JobType] = mapped_column(Enum(JobType), nullable=False, default=JobType.i18n)
    source_language: Mapped[str] = mapped_column(String(10), nullable=False)
    target_language: Mapped[str] = mapped_column(String(10), nullable=False)
    mode: Mapped[JobMode] = mapped_column(Enum(JobMode), nullable=False, default=JobMode.missing)
    scope_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[JobStatus] = mapped_column(Enum(JobStatus), nullable=False, default=JobStatus.pending)
    total_keys: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_keys: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Candidate identities, written once together with total_keys
    candidates: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class Language(Base):
    __tablename__ = "i18n_languages"
    code: Mapped[str] = mapped_column(String(10), primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    native_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class I18nTranslation(Base):
    __tablename__ = "i18n_translations"
    __table_args__ = (UniqueConstraint("language_code", "namespace", "key"),)
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    namespace: Mapped[str] = mapped_column(String(64), nullable=False, default="common")
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


# --- Base content (written in BASE_LANGUAGE) ---

class CmsSection(Base):
    __tablename__ = "cms_sections"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    page_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    collapsible_header: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class CmsItem(Base):
    __tablename__ = "cms_items"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    page_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    section_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default="text")
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # List of cell dicts; only content/button_text are translatable
    cells: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class TrainingModule(Base):
    __tablename__ = "training_modules"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class TrainingLesson(Base):
    __tablename__ = "training_lessons"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    module_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_alt_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class KnowledgeResource(Base):
    __tablename__ = "knowledge_resources"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_of_use: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class HealthyKnowledge(Base):
    __tablename__ = "healthy_knowledge"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# --- Per-language translations of base content ---

class _TranslationColumns:
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=gen_uuid)
    language_code: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class CmsSectionTranslation(_TranslationColumns, Base):
    __tablename__ = "cms_section_translations"
    __table_args__ = (UniqueConstraint("section_id", "language_code"),)
    section_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    collapsible_header: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class CmsItemTranslation(_TranslationColumns, Base):
    __tablename__ = "cms_item_translations"
    __table_args__ = (UniqueConstraint("item_id", "language_code"),)
    item_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cells: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)


class TrainingModuleTranslation(_TranslationColumns, Base):
    __tablename__ = "training_module_translations"
    __table_args__ = (UniqueConstraint("module_id", "language_code"),)
    module_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class TrainingLessonTranslation(_TranslationColumns, Base):
    __tablename__ = "training_lesson_translations"
    __table_args__ = (UniqueConstraint("lesson_id", "language_code"),)
    lesson_id: Mapped[str] = mapped_column(String(36), nullable=False)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_alt_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class KnowledgeResourceTranslation(_TranslationColumns, Base):
    __tablename__ = "knowledge_resource_translations"
    __table_args__ = (UniqueConstraint("resource_id", "language_code"),)
    resource_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    context_of_use: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class HealthyKnowledgeTranslation(_TranslationColumns, Base):
    __tablename__ = "healthy_knowledge_translations"
    __table_args__ = (UniqueConstraint("item_id", "language_code"),)
    item_id: Mapped[str] = mapped_column(String(36), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    text_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
