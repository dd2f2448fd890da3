"""SQLAlchemy ORM models for Marginalia.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Enums are Python string enums stored as TEXT guarded by CHECK constraints,
and column types are portable so the same models run on PostgreSQL and on an
embedded SQLite file.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONPayload = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Timezone-aware current time used for all timestamp defaults."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class AnnotationKind(str, PyEnum):
    """Whether an annotation is bound to a span of the document."""

    anchored = "anchored"
    general = "general"


class AnnotationStatus(str, PyEnum):
    """Annotation lifecycle states."""

    active = "active"
    resolved = "resolved"


class SuggestionType(str, PyEnum):
    """Kinds of change an AI suggestion proposes."""

    missing_concept = "missing_concept"
    rewording = "rewording"
    factual_correction = "factual_correction"
    structural_suggestion = "structural_suggestion"


class ProcessingLogStatus(str, PyEnum):
    """Suggestion run audit states.

    States:
        processing: Run started, not yet finished
        completed: Every suggestion was created
        partial_success: Some suggestions created, some dropped
        failed: Model error, unusable response, cancellation, or nothing created
    """

    processing = "processing"
    completed = "completed"
    failed = "failed"
    partial_success = "partial_success"


class ResourceType(str, PyEnum):
    """Resource types; decides which metadata fields reach the model."""

    short_video = "short-video"
    video = "video"
    book = "book"
    article = "article"
    podcast = "podcast"
    other = "other"


# =============================================================================
# Models
# =============================================================================


class Resource(Base):
    """A user-owned resource with free-text markdown notes.

    Annotations anchor into the plain-text view of `notes`; `details` holds the
    per-type metadata (description, author, transcript, ...).
    """

    __tablename__ = "resources"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    type: Mapped[str] = mapped_column(Text, nullable=False, default=ResourceType.other.value)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "type IN ('short-video','video','book','article','podcast','other')",
            name="ck_resources_type",
        ),
    )


class Annotation(Base):
    """Annotation model - a comment or reply on a resource's notes.

    Roots (thread_root_id NULL) may be anchored to a half-open
    [start_offset, end_offset) range over the plain-text notes. Replies are
    always general and form a chronological chain through thread_prev_id,
    starting at the root.

    quoted_text follows live edits; original_quoted_text is set once, the
    first time the span drifts below the staleness threshold.
    """

    __tablename__ = "annotations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    resource_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("resources.id", ondelete="CASCADE"),
        nullable=False,
    )
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=AnnotationStatus.active.value
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)

    # Anchor (roots with kind=anchored only)
    start_offset: Mapped[int | None] = mapped_column(Integer, nullable=True)
    end_offset: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quoted_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_stale: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    original_quoted_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Thread chain
    thread_root_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("annotations.id", ondelete="CASCADE"),
        nullable=True,
    )
    thread_prev_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("annotations.id", ondelete="SET NULL"),
        nullable=True,
    )

    # AI provenance
    created_by_ai: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    ai_suggestion_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_log_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("processing_logs.id", ondelete="SET NULL"),
        nullable=True,
    )
    retry_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("kind IN ('anchored','general')", name="ck_annotations_kind"),
        CheckConstraint("status IN ('active','resolved')", name="ck_annotations_status"),
        CheckConstraint("length(trim(body)) > 0", name="ck_annotations_body_not_blank"),
        CheckConstraint(
            "(kind = 'general' AND start_offset IS NULL AND end_offset IS NULL "
            "AND quoted_text IS NULL) OR "
            "(kind = 'anchored' AND start_offset IS NOT NULL AND end_offset IS NOT NULL "
            "AND quoted_text IS NOT NULL AND start_offset >= 0 AND end_offset > start_offset)",
            name="ck_annotations_anchor_fields",
        ),
        CheckConstraint(
            "thread_root_id IS NULL OR kind = 'general'",
            name="ck_annotations_reply_unanchored",
        ),
        CheckConstraint(
            "retry_count IS NULL OR retry_count >= 0",
            name="ck_annotations_retry_count",
        ),
        Index("ix_annotations_resource_status", "resource_id", "status"),
        Index("ix_annotations_thread_root_created", "thread_root_id", "created_at"),
        Index(
            "ix_annotations_stale",
            "resource_id",
            postgresql_where=text("is_stale"),
            sqlite_where=text("is_stale = 1"),
        ),
    )


class ProcessingLog(Base):
    """Audit row for one suggestion run attempt.

    Created with status=processing when the run starts and finished exactly
    once. Rows are never deleted; parent_log_id links a re-run to the run it
    retries.
    """

    __tablename__ = "processing_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    parent_log_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("processing_logs.id", ondelete="SET NULL"),
        nullable=True,
    )
    owner_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    resource_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("resources.id", ondelete="SET NULL"),
        nullable=True,
    )
    action_type: Mapped[str] = mapped_column(Text, nullable=False, default="suggestion_run")
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=ProcessingLogStatus.processing.value
    )
    model_used: Mapped[str | None] = mapped_column(Text, nullable=True)
    input_data: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    output_data: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    error_details: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processing','completed','failed','partial_success')",
            name="ck_processing_logs_status",
        ),
        CheckConstraint("attempt_number >= 1", name="ck_processing_logs_attempt_number"),
        Index("ix_processing_logs_resource_created", "resource_id", "created_at"),
    )
