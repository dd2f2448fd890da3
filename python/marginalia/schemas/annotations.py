"""Annotation Pydantic schemas.

Contains request and response models for annotation, thread and text-change
endpoints. Offsets are half-open [start_offset, end_offset) character indexes
into the plain-text view of a resource's notes.
"""

from datetime import UTC, datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

ANNOTATION_KINDS = Literal["anchored", "general"]
ANNOTATION_STATUSES = Literal["active", "resolved"]


# =============================================================================
# Output Schemas
# =============================================================================


class AnnotationOut(BaseModel):
    """Response schema for an annotation (root or reply).

    Anchor fields are null for general annotations and for every reply.
    AI provenance fields are null for user-written annotations.
    """

    id: UUID
    resource_id: UUID
    owner_id: UUID
    kind: ANNOTATION_KINDS
    status: ANNOTATION_STATUSES
    body: str
    start_offset: int | None = None
    end_offset: int | None = None
    quoted_text: str | None = None
    is_stale: bool = False
    original_quoted_text: str | None = None
    thread_root_id: UUID | None = None
    thread_prev_id: UUID | None = None
    created_by_ai: bool = False
    ai_suggestion_type: str | None = None
    processing_log_id: UUID | None = None
    retry_count: int | None = None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "updated_at", "resolved_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class ThreadOut(BaseModel):
    """A root annotation with its replies ordered by (created_at, id)."""

    root: AnnotationOut
    replies: list[AnnotationOut] = Field(default_factory=list)


class TextChangeOut(BaseModel):
    """Anchors rewritten after one observed edit."""

    updated: list[AnnotationOut]
    stale_count: int


# =============================================================================
# Request Schemas
# =============================================================================


class CreateAnnotationRequest(BaseModel):
    """Request schema for creating a root annotation.

    Anchored annotations send offsets plus the quoted text they expect at that
    range; the server checks the quote against the current notes.
    """

    kind: ANNOTATION_KINDS = Field(..., description="anchored or general")
    body: str = Field(..., min_length=1, description="Annotation text")
    start_offset: int | None = Field(None, ge=0, description="Start offset (inclusive)")
    end_offset: int | None = Field(None, gt=0, description="End offset (exclusive)")
    quoted_text: str | None = Field(None, min_length=1, description="Text at [start, end)")


class CreateReplyRequest(BaseModel):
    """Request schema for appending a reply to a thread."""

    body: str = Field(..., min_length=1, description="Reply text")


class UpdateAnnotationRequest(BaseModel):
    """Request schema for updating an annotation.

    All fields are optional. Anchors are never edited directly; they only
    move with the notes text.
    """

    body: str | None = Field(None, min_length=1, description="New annotation text")
    status: ANNOTATION_STATUSES | None = Field(None, description="New status")


class TextChangeRequest(BaseModel):
    """One observed edit of a resource's notes, as two markdown snapshots."""

    old_text: str = Field(..., description="Notes before the edit")
    new_text: str = Field(..., description="Notes after the edit")
