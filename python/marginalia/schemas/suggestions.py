"""Suggestion run and processing log Pydantic schemas."""

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SuggestionRunRequest(BaseModel):
    """Request schema for starting a suggestion run.

    parent_log_id links a re-run to the run it retries.
    """

    parent_log_id: UUID | None = Field(None, description="Processing log of the run being retried")


class SuggestionFailureOut(BaseModel):
    """One dropped suggestion."""

    reason: str
    suggestion_type: str | None = None
    attempted_spans: list[str | None] = Field(default_factory=list)
    detail: str | None = None


class SuggestionRunOut(BaseModel):
    """Counts and outcome of one suggestion run.

    status is the caller-facing outcome (completed covers partial success);
    log_status is what the processing log recorded.
    """

    status: Literal["completed", "failed"]
    log_status: Literal["completed", "partial_success", "failed"]
    processing_log_id: UUID
    created: int
    skipped: int
    failed: int
    annotation_ids: list[UUID] = Field(default_factory=list)
    failures: list[SuggestionFailureOut] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    error_code: str | None = None


class ProcessingLogOut(BaseModel):
    """Response schema for a processing log row."""

    id: UUID
    parent_log_id: UUID | None = None
    resource_id: UUID | None = None
    action_type: str
    attempt_number: int
    status: str
    model_used: str | None = None
    input_data: dict[str, Any] | None = None
    output_data: dict[str, Any] | None = None
    error_details: dict[str, Any] | None = None
    processing_time_ms: int | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)
