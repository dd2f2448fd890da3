"""Shared types for AI suggestion runs.

- RawSuggestion: one entry of the model's response after parsing
- ParsedSuggestions: everything the parser extracted from one response
- AnnotationDraft: an anchored (or general) suggestion ready to be stored
- SuggestionFailure / SuggestionFailureReason: why a suggestion was dropped
- AnchoringResult: output of the anchoring protocol
- SuggestionInput: context handed to the generator
- SuggestionRunState / SuggestionRunSummary: orchestrator state and outcome
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID


class SuggestionCategory(str, Enum):
    """Whether a suggestion quotes a passage of the notes."""

    anchored = "anchored"
    general = "general"


class SuggestionFailureReason(str, Enum):
    """Why a single suggestion did not become an annotation.

    Failures are recorded in run summaries and processing logs; they are
    data, never raised.
    """

    invalid_body = "invalid_body"
    selected_text_too_short = "selected_text_too_short"
    max_retries_exceeded = "max_retries_exceeded"
    reviser_error = "reviser_error"
    malformed_entry = "malformed_entry"
    storage_error = "storage_error"


# Reasons counted as skipped (never attempted) rather than failed
SKIP_REASONS = frozenset(
    {
        SuggestionFailureReason.invalid_body,
        SuggestionFailureReason.selected_text_too_short,
        SuggestionFailureReason.malformed_entry,
    }
)


@dataclass(frozen=True)
class RawSuggestion:
    """One suggestion as the model returned it, with keys normalized.

    Attributes:
        category: anchored or general
        suggestion_type: missing_concept, rewording, factual_correction or
            structural_suggestion
        body: Suggestion text shown to the user
        selected_text: Passage the suggestion quotes (anchored only)
    """

    category: SuggestionCategory
    suggestion_type: str
    body: str
    selected_text: str | None = None


@dataclass
class SuggestionFailure:
    """A dropped suggestion and what was tried for it."""

    reason: SuggestionFailureReason
    suggestion_type: str | None = None
    attempted_spans: list[str | None] = field(default_factory=list)
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "suggestion_type": self.suggestion_type,
            "attempted_spans": list(self.attempted_spans),
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ParsedSuggestions:
    """Result of parsing one model response.

    Attributes:
        suggestions: Well-formed entries in response order
        failures: One malformed_entry failure per dropped entry
        message: The model's "no new suggestions" message, if any
    """

    suggestions: list[RawSuggestion]
    failures: list[SuggestionFailure] = field(default_factory=list)
    message: str | None = None


@dataclass(frozen=True)
class AnnotationDraft:
    """A suggestion that passed validation and anchoring."""

    kind: str
    body: str
    suggestion_type: str
    start_offset: int | None = None
    end_offset: int | None = None
    quoted_text: str | None = None
    retry_count: int = 0


@dataclass
class AnchoringResult:
    """Output of anchor_suggestions.

    Attributes:
        drafts: Suggestions ready to store, in input order
        failures: Suggestions dropped during validation or anchoring
        warnings: Human-readable notes (truncated bodies, capped suggestions)
        capped_count: Suggestions ignored because of the per-run cap
    """

    drafts: list[AnnotationDraft] = field(default_factory=list)
    failures: list[SuggestionFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    capped_count: int = 0


@dataclass(frozen=True)
class SuggestionInput:
    """Context for one suggestion request.

    Attributes:
        document_text: Plain-text notes; never truncated
        metadata: Per-type resource metadata (full values)
        existing_suggestions: Bodies of active AI annotations on the resource
        resource_id: Resource being analysed, for log context
        processing_log_id: Run the request belongs to, for log context
    """

    document_text: str
    metadata: dict[str, str] = field(default_factory=dict)
    existing_suggestions: list[str] = field(default_factory=list)
    resource_id: str | None = None
    processing_log_id: str | None = None


class SuggestionRunState(str, Enum):
    """Orchestrator states, in the order a successful run visits them."""

    idle = "idle"
    building_context = "building_context"
    awaiting_model = "awaiting_model"
    anchoring = "anchoring"
    persisting = "persisting"
    completed = "completed"
    failed = "failed"


@dataclass
class SuggestionRunSummary:
    """Caller-facing outcome of one suggestion run.

    status is completed whenever the run got through to the end, even if
    every suggestion was dropped; log_status is what the processing log
    recorded (completed, partial_success or failed).
    """

    status: str
    log_status: str
    processing_log_id: UUID
    created: int = 0
    skipped: int = 0
    failed: int = 0
    annotation_ids: list[UUID] = field(default_factory=list)
    failures: list[SuggestionFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_code: str | None = None
