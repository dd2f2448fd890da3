"""Suggestion run orchestration.

One run: build context from the resource, ask the model once, anchor what
comes back, store each anchored suggestion, and record the outcome in the
processing log. States (logged on every transition):

    idle -> building_context -> awaiting_model -> anchoring -> persisting
         -> completed | failed

Per-suggestion problems are recorded as failures and never abort the run.
The run itself fails only when the notes are empty, the model call errors,
or the response is unusable. Cancellation marks the log failed, persists
nothing, and re-raises.
"""

import asyncio
import time
from functools import partial
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from marginalia.config import Settings
from marginalia.db.models import AnnotationStatus, ProcessingLogStatus
from marginalia.errors import ApiError, ApiErrorCode
from marginalia.logging import get_logger, set_resource_context, set_run_id
from marginalia.schemas.suggestions import SuggestionFailureOut, SuggestionRunOut
from marginalia.services.annotations import create_ai_annotation, list_annotations
from marginalia.services.llm.errors import LLMError
from marginalia.services.processing_logs import create_processing_log, finish_processing_log
from marginalia.services.redact import hash_text
from marginalia.services.resources import (
    get_ai_metadata,
    get_plain_text,
    get_resource_for_owner_or_404,
)
from marginalia.services.suggestions.anchoring import anchor_suggestions
from marginalia.services.suggestions.generator import SuggestionGenerator
from marginalia.services.suggestions.parsing import SuggestionParseError, parse_suggestions
from marginalia.services.suggestions.types import (
    SKIP_REASONS,
    AnchoringResult,
    ParsedSuggestions,
    SuggestionFailure,
    SuggestionFailureReason,
    SuggestionInput,
    SuggestionRunState,
    SuggestionRunSummary,
)

logger = get_logger(__name__)


class _RunTracker:
    """Current state of one run plus elapsed time."""

    def __init__(self):
        self.state = SuggestionRunState.idle
        self._started = time.monotonic()

    def to(self, state: SuggestionRunState) -> None:
        logger.info("suggestion_run.state", from_state=self.state.value, to_state=state.value)
        self.state = state

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)


def derive_log_status(created: int, failures: int) -> ProcessingLogStatus:
    """Terminal log status for a run that reached the end.

    completed when nothing was dropped, partial_success when some suggestions
    were stored and some dropped, failed when something was dropped and
    nothing stored.
    """
    if not failures:
        return ProcessingLogStatus.completed
    if created:
        return ProcessingLogStatus.partial_success
    return ProcessingLogStatus.failed


def _fail_run(
    db: Session,
    tracker: _RunTracker,
    log_id: UUID,
    error_code: ApiErrorCode,
    error_details: dict[str, Any],
    failures: list[SuggestionFailure] | None = None,
) -> SuggestionRunSummary:
    tracker.to(SuggestionRunState.failed)
    finish_processing_log(
        db,
        log_id,
        ProcessingLogStatus.failed,
        error_details={"code": error_code.value, **error_details},
        processing_time_ms=tracker.elapsed_ms,
    )
    failures = failures or []
    return SuggestionRunSummary(
        status=SuggestionRunState.failed.value,
        log_status=ProcessingLogStatus.failed.value,
        processing_log_id=log_id,
        skipped=sum(1 for f in failures if f.reason in SKIP_REASONS),
        failed=sum(1 for f in failures if f.reason not in SKIP_REASONS),
        failures=failures,
        error_code=error_code.value,
    )


async def run_suggestions(
    db: Session,
    viewer_id: UUID,
    resource_id: UUID,
    generator: SuggestionGenerator,
    settings: Settings,
    parent_log_id: UUID | None = None,
) -> SuggestionRunSummary:
    """Run the AI suggestion pipeline once for a resource.

    Args:
        db: Database session.
        viewer_id: Owner of the resource; annotations are created as theirs.
        resource_id: Resource whose notes are analysed.
        generator: Model access (generate + revise).
        settings: Limits for anchoring and prompting.
        parent_log_id: Processing log of the run this one retries.

    Returns:
        SuggestionRunSummary. Failed runs are returned, not raised.

    Raises:
        NotFoundError: If the resource (or parent log) isn't the viewer's.
        asyncio.CancelledError: If the run is cancelled while awaiting the model.
    """
    tracker = _RunTracker()

    # 1. Owner check, then open the audit row
    resource = get_resource_for_owner_or_404(db, viewer_id, resource_id)
    tracker.to(SuggestionRunState.building_context)

    text = get_plain_text(resource)
    metadata = get_ai_metadata(resource)
    existing = [
        a.body
        for a in list_annotations(
            db,
            viewer_id,
            resource_id,
            status=AnnotationStatus.active.value,
            created_by_ai=True,
        )
        if a.thread_root_id is None
    ]

    log = create_processing_log(
        db,
        viewer_id,
        resource_id,
        model_used=generator.model_name,
        input_data={
            "resource_type": resource.type,
            "notes_chars": len(text),
            "notes_sha256": hash_text(text),
            "metadata_fields": sorted(metadata),
            "metadata_chars": sum(len(v) for v in metadata.values()),
            "existing_suggestions": len(existing),
        },
        parent_log_id=parent_log_id,
    )
    log_id = log.id
    set_resource_context(str(resource_id))
    set_run_id(str(log_id))

    if not text.strip():
        return _fail_run(
            db,
            tracker,
            log_id,
            ApiErrorCode.E_NOTES_EMPTY,
            {"stage": SuggestionRunState.building_context.value},
        )

    inp = SuggestionInput(
        document_text=text,
        metadata=metadata,
        existing_suggestions=existing,
        resource_id=str(resource_id),
        processing_log_id=str(log_id),
    )

    # 2-3. Model call and anchoring; nothing is written until both finish
    try:
        tracker.to(SuggestionRunState.awaiting_model)
        try:
            raw = await generator.generate(inp)
        except LLMError as e:
            return _fail_run(
                db,
                tracker,
                log_id,
                ApiErrorCode.E_SUGGESTION_RUN_FAILED,
                {"stage": SuggestionRunState.awaiting_model.value, **e.as_details()},
            )

        try:
            parsed: ParsedSuggestions = parse_suggestions(raw)
        except SuggestionParseError as e:
            logger.warning("suggestion_run.unparsable_response", output_chars=len(raw or ""))
            return _fail_run(
                db,
                tracker,
                log_id,
                ApiErrorCode.E_SUGGESTION_RUN_FAILED,
                {"stage": "parsing", "detail": str(e)},
            )

        if parsed.failures and not parsed.suggestions:
            return _fail_run(
                db,
                tracker,
                log_id,
                ApiErrorCode.E_SUGGESTION_RUN_FAILED,
                {
                    "stage": "parsing",
                    "detail": "no well-formed suggestions",
                    "failures": [f.to_dict() for f in parsed.failures],
                },
                failures=list(parsed.failures),
            )

        tracker.to(SuggestionRunState.anchoring)
        anchoring: AnchoringResult = await anchor_suggestions(
            parsed.suggestions,
            text,
            partial(generator.revise, inp),
            max_body_chars=settings.suggestion_max_body_chars,
            min_selected_chars=settings.suggestion_min_selected_text_chars,
            max_attempts=settings.suggestion_max_attempts,
            max_per_run=settings.suggestion_max_per_run,
        )
    except asyncio.CancelledError:
        interrupted = tracker.state.value
        logger.warning("suggestion_run.cancelled", state=interrupted)
        tracker.to(SuggestionRunState.failed)
        finish_processing_log(
            db,
            log_id,
            ProcessingLogStatus.failed,
            error_details={"stage": "cancelled", "state": interrupted},
            processing_time_ms=tracker.elapsed_ms,
        )
        raise

    # 4. Each draft stands alone; one failed write doesn't stop the rest
    tracker.to(SuggestionRunState.persisting)
    failures = [*parsed.failures, *anchoring.failures]
    annotation_ids: list[UUID] = []
    for draft in anchoring.drafts:
        try:
            annotation = create_ai_annotation(
                db,
                viewer_id,
                resource_id,
                kind=draft.kind,
                body=draft.body,
                start_offset=draft.start_offset,
                end_offset=draft.end_offset,
                quoted_text=draft.quoted_text,
                suggestion_type=draft.suggestion_type,
                processing_log_id=log_id,
                retry_count=draft.retry_count,
            )
        except ApiError as e:
            logger.error("suggestion_run.store_failed", error_code=e.code.value)
            failures.append(
                SuggestionFailure(
                    reason=SuggestionFailureReason.storage_error,
                    suggestion_type=draft.suggestion_type,
                    attempted_spans=[draft.quoted_text],
                    detail=e.code.value,
                )
            )
            continue
        annotation_ids.append(annotation.id)

    # 5. Close the audit row exactly once
    warnings = list(anchoring.warnings)
    if not parsed.suggestions and parsed.message:
        warnings.append(parsed.message)

    created = len(annotation_ids)
    skipped = anchoring.capped_count + sum(1 for f in failures if f.reason in SKIP_REASONS)
    failed = sum(1 for f in failures if f.reason not in SKIP_REASONS)
    log_status = derive_log_status(created, len(failures))

    finish_processing_log(
        db,
        log_id,
        log_status,
        output_data={
            "received": len(parsed.suggestions) + len(parsed.failures),
            "created": created,
            "skipped": skipped,
            "failed": failed,
            "capped": anchoring.capped_count,
            "annotation_ids": [str(a) for a in annotation_ids],
            "retries": sum(d.retry_count for d in anchoring.drafts),
            "message": parsed.message,
        },
        error_details={"failures": [f.to_dict() for f in failures]} if failures else None,
        processing_time_ms=tracker.elapsed_ms,
    )
    tracker.to(SuggestionRunState.completed)

    logger.info(
        "suggestion_run.finished",
        log_status=log_status.value,
        created=created,
        skipped=skipped,
        failed=failed,
    )
    return SuggestionRunSummary(
        status=SuggestionRunState.completed.value,
        log_status=log_status.value,
        processing_log_id=log_id,
        created=created,
        skipped=skipped,
        failed=failed,
        annotation_ids=annotation_ids,
        failures=failures,
        warnings=warnings,
    )


def summary_to_out(summary: SuggestionRunSummary) -> SuggestionRunOut:
    return SuggestionRunOut(
        status=summary.status,
        log_status=summary.log_status,
        processing_log_id=summary.processing_log_id,
        created=summary.created,
        skipped=summary.skipped,
        failed=summary.failed,
        annotation_ids=summary.annotation_ids,
        failures=[SuggestionFailureOut(**f.to_dict()) for f in summary.failures],
        warnings=summary.warnings,
        error_code=summary.error_code,
    )
