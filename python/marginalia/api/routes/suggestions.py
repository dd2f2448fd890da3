"""Suggestion run and processing log routes."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marginalia.api.deps import get_db, get_settings_dep, get_suggestion_generator
from marginalia.auth.middleware import Viewer, get_viewer
from marginalia.config import Settings
from marginalia.errors import ApiErrorCode, SuggestionRunError
from marginalia.responses import success_response
from marginalia.schemas.suggestions import SuggestionRunRequest
from marginalia.services import processing_logs as processing_logs_service
from marginalia.services.suggestions import SuggestionGenerator, run_suggestions, summary_to_out

router = APIRouter(tags=["suggestions"])


@router.post("/resources/{resource_id}/suggestion-runs")
async def create_suggestion_run(
    resource_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    generator: Annotated[SuggestionGenerator, Depends(get_suggestion_generator)],
    settings: Annotated[Settings, Depends(get_settings_dep)],
    request: SuggestionRunRequest | None = None,
) -> dict:
    """Run AI suggestions over the resource's notes.

    Runs that get through to the end return 200 with counts, including runs
    where every suggestion was dropped.

    Errors:
        E_RESOURCE_NOT_FOUND (404): Resource doesn't exist or isn't the viewer's.
        E_NOTES_EMPTY (400): The notes have no text to analyse.
        E_SUGGESTION_RUN_FAILED (502): The model call failed or its response was unusable.
    """
    summary = await run_suggestions(
        db,
        viewer.user_id,
        resource_id,
        generator,
        settings,
        parent_log_id=request.parent_log_id if request else None,
    )
    if summary.error_code is not None:
        raise SuggestionRunError(ApiErrorCode(summary.error_code), summary.processing_log_id)
    return success_response(summary_to_out(summary).model_dump(mode="json"))


@router.get("/processing-logs/{log_id}")
def get_processing_log(
    log_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Get the audit row of one suggestion run.

    Errors:
        E_PROCESSING_LOG_NOT_FOUND (404): Log doesn't exist or isn't the viewer's.
    """
    result = processing_logs_service.get_processing_log(
        db=db, viewer_id=viewer.user_id, log_id=log_id
    )
    return success_response(result.model_dump(mode="json"))
