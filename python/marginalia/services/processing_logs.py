"""Processing log service layer.

The processing log is an append-only audit trail of suggestion runs: a row is
created when a run starts and finished exactly once when it ends. There is no
delete operation.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from marginalia.db.models import ProcessingLog, ProcessingLogStatus
from marginalia.errors import ApiErrorCode, NotFoundError
from marginalia.logging import get_logger
from marginalia.schemas.suggestions import ProcessingLogOut

logger = get_logger(__name__)

SUGGESTION_RUN_ACTION = "suggestion_run"


def create_processing_log(
    db: Session,
    owner_id: UUID,
    resource_id: UUID,
    model_used: str | None,
    input_data: dict[str, Any] | None = None,
    parent_log_id: UUID | None = None,
) -> ProcessingLog:
    """Insert a processing row for a run that is starting.

    A re-run (parent_log_id set) takes the next attempt number in the chain.
    """
    attempt_number = 1
    if parent_log_id is not None:
        parent = db.get(ProcessingLog, parent_log_id)
        if parent is None or parent.owner_id != owner_id:
            raise NotFoundError(
                ApiErrorCode.E_PROCESSING_LOG_NOT_FOUND, "Processing log not found"
            )
        attempt_number = parent.attempt_number + 1

    log = ProcessingLog(
        parent_log_id=parent_log_id,
        owner_id=owner_id,
        resource_id=resource_id,
        action_type=SUGGESTION_RUN_ACTION,
        attempt_number=attempt_number,
        status=ProcessingLogStatus.processing.value,
        model_used=model_used,
        input_data=input_data,
    )
    db.add(log)
    db.commit()

    logger.info(
        "processing_log.created",
        processing_log_id=str(log.id),
        attempt_number=attempt_number,
    )
    return log


def finish_processing_log(
    db: Session,
    log_id: UUID,
    status: ProcessingLogStatus,
    output_data: dict[str, Any] | None = None,
    error_details: dict[str, Any] | None = None,
    processing_time_ms: int | None = None,
) -> ProcessingLog:
    """Record the terminal status of a run.

    Raises:
        ValueError: If asked to finish with the non-terminal processing status.
    """
    if status == ProcessingLogStatus.processing:
        raise ValueError("A processing log must finish with a terminal status")

    log = db.get(ProcessingLog, log_id)
    if log is None:
        raise NotFoundError(ApiErrorCode.E_PROCESSING_LOG_NOT_FOUND, "Processing log not found")

    now = datetime.now(UTC)
    log.status = status.value
    log.output_data = output_data
    log.error_details = error_details
    log.processing_time_ms = processing_time_ms
    log.updated_at = now
    log.completed_at = now
    db.commit()

    logger.info(
        "processing_log.finished",
        processing_log_id=str(log.id),
        status=status.value,
        processing_time_ms=processing_time_ms,
    )
    return log


def get_processing_log(db: Session, viewer_id: UUID, log_id: UUID) -> ProcessingLogOut:
    """Fetch a processing log owned by the viewer.

    Raises:
        NotFoundError(E_PROCESSING_LOG_NOT_FOUND): If missing or not owned.
    """
    log = db.get(ProcessingLog, log_id)
    if log is None or log.owner_id != viewer_id:
        raise NotFoundError(ApiErrorCode.E_PROCESSING_LOG_NOT_FOUND, "Processing log not found")
    return ProcessingLogOut.model_validate(log)
