"""Annotation API routes.

Route handlers for annotation threads and anchor maintenance.
Routes are transport-only: each calls exactly one service function.

- Response envelope: {"data": ...}
- Error envelope: {"error": {"code": "...", "message": "...", "request_id": "..."}}
"""

from typing import Annotated, Literal
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from marginalia.api.deps import get_db, get_settings_dep
from marginalia.auth.middleware import Viewer, get_viewer
from marginalia.config import Settings
from marginalia.responses import success_response
from marginalia.schemas.annotations import (
    CreateAnnotationRequest,
    CreateReplyRequest,
    TextChangeRequest,
    UpdateAnnotationRequest,
)
from marginalia.services import anchor_sync as anchor_sync_service
from marginalia.services import annotations as annotations_service

router = APIRouter(tags=["annotations"])


# =============================================================================
# Resource-scoped Endpoints
# =============================================================================


@router.get("/resources/{resource_id}/annotations")
def list_annotations(
    resource_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    status: Annotated[Literal["active", "resolved"] | None, Query()] = None,
) -> dict:
    """List annotation threads on a resource.

    Roots are ordered by anchor position, general annotations last.

    Errors:
        E_RESOURCE_NOT_FOUND (404): Resource doesn't exist or isn't the viewer's.
    """
    result = annotations_service.list_threads(
        db=db, viewer_id=viewer.user_id, resource_id=resource_id, status=status
    )
    return success_response({"threads": [t.model_dump(mode="json") for t in result]})


@router.post("/resources/{resource_id}/annotations", status_code=201)
def create_annotation(
    resource_id: UUID,
    request: CreateAnnotationRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Create a root annotation (anchored or general).

    Errors:
        E_RESOURCE_NOT_FOUND (404): Resource doesn't exist or isn't the viewer's.
        E_ANNOTATION_INVALID_ANCHOR (400): Offsets or quoted_text don't match the notes.
    """
    result = annotations_service.create_annotation(
        db=db, viewer_id=viewer.user_id, resource_id=resource_id, req=request
    )
    return success_response(result.model_dump(mode="json"))


@router.post("/resources/{resource_id}/text-changes")
def apply_text_change(
    resource_id: UUID,
    request: TextChangeRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings_dep)],
) -> dict:
    """Shift and re-check stored anchors for one observed notes edit.

    The body carries the notes before and after the edit; the notes
    themselves are not saved here.
    """
    result = anchor_sync_service.apply_text_change_to_resource(
        db=db,
        viewer_id=viewer.user_id,
        resource_id=resource_id,
        old_text=request.old_text,
        new_text=request.new_text,
        threshold=settings.stale_similarity_threshold,
    )
    return success_response(result.model_dump(mode="json"))


# =============================================================================
# Annotation Endpoints
# =============================================================================


@router.get("/annotations/{annotation_id}")
def get_thread(
    annotation_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Get the thread containing an annotation (root or reply).

    Errors:
        E_ANNOTATION_NOT_FOUND (404): Annotation doesn't exist or isn't the viewer's.
    """
    result = annotations_service.get_thread(
        db=db, viewer_id=viewer.user_id, annotation_id=annotation_id
    )
    return success_response(result.model_dump(mode="json"))


@router.patch("/annotations/{annotation_id}")
def update_annotation(
    annotation_id: UUID,
    request: UpdateAnnotationRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Update an annotation's body and/or status."""
    result = annotations_service.update_annotation(
        db=db, viewer_id=viewer.user_id, annotation_id=annotation_id, req=request
    )
    return success_response(result.model_dump(mode="json"))


@router.post("/annotations/{annotation_id}/resolve")
def resolve_annotation(
    annotation_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Mark an annotation resolved."""
    result = annotations_service.resolve_annotation(
        db=db, viewer_id=viewer.user_id, annotation_id=annotation_id
    )
    return success_response(result.model_dump(mode="json"))


@router.post("/annotations/{annotation_id}/reopen")
def reopen_annotation(
    annotation_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Mark a resolved annotation active again."""
    result = annotations_service.reopen_annotation(
        db=db, viewer_id=viewer.user_id, annotation_id=annotation_id
    )
    return success_response(result.model_dump(mode="json"))


@router.post("/annotations/{annotation_id}/replies", status_code=201)
def add_reply(
    annotation_id: UUID,
    request: CreateReplyRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Append a reply to the end of the annotation's thread."""
    result = annotations_service.add_reply(
        db=db, viewer_id=viewer.user_id, annotation_id=annotation_id, req=request
    )
    return success_response(result.model_dump(mode="json"))


@router.delete("/annotations/{annotation_id}", status_code=204)
def delete_annotation(
    annotation_id: UUID,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> Response:
    """Delete an annotation.

    Deleting a root removes its whole thread. A reply can only be deleted
    once resolved.

    Errors:
        E_ANNOTATION_NOT_FOUND (404): Annotation doesn't exist or isn't the viewer's.
        E_REPLY_NOT_RESOLVED (409): Reply is still active.
    """
    annotations_service.delete_annotation(
        db=db, viewer_id=viewer.user_id, annotation_id=annotation_id
    )
    return Response(status_code=204)
