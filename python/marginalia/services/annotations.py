"""Annotation service layer.

Implements annotation and thread CRUD for resource notes.

All operations:
- Enforce owner-only access; a non-owner gets the same 404 as a missing row
- Keep anchors valid: only roots may be anchored, and an anchored root's
  quoted_text must match the notes at creation time
- Maintain the reply chain (thread_prev_id) on insert and delete

Service functions correspond 1:1 with route handlers, except the engine-facing
helpers (list_annotations, create_ai_annotation, update_anchor_state) used by
the suggestion run and anchor sync.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from marginalia.db.models import Annotation, AnnotationKind, AnnotationStatus
from marginalia.db.session import transaction
from marginalia.errors import (
    ApiError,
    ApiErrorCode,
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from marginalia.logging import get_logger
from marginalia.schemas.annotations import (
    AnnotationOut,
    CreateAnnotationRequest,
    CreateReplyRequest,
    ThreadOut,
    UpdateAnnotationRequest,
)
from marginalia.services.resources import get_plain_text, get_resource_for_owner_or_404
from marginalia.services.text_tracking import ANCHOR_FIELDS
from marginalia.services.threads import (
    Thread,
    build_thread,
    chronological_key,
    ensure_utc,
    group_threads,
    relink_targets,
    resolve_tail_id,
    validate_anchor_fields,
)

logger = get_logger(__name__)

# Smallest step used to keep reply timestamps strictly increasing in a thread
_TICK = timedelta(microseconds=1)


# =============================================================================
# Shared Helpers
# =============================================================================


def map_integrity_error(e: IntegrityError) -> ApiError:
    """Map IntegrityError to appropriate ApiError based on constraint name."""
    constraint_name = None

    if hasattr(e.orig, "diag") and hasattr(e.orig.diag, "constraint_name"):
        constraint_name = e.orig.diag.constraint_name
    else:
        # SQLite only reports the constraint in the message
        msg = str(e.orig) if e.orig else str(e)
        for name in (
            "ck_annotations_anchor_fields",
            "ck_annotations_reply_unanchored",
            "ck_annotations_body_not_blank",
            "ck_annotations_kind",
            "ck_annotations_status",
        ):
            if name in msg:
                constraint_name = name
                break

    if constraint_name == "ck_annotations_anchor_fields":
        return ApiError(ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR, "Invalid annotation anchor")
    if constraint_name == "ck_annotations_reply_unanchored":
        return ApiError(ApiErrorCode.E_REPLY_CANNOT_ANCHOR, "Replies cannot be anchored to text")
    if constraint_name in (
        "ck_annotations_body_not_blank",
        "ck_annotations_kind",
        "ck_annotations_status",
    ):
        return ApiError(ApiErrorCode.E_INVALID_REQUEST, "Invalid annotation data")

    logger.error("unknown_integrity_error", constraint=constraint_name, error=str(e))
    return ApiError(ApiErrorCode.E_STORAGE_ERROR, "Database constraint violation")


def _commit_or_raise(db: Session) -> None:
    try:
        db.flush()
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise map_integrity_error(e) from e


def _require_body(body: str) -> str:
    if not body or not body.strip():
        raise InvalidRequestError(ApiErrorCode.E_INVALID_REQUEST, "Body must not be blank")
    return body


def get_annotation_for_owner_or_404(
    db: Session, viewer_id: UUID, annotation_id: UUID
) -> Annotation:
    """Load an annotation owned by the viewer.

    Raises:
        NotFoundError(E_ANNOTATION_NOT_FOUND): If missing or owned by someone else.
    """
    annotation = db.get(Annotation, annotation_id)
    if annotation is None or annotation.owner_id != viewer_id:
        raise NotFoundError(ApiErrorCode.E_ANNOTATION_NOT_FOUND, "Annotation not found")
    return annotation


def _load_replies(db: Session, root_id: UUID) -> list[Annotation]:
    return list(
        db.scalars(
            select(Annotation)
            .where(Annotation.thread_root_id == root_id)
            .order_by(Annotation.created_at, Annotation.id)
        )
    )


def _get_root(db: Session, annotation: Annotation) -> Annotation:
    if annotation.thread_root_id is None:
        return annotation
    root = db.get(Annotation, annotation.thread_root_id)
    if root is None:
        raise NotFoundError(ApiErrorCode.E_ANNOTATION_NOT_FOUND, "Annotation not found")
    return root


def _annotation_to_out(annotation: Annotation) -> AnnotationOut:
    return AnnotationOut.model_validate(annotation)


def _thread_to_out(thread: Thread) -> ThreadOut:
    return ThreadOut(
        root=_annotation_to_out(thread.root),
        replies=[_annotation_to_out(reply) for reply in thread.replies],
    )


# =============================================================================
# Read Operations
# =============================================================================


def list_threads(
    db: Session,
    viewer_id: UUID,
    resource_id: UUID,
    status: str | None = None,
) -> list[ThreadOut]:
    """List the threads on a resource.

    Roots are filtered by status and ordered by anchor position (general
    annotations last), then (created_at, id). Each thread carries all of its
    replies regardless of their own status.

    Raises:
        NotFoundError(E_RESOURCE_NOT_FOUND): If resource doesn't exist or isn't owned.
    """
    get_resource_for_owner_or_404(db, viewer_id, resource_id)

    query = select(Annotation).where(
        Annotation.resource_id == resource_id,
        Annotation.owner_id == viewer_id,
        Annotation.thread_root_id.is_(None),
    )
    if status is not None:
        query = query.where(Annotation.status == status)
    query = query.order_by(
        Annotation.start_offset.is_(None),
        Annotation.start_offset,
        Annotation.created_at,
        Annotation.id,
    )
    roots = list(db.scalars(query))
    if not roots:
        return []

    replies = db.scalars(
        select(Annotation).where(Annotation.thread_root_id.in_([root.id for root in roots]))
    )
    return [_thread_to_out(thread) for thread in group_threads([*roots, *replies])]


def list_annotations(
    db: Session,
    viewer_id: UUID,
    resource_id: UUID,
    status: str | None = None,
    created_by_ai: bool | None = None,
    anchored_only: bool = False,
) -> list[Annotation]:
    """Flat list of a resource's annotation rows in (created_at, id) order.

    anchored_only restricts the list to anchored roots, the records the
    offset tracker works on.
    """
    query = select(Annotation).where(
        Annotation.resource_id == resource_id,
        Annotation.owner_id == viewer_id,
    )
    if status is not None:
        query = query.where(Annotation.status == status)
    if created_by_ai is not None:
        query = query.where(Annotation.created_by_ai.is_(created_by_ai))
    if anchored_only:
        query = query.where(
            Annotation.kind == AnnotationKind.anchored.value,
            Annotation.thread_root_id.is_(None),
        )
    return list(db.scalars(query.order_by(Annotation.created_at, Annotation.id)))


def get_thread(db: Session, viewer_id: UUID, annotation_id: UUID) -> ThreadOut:
    """Fetch the thread containing an annotation (root or reply).

    Raises:
        NotFoundError(E_ANNOTATION_NOT_FOUND): If missing or not owned.
    """
    annotation = get_annotation_for_owner_or_404(db, viewer_id, annotation_id)
    root = _get_root(db, annotation)
    return _thread_to_out(build_thread(root, _load_replies(db, root.id)))


def count_stale(db: Session, viewer_id: UUID, resource_id: UUID) -> int:
    """Number of active anchored roots currently flagged stale."""
    return db.scalar(
        select(func.count())
        .select_from(Annotation)
        .where(
            Annotation.resource_id == resource_id,
            Annotation.owner_id == viewer_id,
            Annotation.thread_root_id.is_(None),
            Annotation.status == AnnotationStatus.active.value,
            Annotation.is_stale.is_(True),
        )
    )


# =============================================================================
# Write Operations
# =============================================================================


def create_annotation(
    db: Session, viewer_id: UUID, resource_id: UUID, req: CreateAnnotationRequest
) -> AnnotationOut:
    """Create a root annotation on a resource.

    Args:
        db: Database session.
        viewer_id: The ID of the viewer.
        resource_id: The resource being annotated.
        req: The annotation creation request.

    Returns:
        The created annotation.

    Raises:
        NotFoundError(E_RESOURCE_NOT_FOUND): If resource doesn't exist or isn't owned.
        InvalidRequestError(E_ANNOTATION_INVALID_ANCHOR): If anchor fields are
            inconsistent or quoted_text doesn't match the notes at that range.
    """
    # 1. Owner check
    resource = get_resource_for_owner_or_404(db, viewer_id, resource_id)

    # 2. Shape check
    _require_body(req.body)
    validate_anchor_fields(req.kind, req.start_offset, req.end_offset, req.quoted_text)

    # 3. Anchored: the quote must be what the notes hold at that range now
    if req.kind == AnnotationKind.anchored.value:
        text = get_plain_text(resource)
        if req.end_offset > len(text) or text[req.start_offset : req.end_offset] != req.quoted_text:
            raise InvalidRequestError(
                ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR,
                "quoted_text does not match the notes at the given offsets",
            )

    # 4. Persist
    now = datetime.now(UTC)
    annotation = Annotation(
        resource_id=resource_id,
        owner_id=viewer_id,
        kind=req.kind,
        status=AnnotationStatus.active.value,
        body=req.body,
        start_offset=req.start_offset,
        end_offset=req.end_offset,
        quoted_text=req.quoted_text,
        is_stale=False,
        created_at=now,
        updated_at=now,
    )
    db.add(annotation)
    _commit_or_raise(db)

    logger.info(
        "annotation.created",
        annotation_id=str(annotation.id),
        kind=annotation.kind,
        body_chars=len(annotation.body),
    )
    return _annotation_to_out(annotation)


def create_ai_annotation(
    db: Session,
    owner_id: UUID,
    resource_id: UUID,
    *,
    kind: str,
    body: str,
    start_offset: int | None,
    end_offset: int | None,
    quoted_text: str | None,
    suggestion_type: str | None,
    processing_log_id: UUID | None,
    retry_count: int,
) -> Annotation:
    """Persist one AI-suggested root annotation in its own transaction.

    Each call commits independently so a later failure never rolls back
    annotations already written by the same run.

    Raises:
        ApiError(E_STORAGE_ERROR): If the write fails for any database reason.
    """
    validate_anchor_fields(kind, start_offset, end_offset, quoted_text)

    now = datetime.now(UTC)
    annotation = Annotation(
        resource_id=resource_id,
        owner_id=owner_id,
        kind=kind,
        status=AnnotationStatus.active.value,
        body=body,
        start_offset=start_offset,
        end_offset=end_offset,
        quoted_text=quoted_text,
        is_stale=False,
        created_by_ai=True,
        ai_suggestion_type=suggestion_type,
        processing_log_id=processing_log_id,
        retry_count=retry_count,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(annotation)
        db.flush()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise ApiError(ApiErrorCode.E_STORAGE_ERROR, "Failed to store annotation") from e

    return annotation


def add_reply(
    db: Session, viewer_id: UUID, annotation_id: UUID, req: CreateReplyRequest
) -> AnnotationOut:
    """Append a reply to the end of a thread.

    Replying to a reply appends to that reply's thread. The new reply points
    at the current tail, found by creation order rather than by walking
    thread_prev_id, and gets a created_at strictly later than every existing
    record in the thread.

    Concurrent appends to the same thread can both pick the same tail; a
    single writer per resource is assumed.

    Raises:
        NotFoundError(E_ANNOTATION_NOT_FOUND): If target missing or not owned.
    """
    # 1. Find the thread
    target = get_annotation_for_owner_or_404(db, viewer_id, annotation_id)
    root = _get_root(db, target)
    _require_body(req.body)

    # 2. Resolve the tail
    replies = _load_replies(db, root.id)
    prev_id = resolve_tail_id(root.id, replies)

    # 3. Keep creation order strictly increasing within the thread
    latest = max([root, *replies], key=chronological_key)
    created_at = datetime.now(UTC)
    if created_at <= ensure_utc(latest.created_at):
        created_at = ensure_utc(latest.created_at) + _TICK

    # 4. Persist
    reply = Annotation(
        resource_id=root.resource_id,
        owner_id=viewer_id,
        kind=AnnotationKind.general.value,
        status=AnnotationStatus.active.value,
        body=req.body,
        thread_root_id=root.id,
        thread_prev_id=prev_id,
        created_at=created_at,
        updated_at=created_at,
    )
    db.add(reply)
    _commit_or_raise(db)

    logger.info(
        "annotation.reply_added",
        annotation_id=str(reply.id),
        thread_root_id=str(root.id),
        reply_count=len(replies) + 1,
    )
    return _annotation_to_out(reply)


def update_annotation(
    db: Session, viewer_id: UUID, annotation_id: UUID, req: UpdateAnnotationRequest
) -> AnnotationOut:
    """Update an annotation's body and/or status.

    Resolving stamps resolved_at; reopening clears it.

    Raises:
        NotFoundError(E_ANNOTATION_NOT_FOUND): If missing or not owned.
    """
    annotation = get_annotation_for_owner_or_404(db, viewer_id, annotation_id)
    now = datetime.now(UTC)

    if req.body is not None:
        annotation.body = _require_body(req.body)

    if req.status is not None and req.status != annotation.status:
        annotation.status = req.status
        annotation.resolved_at = now if req.status == AnnotationStatus.resolved.value else None

    annotation.updated_at = now
    _commit_or_raise(db)
    return _annotation_to_out(annotation)


def resolve_annotation(db: Session, viewer_id: UUID, annotation_id: UUID) -> AnnotationOut:
    """Mark an annotation resolved."""
    return update_annotation(
        db, viewer_id, annotation_id, UpdateAnnotationRequest(status="resolved")
    )


def reopen_annotation(db: Session, viewer_id: UUID, annotation_id: UUID) -> AnnotationOut:
    """Mark a resolved annotation active again."""
    return update_annotation(db, viewer_id, annotation_id, UpdateAnnotationRequest(status="active"))


def update_anchor_state(
    db: Session, annotation_id: UUID, fields: dict[str, Any], commit: bool = True
) -> Annotation:
    """Write offset, quoted text and staleness fields of an anchored root.

    Used by anchor tracking only; no other field can be changed here.

    Raises:
        ValueError: If `fields` names anything other than anchor fields.
        NotFoundError(E_ANNOTATION_NOT_FOUND): If the annotation no longer exists.
        InvalidRequestError(E_ANNOTATION_INVALID_ANCHOR): If it isn't an anchored root.
    """
    unknown = set(fields) - set(ANCHOR_FIELDS)
    if unknown:
        raise ValueError(f"Not anchor fields: {sorted(unknown)}")

    annotation = db.get(Annotation, annotation_id)
    if annotation is None:
        raise NotFoundError(ApiErrorCode.E_ANNOTATION_NOT_FOUND, "Annotation not found")
    if annotation.kind != AnnotationKind.anchored.value or annotation.thread_root_id is not None:
        raise InvalidRequestError(
            ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR, "Only anchored roots have anchor state"
        )

    for name, value in fields.items():
        setattr(annotation, name, value)
    annotation.updated_at = datetime.now(UTC)

    if commit:
        _commit_or_raise(db)
    return annotation


def delete_annotation(db: Session, viewer_id: UUID, annotation_id: UUID) -> None:
    """Delete an annotation.

    - Root: the whole thread goes with it.
    - Reply: must be resolved first. Its successor is repointed at the
      deleted reply's predecessor in the same transaction, so the chain
      stays unbroken.

    Raises:
        NotFoundError(E_ANNOTATION_NOT_FOUND): If missing or not owned.
        ConflictError(E_REPLY_NOT_RESOLVED): If deleting an unresolved reply.
    """
    annotation = get_annotation_for_owner_or_404(db, viewer_id, annotation_id)

    if annotation.thread_root_id is None:
        with transaction(db):
            db.execute(delete(Annotation).where(Annotation.thread_root_id == annotation.id))
            db.execute(delete(Annotation).where(Annotation.id == annotation.id))
        logger.info("annotation.thread_deleted", annotation_id=str(annotation_id))
        return

    if annotation.status != AnnotationStatus.resolved.value:
        raise ConflictError(
            ApiErrorCode.E_REPLY_NOT_RESOLVED, "Resolve the reply before deleting it"
        )

    replies = _load_replies(db, annotation.thread_root_id)
    with transaction(db):
        for successor, new_prev_id in relink_targets(annotation, replies):
            successor.thread_prev_id = new_prev_id
            successor.updated_at = datetime.now(UTC)
        db.flush()
        db.execute(delete(Annotation).where(Annotation.id == annotation.id))

    logger.info(
        "annotation.reply_deleted",
        annotation_id=str(annotation_id),
        thread_root_id=str(annotation.thread_root_id),
    )
