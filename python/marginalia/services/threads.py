"""Thread structure over flat annotation records.

A thread is a root annotation plus its replies. Replies point at the root via
thread_root_id and form a chronological chain via thread_prev_id (the first
reply points at the root). The chain is an insertion log: display order is
always recomputed from (created_at, id) so a single broken link never hides
or reorders a reply.

These helpers work on any record exposing id, created_at, thread_root_id and
thread_prev_id (ORM rows or schemas) and never touch the database.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from marginalia.db.models import AnnotationKind
from marginalia.errors import ApiErrorCode, InvalidRequestError


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def chronological_key(record: Any) -> tuple[datetime, str]:
    """Sort key: creation time, then id as a deterministic tie-break."""
    return (ensure_utc(record.created_at), str(record.id))


@dataclass
class Thread:
    """A root annotation and its replies in display order."""

    root: Any
    replies: list[Any] = field(default_factory=list)


def validate_anchor_fields(
    kind: str,
    start_offset: int | None,
    end_offset: int | None,
    quoted_text: str | None,
    thread_root_id: Any = None,
) -> None:
    """Enforce the anchor invariants before a record is written.

    - Replies never carry anchor fields.
    - General annotations have no offsets and no quoted text.
    - Anchored annotations have all three, with 0 <= start < end.

    Raises:
        InvalidRequestError: E_REPLY_CANNOT_ANCHOR or E_ANNOTATION_INVALID_ANCHOR.
    """
    has_any = start_offset is not None or end_offset is not None or quoted_text is not None

    if thread_root_id is not None:
        if kind == AnnotationKind.anchored.value or has_any:
            raise InvalidRequestError(
                ApiErrorCode.E_REPLY_CANNOT_ANCHOR, "Replies cannot be anchored to text"
            )
        return

    if kind == AnnotationKind.general.value:
        if has_any:
            raise InvalidRequestError(
                ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR,
                "General annotations cannot have anchor fields",
            )
        return

    if kind != AnnotationKind.anchored.value:
        raise InvalidRequestError(
            ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR, f"Unknown annotation kind: {kind}"
        )

    if start_offset is None or end_offset is None or quoted_text is None:
        raise InvalidRequestError(
            ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR,
            "Anchored annotations require start_offset, end_offset and quoted_text",
        )
    if start_offset < 0 or end_offset <= start_offset:
        raise InvalidRequestError(
            ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR,
            "Anchor offsets must satisfy 0 <= start_offset < end_offset",
        )


def build_thread(root: Any, replies: Iterable[Any]) -> Thread:
    """Assemble a thread, ordering replies by (created_at, id)."""
    return Thread(root=root, replies=sorted(replies, key=chronological_key))


def resolve_tail_id(root_id: Any, replies: Sequence[Any]) -> Any:
    """Id the next reply should point at.

    The tail is the latest reply by (created_at, id), found without following
    thread_prev_id pointers. With no replies the chain starts at the root.
    """
    if not replies:
        return root_id
    return max(replies, key=chronological_key).id


def relink_targets(deleted: Any, replies: Iterable[Any]) -> list[tuple[Any, Any]]:
    """Replies that must be repointed when `deleted` leaves the chain.

    Returns:
        (reply, new_prev_id) pairs: each reply whose thread_prev_id is the
        deleted id, paired with the deleted reply's own thread_prev_id.
    """
    return [
        (reply, deleted.thread_prev_id)
        for reply in replies
        if reply.id != deleted.id and reply.thread_prev_id == deleted.id
    ]


def group_threads(records: Iterable[Any]) -> list[Thread]:
    """Partition a flat record list into threads.

    Roots keep their input order. Replies whose root is not in `records` are
    left out of the view.
    """
    roots: dict[Any, Any] = {}
    replies_by_root: dict[Any, list[Any]] = {}

    for record in records:
        if record.thread_root_id is None:
            roots[record.id] = record
        else:
            replies_by_root.setdefault(record.thread_root_id, []).append(record)

    return [
        build_thread(root, replies_by_root.get(root_id, [])) for root_id, root in roots.items()
    ]
