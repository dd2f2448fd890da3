"""Keeping stored anchors in step with notes edits.

Two entry points share the offset tracker in text_tracking:

- AnchorSyncSession: one editing session on one resource. Each observed
  edit is applied to the in-memory anchors immediately; the changed anchors
  are written later in one coalesced batch (debounced), and flush() writes
  whatever is pending right away. Callers must close() the session so no
  trailing edit is lost. open_anchor_sync builds one for a resource from
  settings.
- apply_text_change_to_resource: server-side variant for a single observed
  edit, persisting every changed anchor in one transaction.

Write failures while syncing are logged per annotation and never reach the
editor; anchors that drift because of a missed write are caught later by the
staleness pass.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from marginalia.config import Settings
from marginalia.db.models import AnnotationStatus
from marginalia.db.session import transaction
from marginalia.logging import get_logger
from marginalia.schemas.annotations import AnnotationOut, TextChangeOut
from marginalia.services.annotations import count_stale, list_annotations, update_anchor_state
from marginalia.services.plain_text import strip_markdown
from marginalia.services.resources import get_resource_for_owner_or_404
from marginalia.services.text_tracking import (
    DEFAULT_STALE_THRESHOLD,
    AnchorState,
    apply_text_change,
    changed_anchor_fields,
)

logger = get_logger(__name__)

AnchorPersister = Callable[[AnchorState], Awaitable[None]]


def make_session_persister(session_factory: sessionmaker[Session]) -> AnchorPersister:
    """Persister that writes one anchor per short-lived session, off the event loop."""

    def _write(state: AnchorState) -> None:
        with session_factory() as db:
            update_anchor_state(db, state.id, state.anchor_fields())

    async def persist(state: AnchorState) -> None:
        await asyncio.to_thread(_write, state)

    return persist


class AnchorSyncSession:
    """Live anchor tracking for one resource during one editing session.

    observe() must be called from a running event loop; it never awaits and
    never raises on odd input.

    Args:
        annotations: Annotation records (ORM rows or schemas) or AnchorStates.
        notes: Markdown notes at the start of the session.
        persist: Async callable writing one anchor state.
        debounce_s: Quiet period before pending writes go out.
        threshold: Similarity below which an anchor is stale.
    """

    def __init__(
        self,
        annotations: Sequence[Any],
        notes: str,
        persist: AnchorPersister,
        debounce_s: float = 2.0,
        threshold: float = DEFAULT_STALE_THRESHOLD,
    ):
        self._states = [
            a if isinstance(a, AnchorState) else AnchorState.from_record(a) for a in annotations
        ]
        self._text = strip_markdown(notes)
        self._persist = persist
        self._debounce_s = debounce_s
        self._threshold = threshold
        self._pending: dict[Any, AnchorState] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        annotations: Sequence[Any],
        notes: str,
        persist: AnchorPersister,
        settings: Settings,
    ) -> "AnchorSyncSession":
        """Session using the configured debounce window and stale threshold."""
        return cls(
            annotations,
            notes,
            persist,
            debounce_s=settings.anchor_persist_debounce_s,
            threshold=settings.stale_similarity_threshold,
        )

    @property
    def states(self) -> list[AnchorState]:
        """Current in-memory anchors."""
        return list(self._states)

    @property
    def pending_count(self) -> int:
        """Number of anchors waiting to be written."""
        return len(self._pending)

    def observe(self, notes: str) -> list[AnchorState]:
        """Apply one edit and schedule persistence of the anchors it changed.

        Args:
            notes: Full markdown notes after the edit.

        Returns:
            The anchors whose stored fields changed with this edit.

        Raises:
            RuntimeError: If the session is closed.
        """
        if self._closed:
            raise RuntimeError("AnchorSyncSession is closed")

        new_text = strip_markdown(notes)
        if new_text == self._text:
            return []

        updated = apply_text_change(self._states, self._text, new_text, self._threshold)
        changed = changed_anchor_fields(self._states, updated)
        self._states = updated
        self._text = new_text

        if changed:
            # Latest state per annotation wins
            for state in changed:
                self._pending[state.id] = state
            self._schedule()

        return changed

    def _schedule(self) -> None:
        loop = asyncio.get_running_loop()
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._debounce_s, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> int:
        """Write all pending anchors now.

        Returns:
            Number of anchors written successfully.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        pending, self._pending = self._pending, {}
        written = 0
        for state in pending.values():
            try:
                await self._persist(state)
                written += 1
            except Exception:
                logger.exception("anchor_sync.persist_failed", annotation_id=str(state.id))

        if pending:
            logger.info("anchor_sync.flushed", written=written, failed=len(pending) - written)
        return written

    async def close(self) -> None:
        """Flush pending writes and stop accepting edits."""
        self._closed = True
        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks)
        await self.flush()


def open_anchor_sync(
    db: Session,
    viewer_id: UUID,
    resource_id: UUID,
    session_factory: sessionmaker[Session],
    settings: Settings,
) -> AnchorSyncSession:
    """Start an editing session over the resource's active anchored annotations.

    Writes go through their own short-lived sessions from session_factory, so
    the session outlives `db`.

    Raises:
        NotFoundError(E_RESOURCE_NOT_FOUND): If resource doesn't exist or isn't owned.
    """
    resource = get_resource_for_owner_or_404(db, viewer_id, resource_id)
    rows = list_annotations(
        db,
        viewer_id,
        resource_id,
        status=AnnotationStatus.active.value,
        anchored_only=True,
    )
    logger.info("anchor_sync.opened", resource_id=str(resource_id), anchors=len(rows))
    return AnchorSyncSession.from_settings(
        rows, resource.notes, make_session_persister(session_factory), settings
    )


def apply_text_change_to_resource(
    db: Session,
    viewer_id: UUID,
    resource_id: UUID,
    old_text: str,
    new_text: str,
    threshold: float = DEFAULT_STALE_THRESHOLD,
) -> TextChangeOut:
    """Apply one observed notes edit to the resource's active anchors.

    Both snapshots are markdown; offsets are computed on their plain-text
    views. The notes themselves are not written here.

    Raises:
        NotFoundError(E_RESOURCE_NOT_FOUND): If resource doesn't exist or isn't owned.
    """
    get_resource_for_owner_or_404(db, viewer_id, resource_id)

    rows = list_annotations(
        db,
        viewer_id,
        resource_id,
        status=AnnotationStatus.active.value,
        anchored_only=True,
    )
    before = [AnchorState.from_record(row) for row in rows]
    after = apply_text_change(
        before, strip_markdown(old_text), strip_markdown(new_text), threshold
    )
    changed = changed_anchor_fields(before, after)

    updated = []
    if changed:
        with transaction(db):
            for state in changed:
                row = update_anchor_state(db, state.id, state.anchor_fields(), commit=False)
                updated.append(row)
            db.flush()

    logger.info(
        "anchor_sync.text_change_applied",
        anchors_checked=len(before),
        anchors_changed=len(changed),
        old_text_chars=len(old_text),
        new_text_chars=len(new_text),
    )
    return TextChangeOut(
        updated=[AnnotationOut.model_validate(row) for row in updated],
        stale_count=count_stale(db, viewer_id, resource_id),
    )
