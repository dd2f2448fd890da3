"""Tests for keeping stored anchors in step with notes edits.

Covers the live editing session (immediate in-memory updates, debounced and
coalesced writes, flush on close) and the single-edit server-side path.
"""

import asyncio
from uuid import uuid4

import pytest

from marginalia.config import Settings
from marginalia.db.models import Annotation
from marginalia.errors import NotFoundError
from marginalia.schemas.annotations import CreateAnnotationRequest
from marginalia.services.anchor_sync import (
    AnchorSyncSession,
    apply_text_change_to_resource,
    make_session_persister,
    open_anchor_sync,
)
from marginalia.services.annotations import create_annotation, resolve_annotation
from marginalia.services.text_tracking import AnchorState

NOTES = "The key factor is timing."


class RecordingPersister:
    """Collects persisted states; optionally fails for given ids."""

    def __init__(self, fail_ids=()):
        self.written: list[AnchorState] = []
        self.fail_ids = set(fail_ids)

    async def __call__(self, state: AnchorState) -> None:
        if state.id in self.fail_ids:
            raise RuntimeError("write failed")
        self.written.append(state)


def timing_anchor(id="a1") -> AnchorState:
    return AnchorState(id=id, start_offset=18, end_offset=24, quoted_text="timing")


class TestAnchorSyncSession:
    """Tests for AnchorSyncSession."""

    @pytest.mark.asyncio
    async def test_observe_updates_in_memory_immediately(self):
        """Anchors move as soon as an edit is observed."""
        persist = RecordingPersister()
        session = AnchorSyncSession([timing_anchor()], NOTES, persist, debounce_s=10)

        changed = session.observe("Really, " + NOTES)

        [state] = changed
        assert (state.start_offset, state.end_offset) == (26, 32)
        assert session.states[0] == state
        assert session.pending_count == 1
        assert persist.written == []
        await session.close()

    @pytest.mark.asyncio
    async def test_writes_coalesced_after_debounce(self):
        """Several quick edits produce one write with the latest state."""
        persist = RecordingPersister()
        session = AnchorSyncSession([timing_anchor()], NOTES, persist, debounce_s=0.05)

        session.observe("A " + NOTES)
        session.observe("AB " + NOTES)
        session.observe("ABC " + NOTES)
        assert persist.written == []

        await asyncio.sleep(0.2)

        [state] = persist.written
        assert (state.start_offset, state.end_offset) == (22, 28)
        assert session.pending_count == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_close_flushes_pending(self):
        """Closing writes what the debounce timer hasn't yet."""
        persist = RecordingPersister()
        session = AnchorSyncSession([timing_anchor()], NOTES, persist, debounce_s=10)

        session.observe("Really, " + NOTES)
        await session.close()

        assert len(persist.written) == 1
        with pytest.raises(RuntimeError):
            session.observe(NOTES)

    @pytest.mark.asyncio
    async def test_formatting_only_edit_is_ignored(self):
        """Markdown-only changes don't move anchors."""
        persist = RecordingPersister()
        session = AnchorSyncSession([timing_anchor()], NOTES, persist, debounce_s=10)

        assert session.observe("The key factor is **timing**.") == []
        assert session.pending_count == 0
        await session.close()
        assert persist.written == []

    @pytest.mark.asyncio
    async def test_edit_after_anchor_schedules_nothing(self):
        """Anchors untouched by an edit are not written."""
        persist = RecordingPersister()
        session = AnchorSyncSession([timing_anchor()], NOTES, persist, debounce_s=10)

        assert session.observe(NOTES + " And cost.") == []
        await session.close()
        assert persist.written == []

    @pytest.mark.asyncio
    async def test_persist_failure_is_logged_not_raised(self):
        """A failed write doesn't stop the others or reach the editor."""
        persist = RecordingPersister(fail_ids={"a1"})
        anchors = [
            timing_anchor("a1"),
            AnchorState(id="a2", start_offset=4, end_offset=14, quoted_text="key factor"),
        ]
        session = AnchorSyncSession(anchors, NOTES, persist, debounce_s=10)

        session.observe("Really, " + NOTES)
        written = await session.flush()

        assert written == 1
        assert [s.id for s in persist.written] == ["a2"]
        await session.close()

    @pytest.mark.asyncio
    async def test_session_persister_writes_rows(
        self, db_session, viewer_id, make_resource, session_factory
    ):
        """make_session_persister stores anchor fields through the service layer."""
        resource = make_resource(notes=NOTES)
        root = create_annotation(
            db_session,
            viewer_id,
            resource.id,
            CreateAnnotationRequest(
                kind="anchored", body="Why?", start_offset=18, end_offset=24, quoted_text="timing"
            ),
        )
        row = db_session.get(Annotation, root.id)
        session = AnchorSyncSession(
            [row], resource.notes, make_session_persister(session_factory), debounce_s=10
        )

        session.observe("Really, " + NOTES)
        await session.close()

        db_session.expire_all()
        stored = db_session.get(Annotation, root.id)
        assert (stored.start_offset, stored.end_offset) == (26, 32)
        assert stored.quoted_text == "timing"


class TestOpenAnchorSync:
    """Tests for building sessions from settings."""

    @pytest.mark.asyncio
    async def test_debounce_from_settings(self):
        """ANCHOR_PERSIST_DEBOUNCE_MS sets the quiet period before writes."""
        settings = Settings(MARGINALIA_ENV="test", ANCHOR_PERSIST_DEBOUNCE_MS=50, _env_file=None)
        persist = RecordingPersister()
        session = AnchorSyncSession.from_settings([timing_anchor()], NOTES, persist, settings)

        session.observe("Really, " + NOTES)
        assert persist.written == []
        await asyncio.sleep(0.2)

        assert len(persist.written) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_threshold_from_settings(self):
        """STALE_SIMILARITY_THRESHOLD decides when a rewritten span goes stale."""
        strict = Settings(MARGINALIA_ENV="test", STALE_SIMILARITY_THRESHOLD=1.0, _env_file=None)
        lenient = Settings(MARGINALIA_ENV="test", STALE_SIMILARITY_THRESHOLD=0.0, _env_file=None)
        edited = "The key factor is timinG."

        for settings, expect_stale in ((strict, True), (lenient, False)):
            session = AnchorSyncSession.from_settings(
                [timing_anchor()], NOTES, RecordingPersister(), settings
            )
            [state] = session.observe(edited)
            assert state.is_stale is expect_stale
            assert state.quoted_text == "timinG"
            await session.close()

    @pytest.mark.asyncio
    async def test_open_for_resource_persists_edits(
        self, db_session, viewer_id, make_resource, session_factory, settings
    ):
        """open_anchor_sync loads the resource's anchors and writes through the store."""
        resource = make_resource(notes=NOTES)
        root = create_annotation(
            db_session,
            viewer_id,
            resource.id,
            CreateAnnotationRequest(
                kind="anchored", body="Why?", start_offset=18, end_offset=24, quoted_text="timing"
            ),
        )

        session = open_anchor_sync(db_session, viewer_id, resource.id, session_factory, settings)
        assert [state.id for state in session.states] == [root.id]

        session.observe("Really, " + NOTES)
        await session.close()

        db_session.expire_all()
        stored = db_session.get(Annotation, root.id)
        assert (stored.start_offset, stored.end_offset) == (26, 32)

    def test_open_for_other_owner_is_not_found(
        self, db_session, make_resource, session_factory, settings
    ):
        resource = make_resource(notes=NOTES)
        with pytest.raises(NotFoundError):
            open_anchor_sync(db_session, uuid4(), resource.id, session_factory, settings)


class TestApplyTextChangeToResource:
    """Tests for the server-side single-edit path."""

    def _anchor(self, db_session, viewer_id, resource, start, end, quoted):
        return create_annotation(
            db_session,
            viewer_id,
            resource.id,
            CreateAnnotationRequest(
                kind="anchored",
                body="Note",
                start_offset=start,
                end_offset=end,
                quoted_text=quoted,
            ),
        )

    def test_shift_persisted(self, db_session, viewer_id, make_resource):
        """Changed anchors are written and returned."""
        resource = make_resource(notes=NOTES)
        root = self._anchor(db_session, viewer_id, resource, 18, 24, "timing")

        out = apply_text_change_to_resource(
            db_session, viewer_id, resource.id, NOTES, "Really, " + NOTES
        )

        [updated] = out.updated
        assert updated.id == root.id
        assert (updated.start_offset, updated.end_offset) == (26, 32)
        assert out.stale_count == 0

    def test_stale_flag_persisted(self, db_session, viewer_id, make_resource):
        """Replacing the quoted text flags the anchor and counts it."""
        resource = make_resource(notes=NOTES)
        self._anchor(db_session, viewer_id, resource, 18, 24, "timing")

        out = apply_text_change_to_resource(
            db_session, viewer_id, resource.id, NOTES, "The key factor is qqqqqq."
        )

        [updated] = out.updated
        assert updated.is_stale is True
        assert updated.quoted_text == "qqqqqq"
        assert updated.original_quoted_text == "timing"
        assert out.stale_count == 1

    def test_resolved_annotations_untouched(self, db_session, viewer_id, make_resource):
        """Only active anchors are tracked."""
        resource = make_resource(notes=NOTES)
        root = self._anchor(db_session, viewer_id, resource, 18, 24, "timing")
        resolve_annotation(db_session, viewer_id, root.id)

        out = apply_text_change_to_resource(
            db_session, viewer_id, resource.id, NOTES, "Really, " + NOTES
        )

        assert out.updated == []
        assert db_session.get(Annotation, root.id).start_offset == 18

    def test_no_change(self, db_session, viewer_id, make_resource):
        """Identical snapshots write nothing."""
        resource = make_resource(notes=NOTES)
        self._anchor(db_session, viewer_id, resource, 18, 24, "timing")

        out = apply_text_change_to_resource(db_session, viewer_id, resource.id, NOTES, NOTES)
        assert out.updated == []
