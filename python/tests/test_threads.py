"""Tests for thread helpers over flat annotation records.

Pure unit tests: records are SimpleNamespace stand-ins, no database.
"""

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from marginalia.errors import ApiErrorCode, InvalidRequestError
from marginalia.services.threads import (
    build_thread,
    ensure_utc,
    group_threads,
    relink_targets,
    resolve_tail_id,
    validate_anchor_fields,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def record(id, seconds=0, root=None, prev=None):
    return SimpleNamespace(
        id=id,
        created_at=T0 + timedelta(seconds=seconds),
        thread_root_id=root,
        thread_prev_id=prev,
    )


class TestBuildThread:
    """Tests for reply ordering."""

    def test_replies_sorted_by_creation(self):
        """Replies come out in (created_at, id) order whatever the input order."""
        root = record("r0")
        replies = [
            record("r3", 3, "r0", "r2"),
            record("r1", 1, "r0", "r0"),
            record("r2", 2, "r0", "r1"),
        ]
        thread = build_thread(root, replies)
        assert thread.root is root
        assert [r.id for r in thread.replies] == ["r1", "r2", "r3"]

    def test_id_breaks_timestamp_ties(self):
        """Equal timestamps fall back to id order."""
        replies = [record("b", 1, "r0"), record("a", 1, "r0")]
        assert [r.id for r in build_thread(record("r0"), replies).replies] == ["a", "b"]

    def test_order_ignores_broken_chain(self):
        """A broken thread_prev_id does not hide or reorder a reply."""
        replies = [record("r1", 1, "r0", "r0"), record("r2", 2, "r0", "missing")]
        assert [r.id for r in build_thread(record("r0"), replies).replies] == ["r1", "r2"]

    def test_naive_timestamps_treated_as_utc(self):
        """Naive and aware timestamps compare without raising."""
        naive = SimpleNamespace(
            id="n", created_at=datetime(2026, 1, 1, 12, 0, 5), thread_root_id="r0"
        )
        aware = record("a", 1, "r0")
        assert [r.id for r in build_thread(record("r0"), [naive, aware]).replies] == ["a", "n"]

    def test_ensure_utc(self):
        """Naive datetimes gain UTC; aware ones are untouched."""
        assert ensure_utc(datetime(2026, 1, 1)).tzinfo is UTC
        assert ensure_utc(T0) is T0


class TestChainHelpers:
    """Tests for tail resolution and relinking."""

    def test_tail_without_replies_is_root(self):
        """The first reply points at the root."""
        assert resolve_tail_id("r0", []) == "r0"

    def test_tail_is_latest_reply(self):
        """The tail is found by creation order, not by following pointers."""
        replies = [record("r2", 2, "r0", "r1"), record("r1", 1, "r0", None)]
        assert resolve_tail_id("r0", replies) == "r2"

    def test_relink_successor(self):
        """Deleting r2 repoints r3 at r1."""
        r1 = record("r1", 1, "r0", "r0")
        r2 = record("r2", 2, "r0", "r1")
        r3 = record("r3", 3, "r0", "r2")
        assert relink_targets(r2, [r1, r2, r3]) == [(r3, "r1")]

    def test_relink_last_reply(self):
        """Deleting the tail repoints nothing."""
        r1 = record("r1", 1, "r0", "r0")
        r2 = record("r2", 2, "r0", "r1")
        assert relink_targets(r2, [r1, r2]) == []


class TestGroupThreads:
    """Tests for partitioning flat records."""

    def test_groups_by_root(self):
        """Replies land under their root; roots keep input order."""
        records = [
            record("b"),
            record("b1", 1, "b", "b"),
            record("a"),
            record("a1", 1, "a", "a"),
            record("a2", 2, "a", "a1"),
        ]
        threads = group_threads(records)
        assert [t.root.id for t in threads] == ["b", "a"]
        assert [r.id for r in threads[1].replies] == ["a1", "a2"]

    def test_orphan_replies_left_out(self):
        """Replies whose root isn't in the list are not shown."""
        threads = group_threads([record("a"), record("x1", 1, "x", "x")])
        assert len(threads) == 1
        assert threads[0].replies == []


class TestValidateAnchorFields:
    """Tests for anchor invariants."""

    def test_valid_anchored(self):
        validate_anchor_fields("anchored", 0, 5, "alpha")

    def test_valid_general(self):
        validate_anchor_fields("general", None, None, None)

    @pytest.mark.parametrize(
        "start, end, quoted",
        [(None, 5, "alpha"), (0, None, "alpha"), (0, 5, None), (5, 5, "x"), (-1, 3, "abc")],
    )
    def test_invalid_anchored(self, start, end, quoted):
        """Missing fields or an empty/negative range are rejected."""
        with pytest.raises(InvalidRequestError) as exc:
            validate_anchor_fields("anchored", start, end, quoted)
        assert exc.value.code == ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR

    def test_general_with_offsets(self):
        """General annotations may not carry anchor fields."""
        with pytest.raises(InvalidRequestError) as exc:
            validate_anchor_fields("general", 0, 5, None)
        assert exc.value.code == ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR

    def test_reply_cannot_anchor(self):
        """Replies are never anchored."""
        with pytest.raises(InvalidRequestError) as exc:
            validate_anchor_fields("anchored", 0, 5, "alpha", thread_root_id="r0")
        assert exc.value.code == ApiErrorCode.E_REPLY_CANNOT_ANCHOR

    def test_unknown_kind(self):
        with pytest.raises(InvalidRequestError):
            validate_anchor_fields("sidebar", None, None, None)
