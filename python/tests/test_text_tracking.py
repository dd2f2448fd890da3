"""Tests for anchor tracking under text edits.

Pure unit tests: no database. They cover the similarity and diff primitives,
offset shifting for each edit position, staleness flagging and recovery, and
the documented single-change assumption.
"""

import pytest

from marginalia.services.text_tracking import (
    AnchorState,
    apply_text_change,
    change_length,
    changed_anchor_fields,
    find_change_start,
    refresh_staleness,
    similarity,
    update_anchor_offsets,
)


def anchor(start, end, quoted, **kwargs) -> AnchorState:
    return AnchorState(
        id=kwargs.pop("id", "a1"),
        start_offset=start,
        end_offset=end,
        quoted_text=quoted,
        **kwargs,
    )


# =============================================================================
# Similarity & Diff Primitives
# =============================================================================


class TestSimilarity:
    """Tests for the in-order character match ratio."""

    def test_equal_strings(self):
        """Identical strings score 1.0."""
        assert similarity("timing", "timing") == 1.0

    def test_both_empty(self):
        """Two empty strings are equal."""
        assert similarity("", "") == 1.0

    def test_one_empty(self):
        """Exactly one empty string scores 0.0."""
        assert similarity("abc", "") == 0.0
        assert similarity("", "abc") == 0.0

    def test_prefix_ratio(self):
        """A prefix matches fully, divided by the longer length."""
        assert similarity("hello world", "hello") == pytest.approx(5 / 11)

    def test_partial_match(self):
        """Characters match greedily in order."""
        assert similarity("abcd", "abxd") == pytest.approx(0.5)

    def test_no_common_characters(self):
        """Disjoint strings score 0.0."""
        assert similarity("alpha", "zzzzz") == 0.0

    def test_symmetric(self):
        """Argument order does not matter."""
        assert similarity("key factor", "key big factor") == similarity(
            "key big factor", "key factor"
        )


class TestChangeLocalisation:
    """Tests for find_change_start and change_length."""

    def test_first_difference(self):
        """Index of the first differing character."""
        assert find_change_start("abc", "abXc") == 2

    def test_append(self):
        """A pure append starts at the old length."""
        assert find_change_start("abc", "abcdef") == 3

    def test_truncate(self):
        """A pure truncation starts at the new length."""
        assert find_change_start("abcdef", "abc") == 3

    def test_identical(self):
        """Identical strings report the shared length."""
        assert find_change_start("abc", "abc") == 3

    def test_change_length_signed(self):
        """Insertions are positive, deletions negative."""
        assert change_length("abc", "abcde") == 2
        assert change_length("abcde", "abc") == -2
        assert change_length("abc", "xyz") == 0


# =============================================================================
# Offset Tracker
# =============================================================================


class TestUpdateAnchorOffsets:
    """Tests for shifting [start, end) ranges for one edit."""

    def test_edit_after_span_is_ignored(self):
        """An edit past the end leaves the anchor alone."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 25, 5)
        assert (result.start_offset, result.end_offset) == (10, 20)

    def test_edit_at_end_does_not_extend(self):
        """An edit exactly at the end is outside the span."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 20, 5)
        assert (result.start_offset, result.end_offset) == (10, 20)

    def test_edit_before_span_shifts_both(self):
        """An insertion before the span moves it right."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 5, 3)
        assert (result.start_offset, result.end_offset) == (13, 23)

    def test_edit_at_start_shifts_both(self):
        """An insertion exactly at the start moves the whole span."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 10, 3)
        assert (result.start_offset, result.end_offset) == (13, 23)

    def test_edit_inside_moves_end_only(self):
        """An insertion inside the span grows it."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 15, 4)
        assert (result.start_offset, result.end_offset) == (10, 24)

    def test_deletion_inside_keeps_one_character(self):
        """A deletion swallowing the rest of the span leaves start + 1."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 15, -10)
        assert (result.start_offset, result.end_offset) == (10, 11)

    def test_large_deletion_before_floors_at_zero(self):
        """Offsets never go negative and the span keeps one character."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 2, -15)
        assert (result.start_offset, result.end_offset) == (0, 5)

    def test_deletion_covering_whole_span(self):
        """A deletion covering the span collapses it to one character."""
        [result] = update_anchor_offsets([anchor(10, 20, "x" * 10)], 0, -30)
        assert (result.start_offset, result.end_offset) == (0, 1)

    def test_negative_change_start_is_a_no_op(self):
        """Invalid input is returned unchanged instead of raising."""
        states = [anchor(10, 20, "x" * 10)]
        assert update_anchor_offsets(states, -1, 5) == states

    def test_invalid_offsets_pass_through(self):
        """Anchors with unusable offsets are left alone."""
        broken = anchor(20, 10, "x")
        assert update_anchor_offsets([broken], 0, 5) == [broken]

    def test_non_anchored_records_pass_through(self):
        """General annotations and replies are never touched."""
        general = AnchorState(
            id="g1", start_offset=None, end_offset=None, quoted_text=None, anchored=False
        )
        assert update_anchor_offsets([general], 0, 5) == [general]

    def test_order_preserved(self):
        """Output order matches input order."""
        states = [anchor(30, 35, "a", id="late"), anchor(0, 5, "b", id="early")]
        result = update_anchor_offsets(states, 10, 2)
        assert [s.id for s in result] == ["late", "early"]
        assert (result[0].start_offset, result[0].end_offset) == (32, 37)
        assert (result[1].start_offset, result[1].end_offset) == (0, 5)


class TestRefreshStaleness:
    """Tests for quoted_text resync and stale flagging."""

    def test_unchanged_text_keeps_state(self):
        """An anchor over identical text is returned as is."""
        state = anchor(0, 5, "alpha")
        assert refresh_staleness([state], "alpha beta") == [state]

    def test_similar_text_resyncs_quote(self):
        """Small drift updates quoted_text without flagging."""
        [result] = refresh_staleness([anchor(4, 18, "key factor")], "The key big factor is timing.")
        assert result.quoted_text == "key big factor"
        assert result.is_stale is False
        assert result.original_quoted_text is None

    def test_dissimilar_text_flags_stale(self):
        """Drift below the threshold flags the anchor and keeps the original."""
        [result] = refresh_staleness([anchor(0, 5, "alpha")], "zzzzz beta")
        assert result.is_stale is True
        assert result.quoted_text == "zzzzz"
        assert result.original_quoted_text == "alpha"

    def test_original_quote_set_only_once(self):
        """A second drift keeps the first original_quoted_text."""
        state = anchor(0, 5, "zzzzz", is_stale=True, original_quoted_text="alpha")
        [result] = refresh_staleness([state], "qqqqq beta")
        assert result.is_stale is True
        assert result.original_quoted_text == "alpha"
        assert result.quoted_text == "qqqqq"

    def test_threshold_is_configurable(self):
        """A stricter threshold flags smaller drift."""
        [result] = refresh_staleness(
            [anchor(4, 18, "key factor")], "The key big factor is timing.", threshold=0.9
        )
        assert result.is_stale is True


class TestApplyTextChange:
    """Tests for the full edit pipeline."""

    def test_identical_texts_are_a_no_op(self):
        """No edit, no change."""
        states = [anchor(0, 5, "alpha")]
        assert apply_text_change(states, "alpha", "alpha") == states

    def test_insertion_before_anchor(self):
        """Prepending text shifts the anchor onto the same words."""
        old = "The key factor is timing."
        new = "Really, The key factor is timing."
        [result] = apply_text_change([anchor(18, 24, "timing")], old, new)
        assert (result.start_offset, result.end_offset) == (26, 32)
        assert new[result.start_offset : result.end_offset] == "timing"
        assert result.is_stale is False

    def test_edit_just_after_anchor(self):
        """Typing right after the span does not pull it in."""
        old = "The key factor is timing."
        new = "The key factors is timing."
        [result] = apply_text_change([anchor(4, 14, "key factor")], old, new)
        assert (result.start_offset, result.end_offset) == (4, 14)
        assert result.quoted_text == "key factor"

    def test_stale_then_revert_clears_flag(self):
        """Replacing the quoted word flags it; typing it back clears the flag."""
        original = "alpha beta gamma"
        replaced = "zzzzz beta gamma"

        [stale] = apply_text_change([anchor(0, 5, "alpha")], original, replaced)
        assert stale.is_stale is True
        assert stale.original_quoted_text == "alpha"

        [restored] = apply_text_change([stale], replaced, original)
        assert restored.is_stale is False
        assert restored.quoted_text == "alpha"
        assert restored.original_quoted_text == "alpha"

    def test_two_disjoint_edits_shift_by_net_length(self):
        """Two edits in one observation collapse to one change point.

        The anchor between them moves by the combined length, lands on the
        wrong text, and is flagged stale.
        """
        old = "aaa BBB ccc DDD eee"
        new = "Xaaa BBB ccc DDDYY eee"
        [result] = apply_text_change([anchor(8, 11, "ccc")], old, new)
        assert (result.start_offset, result.end_offset) == (11, 14)
        assert new.index("ccc") == 9
        assert result.is_stale is True


class TestChangedAnchorFields:
    """Tests for picking out anchors that need persisting."""

    def test_only_changed_states_returned(self):
        """Unchanged anchors are filtered out."""
        before = [anchor(0, 5, "alpha", id="a"), anchor(10, 15, "gamma", id="b")]
        after = [before[0], anchor(12, 17, "gamma", id="b")]
        assert [s.id for s in changed_anchor_fields(before, after)] == ["b"]

    def test_new_states_count_as_changed(self):
        """States without a previous version are included."""
        assert changed_anchor_fields([], [anchor(0, 5, "alpha")]) == [anchor(0, 5, "alpha")]
