"""Tests for anchoring AI suggestions to the notes.

Covers unique matching, the revise loop with feedback, the drop rules
(short spans, empty bodies, exhausted retries, reviser errors), body
truncation and the per-run cap. The reviser is a scripted coroutine.
"""

import pytest

from marginalia.services.llm.errors import LLMError, LLMErrorClass
from marginalia.services.suggestions.anchoring import (
    anchor_suggestions,
    build_feedback,
    count_occurrences,
    find_unique_match,
    truncate_body,
)
from marginalia.services.suggestions.types import (
    RawSuggestion,
    SuggestionCategory,
    SuggestionFailureReason,
)

NOTES = "The key factor is timing. The key factor is cost."


def anchored(selected_text, body="Consider the evidence.", suggestion_type="rewording"):
    return RawSuggestion(
        category=SuggestionCategory.anchored,
        suggestion_type=suggestion_type,
        body=body,
        selected_text=selected_text,
    )


def general(body="Add a summary.", suggestion_type="structural_suggestion"):
    return RawSuggestion(
        category=SuggestionCategory.general,
        suggestion_type=suggestion_type,
        body=body,
    )


class ScriptedReviser:
    """Returns (or raises) scripted revisions and records every call."""

    def __init__(self, *revisions):
        self.revisions = list(revisions)
        self.calls = []

    async def __call__(self, suggestion, feedback, attempt):
        self.calls.append((suggestion.selected_text, feedback, attempt))
        if not self.revisions:
            return None
        result = self.revisions.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


# =============================================================================
# Matching Primitives
# =============================================================================


class TestMatching:
    """Tests for occurrence counting and unique matching."""

    def test_count_occurrences_includes_overlaps(self):
        """Overlapping occurrences are all counted."""
        assert count_occurrences("aaaa", "aa") == 3

    def test_count_occurrences_empty_needle(self):
        """An empty needle never matches."""
        assert count_occurrences("abc", "") == 0

    def test_unique_match_offsets(self):
        """A single occurrence yields its half-open range."""
        outcome = find_unique_match(NOTES, "is timing")
        assert outcome.occurrences == 1
        assert (outcome.match.start, outcome.match.end) == (15, 24)
        assert NOTES[outcome.match.start : outcome.match.end] == "is timing"

    def test_ambiguous_match(self):
        """Two occurrences give no match."""
        outcome = find_unique_match(NOTES, "The key factor")
        assert outcome.occurrences == 2
        assert outcome.match is None

    def test_match_is_case_sensitive(self):
        """Matching is literal."""
        assert find_unique_match(NOTES, "the key factor is timing").occurrences == 0

    def test_feedback_not_found(self):
        """Zero occurrences asks for an exact copy."""
        feedback = build_feedback("missing words", 0)
        assert '"missing words"' in feedback
        assert "was not found" in feedback

    def test_feedback_ambiguous(self):
        """Several occurrences asks for a longer phrase."""
        feedback = build_feedback("The key factor", 2)
        assert "occurs 2 times" in feedback
        assert "occurs only once" in feedback

    def test_truncate_body(self):
        """Long bodies are cut to the limit and end with an ellipsis."""
        truncated = truncate_body("x" * 250, 200)
        assert len(truncated) == 200
        assert truncated.endswith("...")
        assert truncate_body("short", 200) == "short"


# =============================================================================
# Anchoring Protocol
# =============================================================================


class TestAnchorSuggestions:
    """Tests for anchor_suggestions."""

    @pytest.mark.asyncio
    async def test_unique_span_anchors_without_retry(self):
        """A span that occurs once is anchored on the first attempt."""
        reviser = ScriptedReviser()
        result = await anchor_suggestions([anchored("is cost")], NOTES, reviser)

        [draft] = result.drafts
        assert draft.kind == "anchored"
        assert (draft.start_offset, draft.end_offset) == (41, 48)
        assert draft.quoted_text == "is cost"
        assert draft.retry_count == 0
        assert reviser.calls == []
        assert result.failures == []

    @pytest.mark.asyncio
    async def test_ambiguous_span_is_revised(self):
        """An ambiguous quote is sent back with feedback and the revision anchors."""
        reviser = ScriptedReviser("The key factor is timing")
        result = await anchor_suggestions([anchored("The key factor")], NOTES, reviser)

        [draft] = result.drafts
        assert (draft.start_offset, draft.end_offset) == (0, 24)
        assert draft.quoted_text == "The key factor is timing"
        assert draft.retry_count == 1

        [(span, feedback, attempt)] = reviser.calls
        assert span == "The key factor"
        assert "occurs 2 times" in feedback
        assert attempt == 2

    @pytest.mark.asyncio
    async def test_revision_sees_latest_span(self):
        """Each revise call carries the span from the previous attempt."""
        reviser = ScriptedReviser("not in the notes", "key factor is cost")
        result = await anchor_suggestions([anchored("The key factor")], NOTES, reviser)

        [draft] = result.drafts
        assert draft.retry_count == 2
        assert draft.quoted_text == "key factor is cost"
        assert [call[0] for call in reviser.calls] == ["The key factor", "not in the notes"]
        assert "was not found" in reviser.calls[1][1]
        assert [call[2] for call in reviser.calls] == [2, 3]

    @pytest.mark.asyncio
    async def test_retries_exhausted(self):
        """After max_attempts the suggestion is dropped with every span tried."""
        reviser = ScriptedReviser("still missing", "also missing")
        result = await anchor_suggestions(
            [anchored("The key factor")], NOTES, reviser, max_attempts=3
        )

        assert result.drafts == []
        [failure] = result.failures
        assert failure.reason == SuggestionFailureReason.max_retries_exceeded
        assert failure.attempted_spans == ["The key factor", "still missing", "also missing"]
        assert len(reviser.calls) == 2

    @pytest.mark.asyncio
    async def test_unusable_revisions_count_as_attempts(self):
        """A None or too-short revision uses up an attempt."""
        reviser = ScriptedReviser(None, "cost")
        result = await anchor_suggestions([anchored("The key factor")], NOTES, reviser)

        [failure] = result.failures
        assert failure.reason == SuggestionFailureReason.max_retries_exceeded
        assert failure.attempted_spans == ["The key factor", None, "cost"]
        assert "shorter than 5" in reviser.calls[1][1]

    @pytest.mark.asyncio
    async def test_single_attempt_never_revises(self):
        """max_attempts=1 drops ambiguous spans without calling the reviser."""
        reviser = ScriptedReviser("The key factor is timing")
        result = await anchor_suggestions(
            [anchored("The key factor")], NOTES, reviser, max_attempts=1
        )

        assert result.failures[0].reason == SuggestionFailureReason.max_retries_exceeded
        assert reviser.calls == []

    @pytest.mark.asyncio
    async def test_reviser_error_drops_suggestion(self):
        """A model error during revision drops only that suggestion."""
        reviser = ScriptedReviser(LLMError(LLMErrorClass.RATE_LIMIT, "slow down", "anthropic"))
        result = await anchor_suggestions(
            [anchored("The key factor"), anchored("is cost")], NOTES, reviser
        )

        assert [d.quoted_text for d in result.drafts] == ["is cost"]
        [failure] = result.failures
        assert failure.reason == SuggestionFailureReason.reviser_error
        assert failure.detail == "E_LLM_RATE_LIMIT"

    @pytest.mark.asyncio
    async def test_short_initial_span_dropped_without_retry(self):
        """An initial span under the minimum is dropped; the model is not asked."""
        reviser = ScriptedReviser("The key factor is timing")
        result = await anchor_suggestions([anchored("key")], NOTES, reviser)

        [failure] = result.failures
        assert failure.reason == SuggestionFailureReason.selected_text_too_short
        assert failure.attempted_spans == ["key"]
        assert reviser.calls == []

    @pytest.mark.asyncio
    async def test_missing_span_dropped_without_retry(self):
        """An anchored suggestion without a span is dropped as too short."""
        reviser = ScriptedReviser()
        result = await anchor_suggestions([anchored(None)], NOTES, reviser)

        assert result.failures[0].reason == SuggestionFailureReason.selected_text_too_short
        assert reviser.calls == []

    @pytest.mark.asyncio
    async def test_empty_body_dropped(self):
        """Blank bodies are dropped as invalid."""
        result = await anchor_suggestions(
            [anchored("is cost", body="   ")], NOTES, ScriptedReviser()
        )
        assert result.drafts == []
        assert result.failures[0].reason == SuggestionFailureReason.invalid_body

    @pytest.mark.asyncio
    async def test_long_body_truncated_not_dropped(self):
        """Bodies over the limit are truncated with a warning."""
        result = await anchor_suggestions(
            [anchored("is cost", body="y" * 300)], NOTES, ScriptedReviser(), max_body_chars=200
        )

        [draft] = result.drafts
        assert len(draft.body) == 200
        assert draft.body.endswith("...")
        assert result.warnings == ["suggestion 0 body truncated to 200 chars"]

    @pytest.mark.asyncio
    async def test_general_suggestion_needs_no_anchor(self):
        """General suggestions become unanchored drafts directly."""
        result = await anchor_suggestions([general()], NOTES, ScriptedReviser())

        [draft] = result.drafts
        assert draft.kind == "general"
        assert draft.start_offset is None
        assert draft.end_offset is None
        assert draft.quoted_text is None
        assert draft.retry_count == 0

    @pytest.mark.asyncio
    async def test_cap_applies_before_anchoring(self):
        """Suggestions past the per-run cap are ignored and counted."""
        suggestions = [general(body=f"Suggestion {i}") for i in range(25)]
        result = await anchor_suggestions(suggestions, NOTES, ScriptedReviser(), max_per_run=20)

        assert len(result.drafts) == 20
        assert result.drafts[-1].body == "Suggestion 19"
        assert result.capped_count == 5
        assert result.failures == []
        assert any("limit of 20" in warning for warning in result.warnings)

    @pytest.mark.asyncio
    async def test_dropped_suggestions_do_not_use_cap_slots(self):
        """The cap counts only suggestions that passed validation."""
        suggestions = [anchored("abc") for _ in range(10)] + [
            general(body=f"Suggestion {i}") for i in range(15)
        ]
        result = await anchor_suggestions(suggestions, NOTES, ScriptedReviser(), max_per_run=20)

        assert len(result.drafts) == 15
        assert result.capped_count == 0
        assert len(result.failures) == 10
        assert {f.reason for f in result.failures} == {
            SuggestionFailureReason.selected_text_too_short
        }

    @pytest.mark.asyncio
    async def test_cap_applies_to_valid_suggestions(self):
        """Invalid entries before the limit do not push valid ones out, extras do."""
        suggestions = [general(body="   ")] * 3 + [general(body=f"Idea {i}") for i in range(22)]
        result = await anchor_suggestions(suggestions, NOTES, ScriptedReviser(), max_per_run=20)

        assert len(result.drafts) == 20
        assert result.drafts[-1].body == "Idea 19"
        assert result.capped_count == 2
        assert [f.reason for f in result.failures] == [SuggestionFailureReason.invalid_body] * 3

    @pytest.mark.asyncio
    async def test_input_order_preserved(self):
        """Drafts come out in response order."""
        suggestions = [general(body="first"), anchored("is cost", body="second"), general("third")]
        result = await anchor_suggestions(suggestions, NOTES, ScriptedReviser())
        assert [d.body for d in result.drafts] == ["first", "second", "third"]
