"""Tests for parsing model responses into suggestions."""

import json

import pytest

from marginalia.services.suggestions.parsing import (
    SuggestionParseError,
    normalize_category,
    normalize_suggestion_type,
    parse_revision,
    parse_suggestions,
)
from marginalia.services.suggestions.types import SuggestionCategory, SuggestionFailureReason

COMMENTS = {
    "comments": [
        {
            "category": "selected_text",
            "suggestionType": "rewording",
            "body": "Say which factor matters most.",
            "selectedText": "The key factor is timing",
        },
        {
            "category": "general",
            "suggestionType": "missing_concept",
            "body": "Mention opportunity cost.",
            "selectedText": None,
        },
    ]
}


class TestParseSuggestions:
    """Tests for parse_suggestions."""

    def test_plain_json_object(self):
        """The documented shape parses entry for entry."""
        parsed = parse_suggestions(json.dumps(COMMENTS))

        assert len(parsed.suggestions) == 2
        first, second = parsed.suggestions
        assert first.category == SuggestionCategory.anchored
        assert first.suggestion_type == "rewording"
        assert first.selected_text == "The key factor is timing"
        assert second.category == SuggestionCategory.general
        assert second.selected_text is None
        assert parsed.failures == []

    def test_fenced_json(self):
        """Markdown code fences are stripped."""
        raw = "```json\n" + json.dumps(COMMENTS) + "\n```"
        assert len(parse_suggestions(raw).suggestions) == 2

    def test_prose_around_json(self):
        """Leading and trailing prose is ignored."""
        raw = "Here are my suggestions:\n" + json.dumps(COMMENTS) + "\nHope this helps!"
        assert len(parse_suggestions(raw).suggestions) == 2

    def test_prose_with_stray_braces(self):
        """A non-payload object in the prose does not win over the payload."""
        raw = 'Using {"format": "v1"} as asked:\n' + json.dumps(COMMENTS)
        assert len(parse_suggestions(raw).suggestions) == 2

    def test_bare_list(self):
        """A top-level list is accepted as the comments list."""
        raw = json.dumps(COMMENTS["comments"])
        assert len(parse_suggestions(raw).suggestions) == 2

    def test_suggestions_key(self):
        """{"suggestions": [...]} is accepted too."""
        raw = json.dumps({"suggestions": COMMENTS["comments"]})
        assert len(parse_suggestions(raw).suggestions) == 2

    def test_snake_case_keys(self):
        """selected_text and suggestion_type spellings are normalized."""
        raw = json.dumps(
            {
                "comments": [
                    {
                        "category": "selected-text",
                        "suggestion_type": "Factual Correction",
                        "body": "Check this date.",
                        "selected_text": "signed in 1215",
                    }
                ]
            }
        )
        [suggestion] = parse_suggestions(raw).suggestions
        assert suggestion.category == SuggestionCategory.anchored
        assert suggestion.suggestion_type == "factual_correction"
        assert suggestion.selected_text == "signed in 1215"

    def test_general_drops_selected_text(self):
        """A general suggestion never keeps a quote."""
        raw = json.dumps(
            {
                "comments": [
                    {
                        "category": "general",
                        "suggestionType": "structural_suggestion",
                        "body": "Group the examples.",
                        "selectedText": "stray quote",
                    }
                ]
            }
        )
        [suggestion] = parse_suggestions(raw).suggestions
        assert suggestion.selected_text is None

    def test_malformed_entries_recorded(self):
        """Bad entries are dropped one by one; good ones survive."""
        raw = json.dumps(
            {
                "comments": [
                    "not an object",
                    {"category": "general", "suggestionType": "opinion", "body": "Meh."},
                    {"category": "general", "suggestionType": "rewording"},
                    COMMENTS["comments"][1],
                ]
            }
        )
        parsed = parse_suggestions(raw)

        assert len(parsed.suggestions) == 1
        assert len(parsed.failures) == 3
        assert all(f.reason == SuggestionFailureReason.malformed_entry for f in parsed.failures)
        assert parsed.failures[0].detail == "entry 0: entry is not an object"
        assert parsed.failures[1].detail.startswith("entry 1: unknown suggestionType")
        assert parsed.failures[1].suggestion_type == "opinion"
        assert parsed.failures[2].detail == "entry 2: body must be a string"

    def test_no_comments_message(self):
        """The empty-result message is surfaced."""
        raw = '{"comments": [], "no_comments_message": "No new suggestions to add."}'
        parsed = parse_suggestions(raw)
        assert parsed.suggestions == []
        assert parsed.message == "No new suggestions to add."

    @pytest.mark.parametrize(
        "raw",
        ["", "   ", "I have no suggestions.", '{"verdict": "fine"}', "42"],
    )
    def test_unusable_response_raises(self, raw):
        """Responses without a comments list raise SuggestionParseError."""
        with pytest.raises(SuggestionParseError):
            parse_suggestions(raw)


class TestNormalization:
    """Tests for category and type normalization."""

    def test_category_inferred_from_span(self):
        """A missing category follows whether a span was quoted."""
        assert normalize_category(None, "some text") == SuggestionCategory.anchored
        assert normalize_category(None, None) == SuggestionCategory.general

    def test_unknown_category_rejected(self):
        """Unknown categories raise ValueError."""
        with pytest.raises(ValueError):
            normalize_category("sidebar", None)

    def test_type_aliases(self):
        """Common type spellings map to the canonical names."""
        assert normalize_suggestion_type("Rephrase") == "rewording"
        assert normalize_suggestion_type("missing-concept") == "missing_concept"
        assert normalize_suggestion_type("structure") == "structural_suggestion"

    def test_missing_type_rejected(self):
        """A missing type is an error, not a default."""
        with pytest.raises(ValueError, match="missing suggestionType"):
            normalize_suggestion_type(None)


class TestParseRevision:
    """Tests for parse_revision."""

    def test_json_object(self):
        """{"selectedText": ...} yields the span."""
        assert parse_revision('{"selectedText": "key factor is cost"}') == "key factor is cost"

    def test_fenced_snake_case(self):
        """Fences and snake_case keys are tolerated."""
        raw = '```json\n{"selected_text": "key factor is cost"}\n```'
        assert parse_revision(raw) == "key factor is cost"

    def test_comments_shape(self):
        """A full comments payload yields the first entry's span."""
        assert parse_revision(json.dumps(COMMENTS)) == "The key factor is timing"

    def test_single_plain_line(self):
        """A one-line plain answer is the span, minus quotes."""
        assert parse_revision('"The key factor is timing"') == "The key factor is timing"

    def test_unusable(self):
        """Multi-line prose, empty output and empty spans give None."""
        assert parse_revision("I could not find it.\nSorry.") is None
        assert parse_revision("") is None
        assert parse_revision('{"selectedText": ""}') is None
