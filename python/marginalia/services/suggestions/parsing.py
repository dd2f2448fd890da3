"""Tolerant parsing of model responses.

Models are asked for exactly one JSON object but regularly wrap it in code
fences or lead with a sentence of prose. The parser:
- strips fences and leading/trailing prose
- accepts {"comments": [...]}, {"suggestions": [...]} or a bare list
- normalizes key spellings (selectedText / selected_text, suggestionType /
  suggestion_type) and category/type aliases
- drops individually malformed entries, recording one failure per entry

Only a response with no usable JSON at all raises SuggestionParseError.
"""

import json
import re
from typing import Any

from marginalia.services.suggestions.types import (
    ParsedSuggestions,
    RawSuggestion,
    SuggestionCategory,
    SuggestionFailure,
    SuggestionFailureReason,
)

SUGGESTION_TYPES = (
    "missing_concept",
    "rewording",
    "factual_correction",
    "structural_suggestion",
)

_CATEGORY_ALIASES = {
    "selected_text": SuggestionCategory.anchored,
    "selected-text": SuggestionCategory.anchored,
    "selectedtext": SuggestionCategory.anchored,
    "anchored": SuggestionCategory.anchored,
    "general": SuggestionCategory.general,
}

_TYPE_ALIASES = {
    "missing": "missing_concept",
    "missing_concepts": "missing_concept",
    "reword": "rewording",
    "rephrase": "rewording",
    "factual": "factual_correction",
    "correction": "factual_correction",
    "structure": "structural_suggestion",
    "structural": "structural_suggestion",
}

_PAYLOAD_KEYS = ("comments", "suggestions", "selectedText", "selected_text")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


class SuggestionParseError(ValueError):
    """The response contained no usable suggestion payload."""


def _first_key(entry: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in entry:
            return entry[name]
    return None


def _extract_json(raw: str) -> Any:
    text = raw.strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    try:
        return json.loads(text)
    except ValueError:
        pass

    # Prose around the payload: decode from each candidate opening bracket,
    # preferring something shaped like a suggestion payload
    decoder = json.JSONDecoder()
    fallback = None
    for match in re.finditer(r"[\[{]", text):
        try:
            value, _ = decoder.raw_decode(text, match.start())
        except ValueError:
            continue
        if _looks_like_payload(value):
            return value
        if fallback is None and isinstance(value, dict):
            fallback = value

    if fallback is not None:
        return fallback
    raise SuggestionParseError("Response does not contain JSON")


def _looks_like_payload(value: Any) -> bool:
    if isinstance(value, list):
        return all(isinstance(item, dict) for item in value)
    if isinstance(value, dict):
        return any(key in value for key in _PAYLOAD_KEYS)
    return False


def normalize_category(value: Any, selected_text: Any) -> SuggestionCategory:
    """Map a category spelling to SuggestionCategory.

    A missing category is inferred from whether a span was quoted.

    Raises:
        ValueError: If the category is present but unknown.
    """
    if value is None:
        return SuggestionCategory.anchored if selected_text else SuggestionCategory.general
    if not isinstance(value, str) or value.strip().lower() not in _CATEGORY_ALIASES:
        raise ValueError(f"unknown category: {value!r}")
    return _CATEGORY_ALIASES[value.strip().lower()]


def normalize_suggestion_type(value: Any) -> str:
    """Map a suggestion type spelling to one of SUGGESTION_TYPES.

    Raises:
        ValueError: If the type is missing or unknown.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError("missing suggestionType")
    key = re.sub(r"[\s-]+", "_", value.strip().lower())
    key = _TYPE_ALIASES.get(key, key)
    if key not in SUGGESTION_TYPES:
        raise ValueError(f"unknown suggestionType: {value!r}")
    return key


def parse_entry(entry: Any) -> RawSuggestion:
    """Normalize one response entry.

    Raises:
        ValueError: If the entry cannot be used.
    """
    if not isinstance(entry, dict):
        raise ValueError("entry is not an object")

    body = _first_key(entry, "body", "comment")
    if not isinstance(body, str):
        raise ValueError("body must be a string")

    selected_text = _first_key(entry, "selectedText", "selected_text")
    if selected_text is not None and not isinstance(selected_text, str):
        raise ValueError("selectedText must be a string or null")

    category = normalize_category(_first_key(entry, "category", "kind"), selected_text)
    suggestion_type = normalize_suggestion_type(
        _first_key(entry, "suggestionType", "suggestion_type", "type")
    )

    if category == SuggestionCategory.general:
        selected_text = None

    return RawSuggestion(
        category=category,
        suggestion_type=suggestion_type,
        body=body,
        selected_text=selected_text,
    )


def parse_suggestions(raw: str) -> ParsedSuggestions:
    """Parse a model response into suggestions.

    Raises:
        SuggestionParseError: If no JSON payload with a suggestion list is found.
    """
    if not raw or not raw.strip():
        raise SuggestionParseError("Empty response")

    payload = _extract_json(raw)
    message = None

    if isinstance(payload, list):
        entries = payload
    elif isinstance(payload, dict):
        entries = _first_key(payload, "comments", "suggestions")
        if not isinstance(entries, list):
            raise SuggestionParseError("Response has no comments list")
        message = payload.get("no_comments_message")
        if not isinstance(message, str):
            message = None
    else:
        raise SuggestionParseError("Response is not an object or list")

    suggestions: list[RawSuggestion] = []
    failures: list[SuggestionFailure] = []
    for index, entry in enumerate(entries):
        try:
            suggestions.append(parse_entry(entry))
        except ValueError as e:
            suggestion_type = entry.get("suggestionType") if isinstance(entry, dict) else None
            failures.append(
                SuggestionFailure(
                    reason=SuggestionFailureReason.malformed_entry,
                    suggestion_type=suggestion_type if isinstance(suggestion_type, str) else None,
                    detail=f"entry {index}: {e}",
                )
            )

    return ParsedSuggestions(suggestions=suggestions, failures=failures, message=message)


def parse_revision(raw: str) -> str | None:
    """Extract the revised span from a revise response.

    Accepts {"selectedText": "..."} (or selected_text), possibly fenced or
    wrapped in prose. A reply that is a single line of plain text is taken as
    the span itself, minus surrounding quotes.

    Returns:
        The revised span, or None if the response holds nothing usable.
    """
    if not raw or not raw.strip():
        return None

    try:
        payload = _extract_json(raw)
    except SuggestionParseError:
        line = raw.strip()
        if "\n" in line:
            return None
        return line.strip("\"'`") or None

    if isinstance(payload, str):
        return payload or None
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if not isinstance(payload, dict):
        return None

    value = _first_key(payload, "selectedText", "selected_text")
    if value is None:
        comments = _first_key(payload, "comments", "suggestions")
        if isinstance(comments, list) and comments and isinstance(comments[0], dict):
            value = _first_key(comments[0], "selectedText", "selected_text")
    return value if isinstance(value, str) and value else None
