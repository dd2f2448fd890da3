"""Anchoring AI suggestions to the notes.

The model quotes the passage each suggestion is about (selectedText). A quote
becomes an anchor only if it occurs exactly once, literally, in the plain-text
notes. Otherwise the model is asked to revise that one quote, with feedback,
up to max_attempts attempts in total (the first one included). Suggestions
that never anchor are dropped and reported, never stored unanchored.

Suggestions are processed sequentially; the reviser is the only await point.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace

from marginalia.db.models import AnnotationKind
from marginalia.logging import get_logger
from marginalia.services.llm.errors import LLMError
from marginalia.services.suggestions.types import (
    AnchoringResult,
    AnnotationDraft,
    RawSuggestion,
    SuggestionCategory,
    SuggestionFailure,
    SuggestionFailureReason,
)

logger = get_logger(__name__)

# (suggestion with its current span, feedback, attempt number) -> revised span or None
SuggestionReviser = Callable[[RawSuggestion, str, int], Awaitable[str | None]]


@dataclass(frozen=True)
class AnchorMatch:
    """Half-open [start, end) range of a unique match."""

    start: int
    end: int


@dataclass(frozen=True)
class MatchOutcome:
    """Result of looking a span up in the notes.

    match is set only when occurrences == 1.
    """

    occurrences: int
    match: AnchorMatch | None = None


def count_occurrences(text: str, needle: str) -> int:
    """Literal occurrences of needle in text, overlapping ones included."""
    if not needle:
        return 0
    count = 0
    index = text.find(needle)
    while index != -1:
        count += 1
        index = text.find(needle, index + 1)
    return count


def find_unique_match(text: str, selected_text: str) -> MatchOutcome:
    """Locate selected_text in text when it occurs exactly once."""
    occurrences = count_occurrences(text, selected_text)
    if occurrences != 1:
        return MatchOutcome(occurrences=occurrences)
    start = text.find(selected_text)
    return MatchOutcome(
        occurrences=1,
        match=AnchorMatch(start=start, end=start + len(selected_text)),
    )


def build_feedback(selected_text: str, occurrences: int) -> str:
    """Explain to the model why its quote could not be anchored."""
    if occurrences == 0:
        return (
            f'The selectedText "{selected_text}" was not found in the notes. '
            "Copy a passage from the notes exactly, character-for-character."
        )
    return (
        f'The selectedText "{selected_text}" occurs {occurrences} times in the notes. '
        "Expand it to a longer phrase that occurs only once."
    )


def _short_span_feedback(min_selected_chars: int) -> str:
    return (
        f"The revised selectedText was missing or shorter than {min_selected_chars} "
        "characters. Quote a longer passage from the notes."
    )


def truncate_body(body: str, max_chars: int) -> str:
    """Shorten a body to max_chars, ending in '...'."""
    if len(body) <= max_chars:
        return body
    return body[: max_chars - 3] + "..."


def _validation_failure(
    suggestion: RawSuggestion, min_selected_chars: int
) -> SuggestionFailure | None:
    """Why a suggestion is dropped before anchoring, or None if it is usable."""
    if not suggestion.body.strip():
        return SuggestionFailure(
            reason=SuggestionFailureReason.invalid_body,
            suggestion_type=suggestion.suggestion_type,
            detail="empty body",
        )
    span = suggestion.selected_text
    if suggestion.category == SuggestionCategory.anchored and (
        span is None or len(span) < min_selected_chars
    ):
        return SuggestionFailure(
            reason=SuggestionFailureReason.selected_text_too_short,
            suggestion_type=suggestion.suggestion_type,
            attempted_spans=[span],
        )
    return None


async def _anchor_one(
    suggestion: RawSuggestion,
    text: str,
    reviser: SuggestionReviser,
    *,
    min_selected_chars: int,
    max_attempts: int,
) -> AnnotationDraft | SuggestionFailure:
    span = suggestion.selected_text
    spans: list[str | None] = [span]
    attempt = 1

    while True:
        if span is None or len(span) < min_selected_chars:
            feedback = _short_span_feedback(min_selected_chars)
        else:
            outcome = find_unique_match(text, span)
            if outcome.match is not None:
                return AnnotationDraft(
                    kind=AnnotationKind.anchored.value,
                    body=suggestion.body,
                    suggestion_type=suggestion.suggestion_type,
                    start_offset=outcome.match.start,
                    end_offset=outcome.match.end,
                    quoted_text=span,
                    retry_count=attempt - 1,
                )
            feedback = build_feedback(span, outcome.occurrences)

        if attempt >= max_attempts:
            return SuggestionFailure(
                reason=SuggestionFailureReason.max_retries_exceeded,
                suggestion_type=suggestion.suggestion_type,
                attempted_spans=spans,
                detail=feedback,
            )

        attempt += 1
        try:
            span = await reviser(replace(suggestion, selected_text=span), feedback, attempt)
        except LLMError as e:
            return SuggestionFailure(
                reason=SuggestionFailureReason.reviser_error,
                suggestion_type=suggestion.suggestion_type,
                attempted_spans=spans,
                detail=e.error_class.value,
            )
        spans.append(span)


async def anchor_suggestions(
    suggestions: Sequence[RawSuggestion],
    text: str,
    reviser: SuggestionReviser,
    *,
    max_body_chars: int = 200,
    min_selected_chars: int = 5,
    max_attempts: int = 3,
    max_per_run: int = 20,
) -> AnchoringResult:
    """Validate and anchor a run's suggestions.

    Args:
        suggestions: Parsed suggestions in response order.
        text: Current plain-text notes.
        reviser: Asks the model for a new span for one suggestion.
        max_body_chars: Longer bodies are truncated, not dropped.
        min_selected_chars: Shorter initial spans are dropped without a retry.
        max_attempts: Match attempts per anchored suggestion, first included.
        max_per_run: Valid suggestions past this many are ignored; dropped ones
            do not count toward it.

    Returns:
        AnchoringResult with drafts in input order. Validation failures come
        before anchoring failures.
    """
    result = AnchoringResult()

    valid: list[tuple[int, RawSuggestion]] = []
    for index, suggestion in enumerate(suggestions):
        failure = _validation_failure(suggestion, min_selected_chars)
        if failure is None:
            valid.append((index, suggestion))
        else:
            result.failures.append(failure)

    kept = valid[:max_per_run]
    result.capped_count = len(valid) - len(kept)
    if result.capped_count:
        result.warnings.append(
            f"{result.capped_count} suggestions over the limit of {max_per_run} were ignored"
        )
        logger.warning("suggestions.capped", valid=len(valid), max_per_run=max_per_run)

    for index, suggestion in kept:
        if len(suggestion.body) > max_body_chars:
            logger.warning(
                "suggestion.body_truncated",
                index=index,
                body_chars=len(suggestion.body),
                max_body_chars=max_body_chars,
            )
            result.warnings.append(f"suggestion {index} body truncated to {max_body_chars} chars")
            suggestion = replace(suggestion, body=truncate_body(suggestion.body, max_body_chars))

        if suggestion.category == SuggestionCategory.general:
            result.drafts.append(
                AnnotationDraft(
                    kind=AnnotationKind.general.value,
                    body=suggestion.body,
                    suggestion_type=suggestion.suggestion_type,
                )
            )
            continue

        outcome = await _anchor_one(
            suggestion,
            text,
            reviser,
            min_selected_chars=min_selected_chars,
            max_attempts=max_attempts,
        )
        if isinstance(outcome, AnnotationDraft):
            result.drafts.append(outcome)
            logger.info(
                "suggestion.anchored",
                index=index,
                start_offset=outcome.start_offset,
                end_offset=outcome.end_offset,
                retry_count=outcome.retry_count,
            )
        else:
            result.failures.append(outcome)
            logger.info(
                "suggestion.dropped",
                index=index,
                reason=outcome.reason.value,
                attempts=len(outcome.attempted_spans),
            )

    return result
