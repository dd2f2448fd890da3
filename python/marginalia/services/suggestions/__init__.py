"""AI suggestion runs: prompting, parsing, anchoring and orchestration."""

from marginalia.services.suggestions.anchoring import (
    AnchorMatch,
    MatchOutcome,
    SuggestionReviser,
    anchor_suggestions,
    find_unique_match,
)
from marginalia.services.suggestions.generator import LLMSuggestionGenerator, SuggestionGenerator
from marginalia.services.suggestions.parsing import SuggestionParseError, parse_suggestions
from marginalia.services.suggestions.run import run_suggestions, summary_to_out
from marginalia.services.suggestions.types import (
    AnchoringResult,
    AnnotationDraft,
    RawSuggestion,
    SuggestionCategory,
    SuggestionFailure,
    SuggestionFailureReason,
    SuggestionInput,
    SuggestionRunState,
    SuggestionRunSummary,
)

__all__ = [
    "AnchorMatch",
    "AnchoringResult",
    "AnnotationDraft",
    "LLMSuggestionGenerator",
    "MatchOutcome",
    "RawSuggestion",
    "SuggestionCategory",
    "SuggestionFailure",
    "SuggestionFailureReason",
    "SuggestionGenerator",
    "SuggestionInput",
    "SuggestionParseError",
    "SuggestionReviser",
    "SuggestionRunState",
    "SuggestionRunSummary",
    "anchor_suggestions",
    "find_unique_match",
    "parse_suggestions",
    "run_suggestions",
    "summary_to_out",
]
