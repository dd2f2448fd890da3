"""Prompt rendering for suggestion runs.

Two conversations are built here:
- the suggestion prompt: system rules + notes, metadata, existing suggestions
- the revision prompt: one suggestion whose selectedText failed to anchor,
  with feedback on why

Notes are always sent whole; only metadata values are shortened.
"""

from marginalia.services.llm.types import Turn
from marginalia.services.suggestions.types import RawSuggestion, SuggestionInput

NO_SUGGESTIONS_MESSAGE = "No new suggestions to add."

_EMPTY_RESPONSE = (
    '{"comments": [], "no_comments_message": "' + NO_SUGGESTIONS_MESSAGE + '"}'
)

SYSTEM_PROMPT_TEMPLATE = """\
# Goal:
Generate high-value, impactful, actionable suggestions to improve educational notes.

# Comment Rules:

## Category Types:
- selected_text: Anchored to passage (exact quoted text, min {min_selected_chars} chars)
- general: Broad observation not tied to specific text

## Suggestion Types:
- missing_concept: Key topics from source material not in notes (use selected_text if \
anchoring to where it should be added, or general if broadly applicable)
- rewording: Clearer phrasing for existing text (must use selected_text category and quote \
the exact text from {{USER_NOTES}} to be reworded)
- factual_correction: Inaccuracies vs source material (must use selected_text category and \
quote the exact inaccurate text from {{USER_NOTES}})
- structural_suggestion: Better organization or removing duplicate/redundant information \
(use selected_text if pointing to a specific section of {{USER_NOTES}}, or general for \
overall structure)

# Provided Content:
- {{USER_NOTES}}: The user's current notes text that you are improving.
- {{RESOURCE_METADATA}}: Metadata of the resource the notes are about. This is your source \
of truth for the content of the resource.
- {{EXISTING_AI_SUGGESTIONS}}: Suggestions already made on these notes, provided so you \
avoid duplicates.

## When No New Suggestions Exist:
- Compare each potential comment against {{EXISTING_AI_SUGGESTIONS}} by selected text and intent.
- If every idea overlaps, respond exactly with `{empty_response}`.
- Never restate or rephrase an existing suggestion just to fill the output.

# Critical Guidelines:
- Return at most {max_per_run} comments. Quality over quantity.
- For selected_text: copy text EXACTLY from {{USER_NOTES}} (character-for-character), \
long enough to occur only once. NEVER quote from {{RESOURCE_METADATA}}.
- Keep each body under {max_body_chars} characters.
- Focus on: missing key concepts, unclear phrasing, factual errors, structure.

# Output Format:
Return EXACTLY one valid JSON object, with no markdown fences and no text before or after it:

{{
  "comments": [
    {{
      "category": "general" | "selected_text",
      "suggestionType": "missing_concept" | "rewording" | "factual_correction" | \
"structural_suggestion",
      "body": "Your suggestion (max {max_body_chars} chars)",
      "selectedText": "exact text from notes" | null
    }}
  ]
}}

## Schema Rules:
- "selectedText" is required (non-null) if category is "selected_text"
- "selectedText" must be null if category is "general"
- "selectedText" must be at least {min_selected_chars} characters if provided
- "no_comments_message" is optional; include it ONLY when the comments array is empty
"""

REVISION_SYSTEM_PROMPT = """\
You previously suggested an improvement to a user's notes, quoting a passage as \
"selectedText". That quote could not be located in the notes unambiguously.

Return a corrected "selectedText" for the same suggestion:
- copied EXACTLY from the notes, character-for-character
- occurring exactly once in the notes
- at least {min_selected_chars} characters long

Respond with exactly one JSON object and nothing else: {{"selectedText": "..."}}
"""


def shorten_value(value: str, max_chars: int) -> str:
    """Cut a metadata value to max_chars, marking the cut with '...'."""
    if len(value) > max_chars:
        return value[:max_chars] + "..."
    return value


def render_system_prompt(max_per_run: int, min_selected_chars: int, max_body_chars: int) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(
        max_per_run=max_per_run,
        min_selected_chars=min_selected_chars,
        max_body_chars=max_body_chars,
        empty_response=_EMPTY_RESPONSE,
    )


def render_user_prompt(inp: SuggestionInput, metadata_value_max_chars: int = 500) -> str:
    """Build the user turn: notes, metadata, existing suggestions, task.

    Empty sections other than the notes are left out.
    """
    sections: list[str] = ["# User Notes\n"]
    if inp.document_text.strip():
        sections.append(inp.document_text)
    else:
        sections.append("(No notes provided yet)")
    sections.append("\n\n")

    if inp.metadata:
        sections.append("# Resource Metadata\n")
        for key, value in inp.metadata.items():
            sections.append(f"**{key}**: {shorten_value(value, metadata_value_max_chars)}\n")
        sections.append("\n")

    if inp.existing_suggestions:
        sections.append("# Existing AI Suggestions (Do NOT Duplicate)\n")
        for index, body in enumerate(inp.existing_suggestions, start=1):
            sections.append(f"{index}. {body}\n")
        sections.append("\n")

    sections.append("# Task\n")
    sections.append(
        "Analyze the user notes and provide improvement suggestions as JSON comments, "
        "following the output format exactly.\n"
    )
    return "".join(sections)


def render_suggestion_prompt(
    inp: SuggestionInput,
    *,
    max_per_run: int,
    min_selected_chars: int,
    max_body_chars: int,
    metadata_value_max_chars: int = 500,
) -> list[Turn]:
    """Full conversation for one suggestion request."""
    return [
        Turn(
            role="system",
            content=render_system_prompt(max_per_run, min_selected_chars, max_body_chars),
        ),
        Turn(role="user", content=render_user_prompt(inp, metadata_value_max_chars)),
    ]


def render_revision_prompt(
    inp: SuggestionInput,
    suggestion: RawSuggestion,
    feedback: str,
    *,
    min_selected_chars: int,
) -> list[Turn]:
    """Conversation asking the model to fix one suggestion's selectedText."""
    user = (
        "# User Notes\n"
        f"{inp.document_text}\n\n"
        "# Your Suggestion\n"
        f"**suggestionType**: {suggestion.suggestion_type}\n"
        f"**body**: {suggestion.body}\n"
        f"**selectedText**: {suggestion.selected_text or ''}\n\n"
        "# Problem\n"
        f"{feedback}\n"
    )
    return [
        Turn(
            role="system",
            content=REVISION_SYSTEM_PROMPT.format(min_selected_chars=min_selected_chars),
        ),
        Turn(role="user", content=user),
    ]
