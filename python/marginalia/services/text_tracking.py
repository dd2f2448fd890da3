"""Anchor tracking under text edits.

Pure functions that keep annotation anchors attached to the right span of a
resource's plain-text notes while the notes are being edited:

- similarity: in-order character match ratio used as a drift signal
- find_change_start / change_length: locate one contiguous edit between two
  snapshots of the text
- update_anchor_offsets: shift [start, end) ranges for one edit
- refresh_staleness: resync quoted_text and flag anchors whose span drifted
- apply_text_change: the two passes above for one observed edit

Edit localisation assumes exactly ONE contiguous change between two
observations. Two disjoint edits (e.g. two pastes before the next observation)
collapse into a single change point at the first difference, so anchors
between the two edits shift by the net length of both. Staleness detection
catches the resulting drift; nothing here raises on bad input.

All offsets are over plain text (see marginalia.services.plain_text).
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from marginalia.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STALE_THRESHOLD = 0.5

# Fields written back to storage when an anchor changes
ANCHOR_FIELDS = ("start_offset", "end_offset", "quoted_text", "is_stale", "original_quoted_text")


@dataclass(frozen=True)
class AnchorState:
    """Anchor-related fields of one annotation, detached from storage.

    Non-anchored records (general annotations, replies) pass through every
    function unchanged.
    """

    id: Any
    start_offset: int | None
    end_offset: int | None
    quoted_text: str | None
    is_stale: bool = False
    original_quoted_text: str | None = None
    anchored: bool = True

    @classmethod
    def from_record(cls, record: Any) -> "AnchorState":
        """Build from any object exposing the annotation attributes (ORM row, schema)."""
        kind = getattr(record, "kind", "anchored")
        kind = getattr(kind, "value", kind)
        return cls(
            id=record.id,
            start_offset=record.start_offset,
            end_offset=record.end_offset,
            quoted_text=record.quoted_text,
            is_stale=bool(record.is_stale),
            original_quoted_text=record.original_quoted_text,
            anchored=kind == "anchored" and getattr(record, "thread_root_id", None) is None,
        )

    def anchor_fields(self) -> dict[str, Any]:
        """The persisted anchor fields as a dict."""
        return {field: getattr(self, field) for field in ANCHOR_FIELDS}


# =============================================================================
# Similarity & Diff Primitives
# =============================================================================


def similarity(a: str, b: str) -> float:
    """Crude similarity ratio in [0, 1].

    Scans the longer string once, greedily matching the shorter string's
    characters in order, and returns matched / len(longer). This is an in-order
    subsequence count, not an edit distance; it is only a drift signal.

    Returns:
        1.0 when the strings are equal (including both empty), 0.0 when exactly
        one is empty, otherwise the match ratio.
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    longer, shorter = (a, b) if len(a) > len(b) else (b, a)

    matched = 0
    for ch in longer:
        if matched == len(shorter):
            break
        if ch == shorter[matched]:
            matched += 1

    return matched / len(longer)


def find_change_start(old_text: str, new_text: str) -> int:
    """Index of the first character where the two snapshots differ.

    If one string is a prefix of the other, returns the shared length.
    """
    shared = min(len(old_text), len(new_text))
    for i in range(shared):
        if old_text[i] != new_text[i]:
            return i
    return shared


def change_length(old_text: str, new_text: str) -> int:
    """Signed net length of the edit (positive = insertion, negative = deletion)."""
    return len(new_text) - len(old_text)


# =============================================================================
# Offset Tracker
# =============================================================================


def _has_usable_offsets(state: AnchorState) -> bool:
    start, end = state.start_offset, state.end_offset
    if start is None or end is None:
        return False
    return 0 <= start <= end


def update_anchor_offsets(
    annotations: Sequence[AnchorState],
    change_start: int,
    change_len: int,
) -> list[AnchorState]:
    """Shift anchors for one contiguous edit.

    Rules, per anchored record:
        change_start >= end            edit after the span (an edit exactly at
                                       the end does not extend it): unchanged
        change_start <= start          edit before or at the start: the whole
                                       span moves, both ends floored at 0
        start < change_start < end     edit inside: only end moves, floored at
                                       start + 1

    An anchor always keeps at least one character, so a deletion covering the
    whole span leaves a one-character range that the staleness pass then flags.

    Args:
        annotations: Current anchor states. Not modified.
        change_start: Index where the edit starts.
        change_len: Signed net length of the edit.

    Returns:
        New list of states, same order as the input.
    """
    if change_start < 0:
        logger.debug("anchor_offsets.invalid_change_start", change_start=change_start)
        return list(annotations)

    updated = []
    for state in annotations:
        if not state.anchored:
            updated.append(state)
            continue
        if not _has_usable_offsets(state):
            logger.debug(
                "anchor_offsets.invalid_offsets",
                annotation_id=str(state.id),
                start_offset=state.start_offset,
                end_offset=state.end_offset,
            )
            updated.append(state)
            continue

        start, end = state.start_offset, state.end_offset

        if change_start >= end:
            updated.append(state)
        elif change_start <= start:
            new_start = max(0, start + change_len)
            new_end = max(new_start + 1, end + change_len)
            updated.append(replace(state, start_offset=new_start, end_offset=new_end))
        else:
            updated.append(replace(state, end_offset=max(start + 1, end + change_len)))

    return updated


def _refresh_one(state: AnchorState, text: str, threshold: float) -> AnchorState:
    current = text[state.start_offset : state.end_offset]

    # A stale anchor is judged against what it originally quoted, so undoing
    # the edit brings it back.
    if state.is_stale and state.original_quoted_text is not None:
        reference = state.original_quoted_text
    else:
        reference = state.quoted_text or ""

    if current == reference:
        if state.is_stale or state.quoted_text != current:
            return replace(state, is_stale=False, quoted_text=current)
        return state

    score = similarity(current, reference)

    if score < threshold:
        return replace(
            state,
            is_stale=True,
            original_quoted_text=state.original_quoted_text or state.quoted_text,
            quoted_text=current,
        )

    if state.is_stale or state.quoted_text != current:
        return replace(state, is_stale=False, quoted_text=current)
    return state


def refresh_staleness(
    annotations: Sequence[AnchorState],
    text: str,
    threshold: float = DEFAULT_STALE_THRESHOLD,
) -> list[AnchorState]:
    """Resync quoted_text with the text now under each anchor and flag drift.

    For each anchored record, current = text[start:end]:
        - equal to the reference: not stale
        - similarity below threshold: stale; original_quoted_text is kept if
          already set, otherwise it takes the previous quoted_text
        - similarity at or above threshold: not stale
    quoted_text always ends up equal to current. original_quoted_text is never
    cleared. The reference is quoted_text, or original_quoted_text while the
    anchor is stale.

    Args:
        annotations: Anchor states after the offset update. Not modified.
        text: Full current plain text.
        threshold: Similarity below which an anchor is stale.

    Returns:
        New list of states, same order as the input.
    """
    refreshed = []
    for state in annotations:
        if not state.anchored or not _has_usable_offsets(state):
            refreshed.append(state)
            continue
        refreshed.append(_refresh_one(state, text, threshold))
    return refreshed


def apply_text_change(
    annotations: Sequence[AnchorState],
    old_text: str,
    new_text: str,
    threshold: float = DEFAULT_STALE_THRESHOLD,
) -> list[AnchorState]:
    """Update anchors for one observed edit between two plain-text snapshots."""
    if old_text == new_text:
        return list(annotations)

    start = find_change_start(old_text, new_text)
    delta = change_length(old_text, new_text)

    shifted = update_anchor_offsets(annotations, start, delta)
    return refresh_staleness(shifted, new_text, threshold)


def changed_anchor_fields(
    before: Iterable[AnchorState],
    after: Iterable[AnchorState],
) -> list[AnchorState]:
    """States in `after` whose persisted anchor fields differ from `before`.

    Records are matched by id; records without a counterpart in `before` are
    treated as changed.
    """
    previous = {state.id: state for state in before}
    changed = []
    for state in after:
        old = previous.get(state.id)
        if old is None or old.anchor_fields() != state.anchor_fields():
            changed.append(state)
    return changed
