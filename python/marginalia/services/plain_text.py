"""Markdown to plain-text conversion.

Anchors are character offsets into the plain-text view of a resource's notes,
never into the raw markdown, so formatting-only edits (bold to italic, a new
heading marker) do not move or invalidate them. Every place that computes or
checks offsets goes through strip_markdown first.
"""

import re

_CODE_FENCE_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`([^`]+)`")
_BOLD_STAR_RE = re.compile(r"\*\*([^*]+)\*\*")
_BOLD_UNDERSCORE_RE = re.compile(r"__([^_]+)__")
_ITALIC_STAR_RE = re.compile(r"\*([^*]+)\*")
_ITALIC_UNDERSCORE_RE = re.compile(r"_([^_]+)_")
_STRIKE_RE = re.compile(r"~~([^~]+)~~")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\([^)]+\)")
_HEADING_RE = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BLOCKQUOTE_RE = re.compile(r"^>\s+", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*[-*+]\s+", re.MULTILINE)
_ORDERED_RE = re.compile(r"^\s*\d+\.\s+", re.MULTILINE)
_HR_RE = re.compile(r"^[-*_]{3,}$", re.MULTILINE)
_MULTI_SPACE_RE = re.compile(r" {2,}")
_MULTI_NEWLINE_RE = re.compile(r"\n{3,}")


def strip_markdown(markdown: str | None) -> str:
    """Strip markdown formatting, keeping only the readable text.

    Rules are applied in order; bold runs before italic so ``**x**`` is not
    half-consumed by the single-star pattern, and links run before images
    (an image keeps its alt text with the leading ``!``).

    Args:
        markdown: Markdown source. None is treated as empty.

    Returns:
        Plain text with collapsed spaces, trimmed lines, at most one blank
        line between paragraphs, and no leading or trailing whitespace.
    """
    if not markdown:
        return ""

    text = _CODE_FENCE_RE.sub("", markdown)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _BOLD_STAR_RE.sub(r"\1", text)
    text = _BOLD_UNDERSCORE_RE.sub(r"\1", text)
    text = _ITALIC_STAR_RE.sub(r"\1", text)
    text = _ITALIC_UNDERSCORE_RE.sub(r"\1", text)
    text = _STRIKE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _IMAGE_RE.sub(r"\1", text)
    text = _HEADING_RE.sub("", text)
    text = _BLOCKQUOTE_RE.sub("", text)
    text = _BULLET_RE.sub("", text)
    text = _ORDERED_RE.sub("", text)
    text = _HR_RE.sub("", text)
    text = _MULTI_SPACE_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _MULTI_NEWLINE_RE.sub("\n\n", text)
    return text.strip()


def plain_text_length(markdown: str | None) -> int:
    """Length of the plain-text view of a markdown string."""
    return len(strip_markdown(markdown))


def is_same_plain_text(first: str | None, second: str | None) -> bool:
    """True when two markdown strings differ only in formatting."""
    return strip_markdown(first) == strip_markdown(second)
