"""Keep document text out of the logs.

The notes being annotated, annotation bodies, quoted and selected spans,
prompts and raw model output are never logged as-is. Log their size
(`notes_chars`, `body_length`) or a digest (`quoted_text_sha256`) instead.
Credentials are never logged in any form.
"""

import hashlib
import os

from marginalia.logging import get_logger

FORBIDDEN_KEYS = frozenset(
    {
        # document content
        "text",
        "notes",
        "body",
        "quoted_text",
        "original_quoted_text",
        "selected_text",
        # model traffic
        "prompt",
        "content",
        "raw_output",
        "raw_body",
        # credentials
        "api_key",
        "bearer",
        "token",
        "secret",
        "password",
    }
)

DERIVED_SUFFIXES = ("_chars", "_length", "_sha256", "_hash")

logger = get_logger(__name__)


def hash_text(value: str) -> str:
    """Hex SHA-256 of the UTF-8 text; correlates equal spans across entries."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def safe_kv(*, _env: str | None = None, **fields) -> dict:
    """Return log fields unchanged after checking none of them carries raw text.

    Usage:
        logger.info("anchor_sync.flushed", **safe_kv(
            resource_id=str(resource_id),
            notes_chars=len(notes),
        ))

    Args:
        _env: Environment name; defaults to MARGINALIA_ENV.
        **fields: Candidate log fields.

    Raises:
        ValueError: In local/test, when a forbidden key is passed. Staging and
            prod log `safe_kv_violation` and let the entry through.
    """
    violations = sorted(
        key
        for key in fields
        if key in FORBIDDEN_KEYS and not key.endswith(DERIVED_SUFFIXES)
    )
    if not violations:
        return fields

    env = _env or os.environ.get("MARGINALIA_ENV", "local")
    if env in ("local", "test"):
        raise ValueError(f"Forbidden log keys without redacted suffix: {violations}")
    logger.warning("safe_kv_violation", forbidden_keys=violations)
    return fields
