"""LLM error classification.

The router catches adapter exceptions and maps them to one LLMErrorClass.
A suggestion run records the class in its processing log; the revise step
of anchoring records it as the failure detail of that one suggestion.

Status rules shared by both providers:
- 401/403 → E_LLM_INVALID_KEY
- 429 → E_LLM_RATE_LIMIT
- 404 → E_MODEL_NOT_AVAILABLE
- 5xx (Anthropic's 529 "overloaded" included) → E_LLM_PROVIDER_DOWN

A 400 is read from the provider's error body (context length, unknown
model); anything unrecognized is E_LLM_PROVIDER_DOWN.
"""

from collections.abc import Callable
from enum import Enum

from marginalia.logging import get_logger

logger = get_logger(__name__)


class LLMErrorClass(str, Enum):
    """Normalized LLM error classifications."""

    INVALID_KEY = "E_LLM_INVALID_KEY"
    RATE_LIMIT = "E_LLM_RATE_LIMIT"
    CONTEXT_TOO_LARGE = "E_LLM_CONTEXT_TOO_LARGE"
    TIMEOUT = "E_LLM_TIMEOUT"
    PROVIDER_DOWN = "E_LLM_PROVIDER_DOWN"
    MODEL_NOT_AVAILABLE = "E_MODEL_NOT_AVAILABLE"


class LLMError(Exception):
    """A failed model call, already classified.

    Attributes:
        error_class: The normalized error classification
        message: Human-readable error message
        provider: The provider that returned the error (if known)
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str,
        provider: str | None = None,
    ):
        self.error_class = error_class
        self.message = message
        self.provider = provider
        super().__init__(message)

    def as_details(self) -> dict[str, str | None]:
        """Fields stored in a processing log's error_details."""
        return {"error_class": self.error_class.value, "provider": self.provider}


_STATUS_CLASSES = {
    401: LLMErrorClass.INVALID_KEY,
    403: LLMErrorClass.INVALID_KEY,
    404: LLMErrorClass.MODEL_NOT_AVAILABLE,
    429: LLMErrorClass.RATE_LIMIT,
}


def _openai_bad_request(error: dict) -> LLMErrorClass | None:
    message = (error.get("message") or "").lower()
    if error.get("code") == "context_length_exceeded" or "maximum context length" in message:
        return LLMErrorClass.CONTEXT_TOO_LARGE
    if "model" in message and "not found" in message:
        return LLMErrorClass.MODEL_NOT_AVAILABLE
    return None


def _anthropic_bad_request(error: dict) -> LLMErrorClass | None:
    message = (error.get("message") or "").lower()
    if error.get("type") == "invalid_request_error" and "too long" in message:
        return LLMErrorClass.CONTEXT_TOO_LARGE
    return None


_BAD_REQUEST_RULES: dict[str, Callable[[dict], LLMErrorClass | None]] = {
    "openai": _openai_bad_request,
    "anthropic": _anthropic_bad_request,
}


def classify_provider_error(
    provider: str,
    status_code: int | None,
    json_body: dict | None,
    exception: Exception | None,
) -> LLMErrorClass:
    """Classify a provider failure.

    Args:
        provider: One of "openai", "anthropic"
        status_code: HTTP status code (if available)
        json_body: Parsed JSON error response (if available)
        exception: The transport exception that was raised (if any)

    Returns:
        The appropriate LLMErrorClass for this error.
    """
    # Transport failures carry no status code
    if exception is not None:
        exception_type = type(exception).__name__
        if "Timeout" in exception_type or "timeout" in str(exception).lower():
            return LLMErrorClass.TIMEOUT
        if "Network" in exception_type or "Connection" in exception_type:
            return LLMErrorClass.PROVIDER_DOWN

    if status_code is None:
        return LLMErrorClass.PROVIDER_DOWN

    bad_request_rule = _BAD_REQUEST_RULES.get(provider)
    if bad_request_rule is None:
        logger.warning("unknown_provider_for_error_classification", provider=provider)
        return LLMErrorClass.PROVIDER_DOWN

    if status_code in _STATUS_CLASSES:
        return _STATUS_CLASSES[status_code]
    if status_code == 400 and json_body:
        return bad_request_rule(json_body.get("error") or {}) or LLMErrorClass.PROVIDER_DOWN
    return LLMErrorClass.PROVIDER_DOWN
