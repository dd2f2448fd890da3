"""Shared type definitions for the LLM adapter layer.

- Turn: Provider-agnostic conversation turn
- LLMRequest: Request to LLM adapter
- LLMUsage: Token usage from provider response
- LLMResponse: Complete response from a (non-streaming) call
- LLMOperation / LLMCallContext: What a call is for, for observability only
"""

from dataclasses import dataclass
from enum import Enum
from typing import Literal


@dataclass(frozen=True)
class Turn:
    """Provider-agnostic conversation turn.

    Attributes:
        role: One of "system", "user", or "assistant"
        content: The text content of the turn
    """

    role: Literal["system", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class LLMUsage:
    """Token usage from provider response.

    All fields are optional as not all providers return all metrics.

    Attributes:
        prompt_tokens: Number of tokens in the prompt
        completion_tokens: Number of tokens in the completion
        total_tokens: Total tokens (usually prompt + completion)
    """

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None


@dataclass(frozen=True)
class LLMRequest:
    """Request to LLM adapter.

    Attributes:
        model_name: The model identifier (e.g., "claude-haiku-4-5-20251001")
        messages: List of Turn objects (system turn first if present)
        max_tokens: Maximum tokens in the completion
        temperature: Sampling temperature, None uses provider default
    """

    model_name: str
    messages: list[Turn]
    max_tokens: int
    temperature: float | None = None


@dataclass(frozen=True)
class LLMResponse:
    """Complete response from a provider call.

    Attributes:
        text: The generated text content
        usage: Token usage information (may be None if provider doesn't return it)
        provider_request_id: Provider's request ID for debugging (may be None)
    """

    text: str
    usage: LLMUsage | None
    provider_request_id: str | None


class LLMOperation(str, Enum):
    """Why an LLM call is made; decides which context fields get logged."""

    SUGGESTION_RUN = "suggestion_run"
    SUGGESTION_REVISE = "suggestion_revise"
    OTHER = "other"


@dataclass(frozen=True)
class LLMCallContext:
    """Observability metadata attached to one LLM call.

    Attributes:
        operation: What the call is for
        resource_id: Resource whose notes are being analysed
        processing_log_id: Suggestion run the call belongs to
        attempt: Anchoring attempt number for revise calls
    """

    operation: LLMOperation
    resource_id: str | None = None
    processing_log_id: str | None = None
    attempt: int | None = None
