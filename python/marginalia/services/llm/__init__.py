"""Model access for suggestion runs.

The suggestion generator talks to models only through LLMRouter, which picks
the Anthropic or OpenAI adapter, enforces the ENABLE_* flags and turns every
transport failure into an LLMError with a normalized class:

    router = LLMRouter(httpx_client, enable_openai=False)
    response = await router.generate(
        "anthropic",
        LLMRequest(model_name=..., messages=[Turn(role="user", content=...)], max_tokens=4096),
        api_key=settings.anthropic_api_key,
        call_context=LLMCallContext(operation=LLMOperation.SUGGESTION_RUN),
    )
"""

from marginalia.services.llm.adapter import LLMAdapter
from marginalia.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from marginalia.services.llm.router import LLMRouter
from marginalia.services.llm.types import (
    LLMCallContext,
    LLMOperation,
    LLMRequest,
    LLMResponse,
    LLMUsage,
    Turn,
)

__all__ = [
    "LLMAdapter",
    "LLMCallContext",
    "LLMError",
    "LLMErrorClass",
    "LLMOperation",
    "LLMRequest",
    "LLMResponse",
    "LLMRouter",
    "LLMUsage",
    "Turn",
    "classify_provider_error",
]
