"""LLM router: provider selection, error normalization and call logging.

Every model call of a suggestion run (the initial generate and each anchoring
revision) goes through LLMRouter.generate, which:
- resolves the adapter for the provider, honoring the ENABLE_* flags
- turns httpx failures into LLMError with a normalized LLMErrorClass
- logs llm.request.started / llm.request.finished / llm.request.failed with
  sizes, latency and token counts only (fields pass through safe_kv)

Cancellation is not an error: asyncio.CancelledError passes through untouched.
"""

import time

import httpx

from marginalia.logging import get_logger
from marginalia.services.llm.adapter import LLMAdapter
from marginalia.services.llm.anthropic_adapter import AnthropicAdapter
from marginalia.services.llm.errors import LLMError, LLMErrorClass, classify_provider_error
from marginalia.services.llm.openai_adapter import OpenAIAdapter
from marginalia.services.llm.types import (
    LLMCallContext,
    LLMOperation,
    LLMRequest,
    LLMResponse,
)
from marginalia.services.redact import safe_kv

logger = get_logger(__name__)

DEFAULT_TIMEOUT_S = 45


def _base_log_fields(provider: str, req: LLMRequest, call_ctx: LLMCallContext | None) -> dict:
    """Fields shared by the three llm.request.* events of one call."""
    fields: dict = {
        "provider": provider,
        "model_name": req.model_name,
        "llm_operation": call_ctx.operation.value if call_ctx else LLMOperation.OTHER.value,
    }
    if call_ctx is not None:
        if call_ctx.resource_id:
            fields["resource_id"] = call_ctx.resource_id
        if call_ctx.processing_log_id:
            fields["processing_log_id"] = call_ctx.processing_log_id
        if call_ctx.operation == LLMOperation.SUGGESTION_REVISE and call_ctx.attempt:
            fields["attempt"] = call_ctx.attempt
    return fields


def _error_body(response: httpx.Response) -> dict | None:
    try:
        return response.json()
    except ValueError:
        return None


def normalize_error(provider: str, exc: Exception) -> LLMError:
    """Translate an adapter exception into LLMError."""
    if isinstance(exc, LLMError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return LLMError(LLMErrorClass.TIMEOUT, "Request timed out", provider=provider)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        error_class = classify_provider_error(provider, status, _error_body(exc.response), None)
        return LLMError(error_class, f"Provider returned HTTP {status}", provider=provider)
    if isinstance(exc, httpx.NetworkError):
        return LLMError(LLMErrorClass.PROVIDER_DOWN, "Network error", provider=provider)
    return LLMError(
        LLMErrorClass.PROVIDER_DOWN, f"Unexpected error: {type(exc).__name__}", provider=provider
    )


class LLMRouter:
    """Routes LLM requests to provider adapters over one shared HTTP client.

    Args:
        client: Shared httpx.AsyncClient for connection pooling.
        enable_openai: Whether OpenAI provider is enabled.
        enable_anthropic: Whether Anthropic provider is enabled.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        enable_openai: bool = True,
        enable_anthropic: bool = True,
    ):
        self._client = client
        self._adapters: dict[str, LLMAdapter] = {
            adapter.provider: adapter
            for adapter in (OpenAIAdapter(client), AnthropicAdapter(client))
        }
        self._enabled = {"openai": enable_openai, "anthropic": enable_anthropic}

    def is_provider_available(self, provider: str) -> bool:
        """Known and enabled."""
        return provider in self._adapters and self._enabled.get(provider, False)

    def resolve_adapter(self, provider: str) -> LLMAdapter:
        """Adapter for the provider.

        Raises:
            LLMError(E_MODEL_NOT_AVAILABLE): If provider is unknown or disabled.
        """
        if provider not in self._adapters:
            message = f"Unknown provider: {provider}"
        elif not self._enabled.get(provider, False):
            message = f"Provider {provider} is disabled"
        else:
            return self._adapters[provider]
        raise LLMError(LLMErrorClass.MODEL_NOT_AVAILABLE, message, provider=provider)

    async def generate(
        self,
        provider: str,
        req: LLMRequest,
        api_key: str,
        *,
        timeout_s: int = DEFAULT_TIMEOUT_S,
        call_context: LLMCallContext | None = None,
    ) -> LLMResponse:
        """Run one model call.

        Args:
            provider: Provider name ("openai" or "anthropic").
            req: The LLM request.
            api_key: API key for the provider.
            timeout_s: Request timeout in seconds.
            call_context: What the call is for; only ids and counts are logged.

        Returns:
            LLMResponse with generated text and usage info.

        Raises:
            LLMError: With normalized error class on failure.
        """
        adapter = self.resolve_adapter(provider)
        base = _base_log_fields(provider, req, call_context)
        logger.info(
            "llm.request.started",
            **safe_kv(
                **base,
                message_chars=sum(len(m.content) for m in req.messages),
                num_turns=len(req.messages),
            ),
        )
        start = time.monotonic()

        try:
            response = await adapter.generate(req, api_key=api_key, timeout_s=timeout_s)
        except Exception as e:
            error = normalize_error(provider, e)
            provider_request_id = None
            if isinstance(e, httpx.HTTPStatusError):
                headers = e.response.headers
                provider_request_id = headers.get("x-request-id") or headers.get("request-id")
            logger.error(
                "llm.request.failed",
                **safe_kv(
                    **base,
                    outcome="error",
                    error_class=error.error_class.value,
                    latency_ms=int((time.monotonic() - start) * 1000),
                    provider_request_id=provider_request_id,
                ),
            )
            if error is e:
                raise
            raise error from e

        usage = response.usage
        logger.info(
            "llm.request.finished",
            **safe_kv(
                **base,
                outcome="success",
                latency_ms=int((time.monotonic() - start) * 1000),
                tokens_input=usage.prompt_tokens if usage else None,
                tokens_output=usage.completion_tokens if usage else None,
                tokens_total=usage.total_tokens if usage else None,
                output_chars=len(response.text),
                provider_request_id=response.provider_request_id,
            ),
        )
        return response
