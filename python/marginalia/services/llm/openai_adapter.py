"""OpenAI chat completions adapter.

POST https://api.openai.com/v1/chat/completions with a bearer token. Turns map
one-to-one onto chat messages. The reply text is choices[0].message.content;
the provider request id comes from the x-request-id header, else the body id.
"""

from typing import Any

import httpx

from marginalia.services.llm.adapter import LLMAdapter
from marginalia.services.llm.errors import LLMError, LLMErrorClass
from marginalia.services.llm.types import LLMRequest, LLMResponse

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


class OpenAIAdapter(LLMAdapter):
    """OpenAI API adapter for chat completions."""

    provider = "openai"
    url = OPENAI_CHAT_URL

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def build_request_body(self, req: LLMRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": req.model_name,
            "messages": [self.turn_to_message(turn) for turn in req.messages],
            "max_tokens": req.max_tokens,
        }
        if req.temperature is not None:
            body["temperature"] = req.temperature
        return body

    def parse_response(
        self, req: LLMRequest, data: dict[str, Any], headers: httpx.Headers
    ) -> LLMResponse:
        choices = data.get("choices") or []
        if not choices:
            raise LLMError(
                LLMErrorClass.PROVIDER_DOWN,
                "OpenAI response missing choices",
                provider=self.provider,
            )

        usage_data = data.get("usage")
        usage = (
            self.usage_from(
                usage_data.get("prompt_tokens"),
                usage_data.get("completion_tokens"),
                usage_data.get("total_tokens"),
            )
            if usage_data
            else None
        )
        return LLMResponse(
            text=choices[0].get("message", {}).get("content") or "",
            usage=usage,
            provider_request_id=headers.get("x-request-id") or data.get("id"),
        )
