"""Anthropic messages adapter.

POST https://api.anthropic.com/v1/messages with x-api-key and
anthropic-version headers. System turns are joined into the top-level
"system" field; the reply text is the concatenation of the "text" content
blocks, and the message id doubles as the provider request id.
"""

from typing import Any

import httpx

from marginalia.logging import get_logger
from marginalia.services.llm.adapter import LLMAdapter
from marginalia.services.llm.types import LLMRequest, LLMResponse

logger = get_logger(__name__)

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"


class AnthropicAdapter(LLMAdapter):
    """Anthropic API adapter for the messages endpoint."""

    provider = "anthropic"
    url = ANTHROPIC_MESSAGES_URL

    def build_headers(self, api_key: str) -> dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "Content-Type": "application/json",
        }

    def build_request_body(self, req: LLMRequest) -> dict[str, Any]:
        system = "\n\n".join(t.content for t in req.messages if t.role == "system")
        body: dict[str, Any] = {
            "model": req.model_name,
            "max_tokens": req.max_tokens,
            "messages": [self.turn_to_message(t) for t in req.messages if t.role != "system"],
        }
        if system:
            body["system"] = system
        if req.temperature is not None:
            body["temperature"] = req.temperature
        return body

    def parse_response(
        self, req: LLMRequest, data: dict[str, Any], headers: httpx.Headers
    ) -> LLMResponse:
        # A cut-off reply usually means a suggestion list with a broken tail
        if data.get("stop_reason") == "max_tokens":
            logger.warning("anthropic.response_truncated", model_name=req.model_name)

        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage_data = data.get("usage")
        usage = (
            self.usage_from(usage_data.get("input_tokens"), usage_data.get("output_tokens"))
            if usage_data
            else None
        )
        return LLMResponse(text=text, usage=usage, provider_request_id=data.get("id"))
