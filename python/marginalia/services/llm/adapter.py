"""Base class for provider adapters.

An adapter turns an LLMRequest into one HTTP POST and the provider's JSON
reply into an LLMResponse. Subclasses only describe the wire format:
endpoint, headers, request body and response parsing. Adapters never retry,
never touch the database and never log request or response bodies; HTTP
errors propagate as httpx exceptions so the router can classify them.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from marginalia.services.llm.types import LLMRequest, LLMResponse, LLMUsage, Turn

CONNECT_TIMEOUT_S = 10.0


class LLMAdapter(ABC):
    """One provider's HTTP wire format over the shared client.

    Attributes:
        provider: Name the router registers this adapter under.
        url: Endpoint every request is posted to.
    """

    provider: str
    url: str

    def __init__(self, client: httpx.AsyncClient):
        self._client = client

    async def generate(self, req: LLMRequest, *, api_key: str, timeout_s: int) -> LLMResponse:
        """Post the request and parse the complete response.

        Raises:
            httpx.HTTPStatusError: On non-2xx HTTP response.
            httpx.TimeoutException: On request timeout.
            httpx.NetworkError: On network failure.
            LLMError: If a 2xx body is missing the generated text.
        """
        response = await self._client.post(
            self.url,
            headers=self.build_headers(api_key),
            json=self.build_request_body(req),
            timeout=httpx.Timeout(timeout_s, connect=CONNECT_TIMEOUT_S),
        )
        response.raise_for_status()
        return self.parse_response(req, response.json(), response.headers)

    @abstractmethod
    def build_headers(self, api_key: str) -> dict[str, str]:
        """Authentication and content headers."""

    @abstractmethod
    def build_request_body(self, req: LLMRequest) -> dict[str, Any]:
        """Provider JSON body for the request."""

    @abstractmethod
    def parse_response(
        self, req: LLMRequest, data: dict[str, Any], headers: httpx.Headers
    ) -> LLMResponse:
        """Provider JSON body to LLMResponse."""

    @staticmethod
    def turn_to_message(turn: Turn) -> dict[str, str]:
        return {"role": turn.role, "content": turn.content}

    @staticmethod
    def usage_from(
        prompt_tokens: int | None, completion_tokens: int | None, total_tokens: int | None = None
    ) -> LLMUsage:
        """Usage with the total derived when the provider leaves it out."""
        if total_tokens is None and prompt_tokens is not None and completion_tokens is not None:
            total_tokens = prompt_tokens + completion_tokens
        return LLMUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        )
