"""Suggestion generation through the LLM router.

SuggestionGenerator is the seam the run orchestrator depends on; tests pass
in fakes. LLMSuggestionGenerator is the production implementation.
"""

from typing import Protocol

from marginalia.config import Settings
from marginalia.logging import get_logger
from marginalia.services.llm.errors import LLMError, LLMErrorClass
from marginalia.services.llm.router import LLMRouter
from marginalia.services.llm.types import LLMCallContext, LLMOperation, LLMRequest, Turn
from marginalia.services.suggestions.parsing import parse_revision
from marginalia.services.suggestions.prompt import (
    render_revision_prompt,
    render_suggestion_prompt,
)
from marginalia.services.suggestions.types import RawSuggestion, SuggestionInput

logger = get_logger(__name__)


class SuggestionGenerator(Protocol):
    """Produces raw suggestion responses and revised spans."""

    model_name: str

    async def generate(self, inp: SuggestionInput) -> str:
        """Return the model's raw response text for one suggestion request."""
        ...

    async def revise(
        self,
        inp: SuggestionInput,
        suggestion: RawSuggestion,
        feedback: str,
        attempt: int,
    ) -> str | None:
        """Return a revised selectedText for one suggestion, or None."""
        ...


class LLMSuggestionGenerator:
    """SuggestionGenerator backed by LLMRouter."""

    def __init__(
        self,
        router: LLMRouter,
        *,
        provider: str,
        model: str,
        api_key: str | None,
        max_tokens: int = 4096,
        temperature: float | None = 0.7,
        timeout_s: int = 45,
        max_per_run: int = 20,
        min_selected_chars: int = 5,
        max_body_chars: int = 200,
        metadata_value_max_chars: int = 500,
    ):
        self._router = router
        self.provider = provider
        self.model_name = model
        self._api_key = api_key
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._timeout_s = timeout_s
        self._max_per_run = max_per_run
        self._min_selected_chars = min_selected_chars
        self._max_body_chars = max_body_chars
        self._metadata_value_max_chars = metadata_value_max_chars

    @classmethod
    def from_settings(cls, router: LLMRouter, settings: Settings) -> "LLMSuggestionGenerator":
        provider = settings.suggestion_provider
        return cls(
            router,
            provider=provider,
            model=settings.suggestion_model,
            api_key=settings.api_key_for(provider),
            max_tokens=settings.suggestion_max_tokens,
            temperature=settings.suggestion_temperature,
            timeout_s=settings.suggestion_timeout_s,
            max_per_run=settings.suggestion_max_per_run,
            min_selected_chars=settings.suggestion_min_selected_text_chars,
            max_body_chars=settings.suggestion_max_body_chars,
            metadata_value_max_chars=settings.suggestion_metadata_value_max_chars,
        )

    async def _call(self, messages: list[Turn], call_context: LLMCallContext) -> str:
        if not self._api_key:
            raise LLMError(
                LLMErrorClass.INVALID_KEY,
                f"No API key configured for {self.provider}",
                provider=self.provider,
            )
        req = LLMRequest(
            model_name=self.model_name,
            messages=messages,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
        )
        response = await self._router.generate(
            self.provider,
            req,
            self._api_key,
            timeout_s=self._timeout_s,
            call_context=call_context,
        )
        return response.text

    async def generate(self, inp: SuggestionInput) -> str:
        messages = render_suggestion_prompt(
            inp,
            max_per_run=self._max_per_run,
            min_selected_chars=self._min_selected_chars,
            max_body_chars=self._max_body_chars,
            metadata_value_max_chars=self._metadata_value_max_chars,
        )
        return await self._call(
            messages,
            LLMCallContext(
                operation=LLMOperation.SUGGESTION_RUN,
                resource_id=inp.resource_id,
                processing_log_id=inp.processing_log_id,
            ),
        )

    async def revise(
        self,
        inp: SuggestionInput,
        suggestion: RawSuggestion,
        feedback: str,
        attempt: int,
    ) -> str | None:
        messages = render_revision_prompt(
            inp, suggestion, feedback, min_selected_chars=self._min_selected_chars
        )
        raw = await self._call(
            messages,
            LLMCallContext(
                operation=LLMOperation.SUGGESTION_REVISE,
                resource_id=inp.resource_id,
                processing_log_id=inp.processing_log_id,
                attempt=attempt,
            ),
        )
        revised = parse_revision(raw)
        if revised is None:
            logger.warning("suggestion.revision_unusable", attempt=attempt, output_chars=len(raw))
        return revised
