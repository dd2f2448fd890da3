"""FastAPI dependencies for route handlers.

Database sessions, settings, the shared LLM router and the suggestion
generator built on top of it. Tests override these with
app.dependency_overrides.
"""

from typing import Annotated

from fastapi import Depends, Request

from marginalia.config import Settings, get_settings
from marginalia.db.session import get_db
from marginalia.services.llm import LLMRouter
from marginalia.services.suggestions import LLMSuggestionGenerator, SuggestionGenerator

__all__ = ["get_db", "get_llm_router", "get_settings_dep", "get_suggestion_generator"]


def get_settings_dep(request: Request) -> Settings:
    """Settings the app was created with, falling back to the process settings."""
    settings = getattr(request.app.state, "settings", None)
    return settings if settings is not None else get_settings()


def get_llm_router(request: Request) -> LLMRouter:
    """Get the shared LLM router from app state.

    The router is created at startup around one httpx.AsyncClient, so all
    requests share its connection pool.
    """
    return request.app.state.llm_router


def get_suggestion_generator(
    router: Annotated[LLMRouter, Depends(get_llm_router)],
    settings: Annotated[Settings, Depends(get_settings_dep)],
) -> SuggestionGenerator:
    """Suggestion generator configured from settings."""
    return LLMSuggestionGenerator.from_settings(router, settings)
