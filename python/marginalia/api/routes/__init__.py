"""API route definitions.

Uses a factory so importing route modules never loads settings.
"""

from fastapi import APIRouter

from marginalia.api.routes.annotations import router as annotations_router
from marginalia.api.routes.health import router as health_router
from marginalia.api.routes.suggestions import router as suggestions_router


def create_api_router() -> APIRouter:
    """Create the API router with all routes registered."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(annotations_router, tags=["annotations"])
    api_router.include_router(suggestions_router, tags=["suggestions"])
    return api_router


__all__ = ["create_api_router"]
