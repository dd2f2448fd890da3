"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, viewer middleware, request-id middleware,
and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- Every response, including 401/403 from ViewerMiddleware, gets X-Request-ID

LLM Client Lifecycle:
- httpx.AsyncClient is created at startup, stored in app.state
- LLMRouter wraps the shared client for connection pooling
- Client is closed gracefully at shutdown
"""

import json
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request

from marginalia.api.routes import create_api_router
from marginalia.auth.middleware import ViewerMiddleware
from marginalia.config import Environment, Settings, get_settings
from marginalia.errors import ApiErrorCode
from marginalia.logging import configure_logging, get_logger
from marginalia.middleware.request_id import RequestIDMiddleware
from marginalia.responses import error_json, register_exception_handlers
from marginalia.services.llm import LLMRouter

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the shared HTTP client and LLM router; close the client on shutdown."""
    settings: Settings = app.state.settings

    app.state.httpx_client = httpx.AsyncClient(
        timeout=httpx.Timeout(60.0, connect=10.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )
    app.state.llm_router = LLMRouter(
        app.state.httpx_client,
        enable_openai=settings.enable_openai,
        enable_anthropic=settings.enable_anthropic,
    )
    logger.info(
        "llm_router_initialized",
        enable_openai=settings.enable_openai,
        enable_anthropic=settings.enable_anthropic,
        suggestion_provider=settings.suggestion_provider,
        suggestion_model=settings.suggestion_model,
    )

    yield

    await app.state.httpx_client.aclose()
    logger.info("httpx_client_closed")


def create_app(settings: Settings | None = None, log_requests: bool = True) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; defaults to get_settings().
        log_requests: Whether to log one access entry per request.

    Returns:
        Configured FastAPI application instance.
    """
    settings = settings or get_settings()
    configure_logging(json_format=settings.marginalia_env != Environment.LOCAL)

    app = FastAPI(
        title="Marginalia API",
        description="Text-anchored annotations and AI suggestions for resource notes",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    register_exception_handlers(app)

    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Reject malformed JSON bodies before they reach route handlers."""
        if request.method in ("POST", "PUT", "PATCH"):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        return error_json(
                            ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body", 400
                        )
        return await call_next(request)

    app.include_router(create_api_router())

    app.add_middleware(
        ViewerMiddleware,
        requires_internal_header=settings.requires_internal_header,
        internal_secret=settings.marginalia_internal_secret,
    )
    logger.info(
        "viewer_middleware_enabled",
        env=settings.marginalia_env.value,
        internal_header_required=settings.requires_internal_header,
    )

    # Added last so it runs first
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)

    return app
