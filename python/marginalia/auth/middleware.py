"""Viewer identity for annotation requests.

Authentication happens upstream: the gateway forwards the signed-in user's id
in X-Marginalia-User, and every annotation, resource and processing log query
is scoped to that id. In staging/prod the gateway also sends the shared
secret in X-Marginalia-Internal so requests that bypass it are refused.

Order of checks in ViewerMiddleware:
1. Public paths pass through untouched
2. Internal header (only when required)
3. Viewer header, parsed as a UUID and attached to request.state.viewer
"""

import hmac
from dataclasses import dataclass
from uuid import UUID

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from marginalia.errors import ApiError, ApiErrorCode
from marginalia.logging import get_logger
from marginalia.responses import error_json

logger = get_logger(__name__)

USER_HEADER = "x-marginalia-user"
INTERNAL_HEADER = "x-marginalia-internal"

PUBLIC_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})


@dataclass(frozen=True)
class Viewer:
    """The user whose annotations a request reads and writes."""

    user_id: UUID


def parse_viewer_header(value: str | None) -> UUID | None:
    """UUID from the viewer header, or None when absent or malformed."""
    if not value:
        return None
    try:
        return UUID(value.strip())
    except ValueError:
        return None


class ViewerMiddleware(BaseHTTPMiddleware):
    """Attach the forwarded viewer to request state.

    Args:
        app: The ASGI application.
        requires_internal_header: Refuse requests without the shared secret.
        internal_secret: Expected X-Marginalia-Internal value.
    """

    def __init__(
        self,
        app: ASGIApp,
        requires_internal_header: bool = False,
        internal_secret: str | None = None,
    ):
        super().__init__(app)
        self.requires_internal_header = requires_internal_header
        self.internal_secret = internal_secret

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in PUBLIC_PATHS:
            return await call_next(request)

        if self.requires_internal_header:
            rejection = self._check_internal_header(request.headers.get(INTERNAL_HEADER), path)
            if rejection is not None:
                return rejection

        raw_user = request.headers.get(USER_HEADER)
        user_id = parse_viewer_header(raw_user)
        if user_id is None:
            reason = "missing_user_header" if not raw_user else "invalid_user_header"
            logger.warning("auth_failure", reason=reason, path=path)
            message = "Authentication required" if not raw_user else "Invalid user header"
            return error_json(ApiErrorCode.E_UNAUTHENTICATED, message, 401)

        request.state.viewer = Viewer(user_id=user_id)
        return await call_next(request)

    def _check_internal_header(self, value: str | None, path: str) -> Response | None:
        """Constant-time secret comparison; None when the request may proceed."""
        if not self.internal_secret:
            logger.error("internal_secret_not_configured")
            return error_json(ApiErrorCode.E_INTERNAL, "Internal server error", 500)

        if value is None or not hmac.compare_digest(
            value.encode(), self.internal_secret.encode()
        ):
            reason = "internal_header_missing" if value is None else "internal_header_mismatch"
            logger.warning("auth_failure", reason=reason, path=path)
            return error_json(ApiErrorCode.E_INTERNAL_ONLY, "Internal API access required", 403)

        return None


def get_viewer(request: Request) -> Viewer:
    """FastAPI dependency returning the request's viewer.

    Raises:
        ApiError(E_UNAUTHENTICATED): If the middleware attached no viewer.
    """
    viewer = getattr(request.state, "viewer", None)
    if viewer is None:
        raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
    return viewer
