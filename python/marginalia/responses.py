"""Response envelopes and the exception handlers that produce them.

Success: {"data": ...}
Error:   {"error": {"code": "E_...", "message": "...", "request_id": "..."}}

Handlers registered by register_exception_handlers():
- ApiError: the error's own code and status
- HTTPException (405, unknown routes, ...): status mapped to the nearest code
- RequestValidationError: 400 E_INVALID_REQUEST (never FastAPI's 422 body)
- anything else: 500 E_INTERNAL, logged, details withheld
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from marginalia.errors import ApiError, ApiErrorCode
from marginalia.logging import get_logger, get_request_id

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: ApiErrorCode.E_INVALID_REQUEST,
    401: ApiErrorCode.E_UNAUTHENTICATED,
    403: ApiErrorCode.E_FORBIDDEN,
    404: ApiErrorCode.E_NOT_FOUND,
    422: ApiErrorCode.E_INVALID_REQUEST,
}


def success_response(data: Any) -> dict[str, Any]:
    """Wrap a payload in the success envelope."""
    return {"data": data}


def error_response(
    code: ApiErrorCode, message: str, request_id: str | None = None
) -> dict[str, Any]:
    """Build the error envelope.

    Args:
        code: The error code enum value.
        message: Human-readable error message.
        request_id: Correlation id; taken from the logging context when omitted.

    Returns:
        Dict with "error" key; request_id is left out when there is none.
    """
    error: dict[str, Any] = {"code": code.value, "message": message}
    request_id = request_id or get_request_id()
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


def error_json(code: ApiErrorCode, message: str, status_code: int) -> JSONResponse:
    """Error envelope as a ready JSONResponse (for middleware short-circuits)."""
    return JSONResponse(status_code=status_code, content=error_response(code, message))


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return error_json(exc.code, exc.message, exc.status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _STATUS_TO_CODE.get(exc.status_code, ApiErrorCode.E_INTERNAL)
    return error_json(code, str(exc.detail) if exc.detail else "An error occurred", exc.status_code)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Schema violations in path, query or body."""
    logger.info(
        "request_validation_failed",
        fields=[".".join(str(p) for p in err.get("loc", ())) for err in exc.errors()],
    )
    return error_json(ApiErrorCode.E_INVALID_REQUEST, "Invalid request body", 400)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log the exception server-side; never leak its details to the client."""
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return error_json(ApiErrorCode.E_INTERNAL, "Internal server error", 500)


def register_exception_handlers(app: FastAPI) -> None:
    """Install every handler above on the app."""
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
