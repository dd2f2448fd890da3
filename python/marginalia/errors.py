"""API error codes and the exceptions that carry them.

Services raise these; responses.api_error_handler turns them into the error
envelope with the status from ERROR_CODE_TO_STATUS. Failures inside a
suggestion run (a suggestion that would not anchor, a draft that would not
save) are data on the run summary, not exceptions.
"""

from enum import Enum
from uuid import UUID


class ApiErrorCode(str, Enum):
    """Error codes returned in the envelope. Format: E_CATEGORY_NAME."""

    # Identity
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"
    E_FORBIDDEN = "E_FORBIDDEN"
    E_INTERNAL_ONLY = "E_INTERNAL_ONLY"

    # Lookups (also returned when the row belongs to someone else)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_RESOURCE_NOT_FOUND = "E_RESOURCE_NOT_FOUND"
    E_ANNOTATION_NOT_FOUND = "E_ANNOTATION_NOT_FOUND"
    E_PROCESSING_LOG_NOT_FOUND = "E_PROCESSING_LOG_NOT_FOUND"

    # Annotation invariants
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_ANNOTATION_INVALID_ANCHOR = "E_ANNOTATION_INVALID_ANCHOR"
    E_REPLY_CANNOT_ANCHOR = "E_REPLY_CANNOT_ANCHOR"
    E_REPLY_NOT_RESOLVED = "E_REPLY_NOT_RESOLVED"

    # Suggestion runs
    E_NOTES_EMPTY = "E_NOTES_EMPTY"
    E_SUGGESTION_RUN_FAILED = "E_SUGGESTION_RUN_FAILED"

    # Server
    E_STORAGE_ERROR = "E_STORAGE_ERROR"
    E_INTERNAL = "E_INTERNAL"


ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_INTERNAL_ONLY: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_RESOURCE_NOT_FOUND: 404,
    ApiErrorCode.E_ANNOTATION_NOT_FOUND: 404,
    ApiErrorCode.E_PROCESSING_LOG_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_ANNOTATION_INVALID_ANCHOR: 400,
    ApiErrorCode.E_REPLY_CANNOT_ANCHOR: 400,
    ApiErrorCode.E_REPLY_NOT_RESOLVED: 409,
    ApiErrorCode.E_NOTES_EMPTY: 400,
    ApiErrorCode.E_SUGGESTION_RUN_FAILED: 502,
    ApiErrorCode.E_STORAGE_ERROR: 500,
    ApiErrorCode.E_INTERNAL: 500,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class ConflictError(ApiError):
    """The request conflicts with the annotation's current state."""

    def __init__(self, code: ApiErrorCode, message: str = "Conflict"):
        super().__init__(code, message)


class SuggestionRunError(ApiError):
    """A suggestion run that ended failed; its processing log has the details.

    Attributes:
        processing_log_id: Audit row of the failed run
    """

    def __init__(self, code: ApiErrorCode, processing_log_id: UUID):
        self.processing_log_id = processing_log_id
        super().__init__(code, f"Suggestion run failed (processing log {processing_log_id})")
