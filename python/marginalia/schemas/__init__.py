"""Pydantic schemas for request/response models.

All schemas are re-exported here for convenient imports.
"""

from marginalia.schemas.annotations import (
    AnnotationOut,
    CreateAnnotationRequest,
    CreateReplyRequest,
    TextChangeOut,
    TextChangeRequest,
    ThreadOut,
    UpdateAnnotationRequest,
)
from marginalia.schemas.suggestions import (
    ProcessingLogOut,
    SuggestionFailureOut,
    SuggestionRunOut,
    SuggestionRunRequest,
)

__all__ = [
    # Annotations
    "AnnotationOut",
    "ThreadOut",
    "TextChangeOut",
    "CreateAnnotationRequest",
    "CreateReplyRequest",
    "UpdateAnnotationRequest",
    "TextChangeRequest",
    # Suggestions
    "SuggestionRunRequest",
    "SuggestionRunOut",
    "SuggestionFailureOut",
    "ProcessingLogOut",
]
