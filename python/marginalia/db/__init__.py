"""Database module for Marginalia.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from marginalia.db.engine import create_db_engine, get_engine
from marginalia.db.models import (
    Annotation,
    AnnotationKind,
    AnnotationStatus,
    Base,
    ProcessingLog,
    ProcessingLogStatus,
    Resource,
    ResourceType,
    SuggestionType,
)
from marginalia.db.session import get_db, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "get_engine",
    "get_db",
    "transaction",
    # Base
    "Base",
    # Enums
    "AnnotationKind",
    "AnnotationStatus",
    "ProcessingLogStatus",
    "ResourceType",
    "SuggestionType",
    # Models
    "Resource",
    "Annotation",
    "ProcessingLog",
]
