"""Resource access for the annotation engine.

Resources themselves (creation, editing, listing) belong to the surrounding
application; the engine only reads them:
- owner-scoped lookup (non-owners get the same 404 as a missing row)
- the plain-text view of the notes that all anchors index into
- the per-type metadata handed to the suggestion model
"""

from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from marginalia.db.models import Resource
from marginalia.errors import ApiErrorCode, NotFoundError
from marginalia.services.plain_text import strip_markdown

# Metadata fields sent to the suggestion model, per resource type
AI_METADATA_FIELDS: dict[str, tuple[str, ...]] = {
    "short-video": ("description", "transcript", "author", "creator", "channelName"),
    "video": ("description", "transcript", "author", "creator", "channelName"),
    "book": ("description", "author", "url"),
    "article": ("description", "author", "url"),
    "podcast": ("description", "author", "url"),
}


def get_resource_for_owner_or_404(db: Session, viewer_id: UUID, resource_id: UUID) -> Resource:
    """Load a resource owned by the viewer.

    Raises:
        NotFoundError(E_RESOURCE_NOT_FOUND): If the resource doesn't exist or
            belongs to someone else.
    """
    resource = db.get(Resource, resource_id)
    if resource is None or resource.owner_id != viewer_id:
        raise NotFoundError(ApiErrorCode.E_RESOURCE_NOT_FOUND, "Resource not found")
    return resource


def get_plain_text(resource: Resource) -> str:
    """Plain-text view of the resource's notes (the text anchors index into)."""
    return strip_markdown(resource.notes)


def get_ai_metadata(resource: Resource) -> dict[str, str]:
    """Metadata relevant to the resource's type, skipping empty values.

    Values are returned whole; shortening for the prompt happens when the
    prompt is rendered.
    """
    details: dict[str, Any] = resource.details or {}
    metadata: dict[str, str] = {}
    for name in AI_METADATA_FIELDS.get(resource.type, ()):
        value = details.get(name)
        if value is None or value == "":
            continue
        metadata[name] = value if isinstance(value, str) else str(value)
    return metadata
