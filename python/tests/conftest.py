"""Pytest configuration and fixtures for Marginalia tests.

Test isolation strategy:
- Every test gets its own in-memory SQLite database (StaticPool, one shared
  connection), created from the ORM metadata and dropped afterwards
- API tests bind the app's session factory to the same engine, so rows
  created through db_session are visible to route handlers
- LLM calls are never made: suggestion tests use FakeSuggestionGenerator,
  adapter tests mock HTTP with respx
"""

import os
from collections.abc import Callable, Generator
from typing import Any
from uuid import UUID, uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("MARGINALIA_ENV", "test")

from marginalia.api.deps import get_suggestion_generator  # noqa: E402
from marginalia.app import create_app  # noqa: E402
from marginalia.config import Settings, clear_settings_cache  # noqa: E402
from marginalia.db.engine import create_db_engine  # noqa: E402
from marginalia.db.models import Base, Resource  # noqa: E402
from marginalia.db.session import create_session_factory, set_session_factory  # noqa: E402
from marginalia.services.suggestions.types import RawSuggestion, SuggestionInput  # noqa: E402


class FakeSuggestionGenerator:
    """Scripted stand-in for LLMSuggestionGenerator.

    Args:
        response: Raw text returned by generate(), or an exception to raise.
        revisions: Returned (or raised) by successive revise() calls.
    """

    model_name = "fake-model"

    def __init__(self, response: Any = '{"comments": []}', revisions: list[Any] | None = None):
        self.response = response
        self.revisions = list(revisions or [])
        self.generate_calls: list[SuggestionInput] = []
        self.revise_calls: list[tuple[str | None, str, int]] = []

    async def generate(self, inp: SuggestionInput) -> str:
        self.generate_calls.append(inp)
        if isinstance(self.response, BaseException):
            raise self.response
        if callable(self.response):
            return await self.response(inp)
        return self.response

    async def revise(
        self,
        inp: SuggestionInput,
        suggestion: RawSuggestion,
        feedback: str,
        attempt: int,
    ) -> str | None:
        self.revise_calls.append((suggestion.selected_text, feedback, attempt))
        if not self.revisions:
            return None
        result = self.revisions.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> Generator[None, None, None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """Fresh in-memory database with the full schema."""
    engine = create_db_engine("sqlite+pysqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Session on the per-test database."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def viewer_id() -> UUID:
    return uuid4()


@pytest.fixture
def other_user_id() -> UUID:
    return uuid4()


@pytest.fixture
def make_resource(db_session: Session, viewer_id: UUID) -> Callable[..., Resource]:
    """Factory inserting a committed resource owned by the viewer by default."""

    def _make(
        notes: str = "",
        type: str = "article",
        details: dict[str, Any] | None = None,
        owner_id: UUID | None = None,
        title: str = "Test resource",
    ) -> Resource:
        resource = Resource(
            owner_id=owner_id or viewer_id,
            type=type,
            title=title,
            notes=notes,
            details=details or {},
        )
        db_session.add(resource)
        db_session.commit()
        return resource

    return _make


@pytest.fixture
def make_generator() -> Callable[..., FakeSuggestionGenerator]:
    return FakeSuggestionGenerator


@pytest.fixture
def settings() -> Settings:
    """Test settings with defaults for every limit."""
    return Settings(MARGINALIA_ENV="test", _env_file=None)


@pytest.fixture
def app(settings: Settings, session_factory: sessionmaker[Session]):
    set_session_factory(session_factory)
    app = create_app(settings=settings, log_requests=False)
    yield app
    app.dependency_overrides.clear()
    set_session_factory(None)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers(viewer_id: UUID) -> dict[str, str]:
    return {"X-Marginalia-User": str(viewer_id)}


@pytest.fixture
def use_generator(app) -> Callable[[FakeSuggestionGenerator], None]:
    """Route suggestion runs in the app through a fake generator."""

    def _use(generator: FakeSuggestionGenerator) -> None:
        app.dependency_overrides[get_suggestion_generator] = lambda: generator

    return _use
