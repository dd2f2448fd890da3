"""Sessions for request handlers and services.

Routes get a session per request from get_db(). Services that must change
several rows together (deleting a reply and relinking its successor, writing
a batch of anchor updates) wrap the writes in transaction().
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from marginalia.db.engine import get_engine

_factory: sessionmaker[Session] | None = None


def create_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Sessionmaker over `engine` (the configured engine by default).

    Rows stay loaded after commit, so services can hand committed
    annotations straight to the response schemas.
    """
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> sessionmaker[Session]:
    global _factory
    if _factory is None:
        _factory = create_session_factory()
    return _factory


def set_session_factory(factory: sessionmaker[Session] | None) -> None:
    """Swap the factory get_db() uses; None goes back to the configured engine."""
    global _factory
    _factory = factory


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session closed after the response."""
    with get_session_factory()() as session:
        yield session


@contextmanager
def transaction(db: Session) -> Generator[None, None, None]:
    """Commit the enclosed writes as one unit, rolling back on any error.

    Usage:
        with transaction(db):
            db.delete(reply)
            successor.thread_prev_id = reply.thread_prev_id
    """
    try:
        yield
        db.commit()
    except Exception:
        db.rollback()
        raise
